"""Pydantic models for memory records, relations and store inputs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class MemoryTier(str, Enum):
    """Storage tier governing cache eligibility and decay."""
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class MemoryKind(str, Enum):
    """Kind of fact a memory holds."""
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"
    PROFILE = "profile"


class RelationType(str, Enum):
    """Directed relation between two memories."""
    UPDATES = "updates"
    EXTENDS = "extends"
    DERIVES = "derives"


# =============================================================================
# Base Models
# =============================================================================


class BaseEntity(BaseModel):
    """Base model with common fields and conversion methods."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    def to_db_row(self) -> dict[str, Any]:
        """Convert model to database row format (e.g., for Supabase/PostgreSQL)."""
        data = self.model_dump()
        result = {}
        for key, value in data.items():
            if isinstance(value, UUID):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
            else:
                result[key] = value
        return result

    @classmethod
    def from_db_row(cls, row: dict[str, Any]):
        """Create model instance from database row."""
        return cls.model_validate(row)


# =============================================================================
# Core Entity Models
# =============================================================================


class MemoryRecord(BaseEntity):
    """A stored fact unit with content, embedding and lifecycle metadata."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Stable identifier")
    user_id: str = Field(..., min_length=1, description="Owning user")

    # Version chain
    root_id: str = Field(default="", description="Id of the first record in the chain")
    parent_id: Optional[str] = Field(None, description="Previous version, if any")
    version: int = Field(default=1, ge=1, description="Monotonic version number")
    is_latest: bool = Field(default=True, description="Newest record in its chain")

    # Content
    content: str = Field(..., min_length=1, description="Fact text")
    embedding: list[float] = Field(default_factory=list, description="Content vector")
    embedding_model: Optional[str] = Field(None, description="Model that produced the vector")
    kind: MemoryKind = Field(default=MemoryKind.SEMANTIC)
    is_static: bool = Field(default=False, description="Stable identity fact")
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_chat_id: Optional[str] = None

    # Lifecycle
    tier: MemoryTier = Field(default=MemoryTier.WARM)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    access_count: int = Field(default=0, ge=0)
    access_velocity: float = Field(default=0.0, ge=0.0)
    last_accessed_at: Optional[datetime] = None
    last_decayed_at: Optional[datetime] = None
    is_forgotten: bool = False
    forget_after: Optional[datetime] = None
    forget_reason: Optional[str] = None
    source_count: int = Field(default=1, ge=1, description="Merged observations")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def model_post_init(self, __context: Any) -> None:
        if not self.root_id:
            self.root_id = self.id

    @property
    def is_active(self) -> bool:
        """Latest and not forgotten."""
        return self.is_latest and not self.is_forgotten

    @property
    def always_hot(self) -> bool:
        """Static and profile memories are always eligible for the hot tier."""
        return self.is_static or self.kind == MemoryKind.PROFILE


class MemoryRelation(BaseEntity):
    """Directed, weighted edge between two memories."""

    source_id: str
    target_id: str
    relation_type: RelationType
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Inputs
# =============================================================================


class MemoryCandidate(BaseModel):
    """Candidate fact supplied by the fact extractor."""

    content: str = Field(..., min_length=1)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    is_static: bool = False
    kind: MemoryKind = MemoryKind.SEMANTIC
    metadata: dict[str, Any] = Field(default_factory=dict)
    forget_after: Optional[datetime] = None
    source_chat_id: Optional[str] = None


class MemoryUpdate(BaseModel):
    """Changes applied when a new version of a memory is created."""

    content: Optional[str] = None
    importance: Optional[float] = Field(None, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_static: Optional[bool] = None
    kind: Optional[MemoryKind] = None
    embedding: Optional[list[float]] = None


class SearchFilters(BaseModel):
    """Optional constraints for similarity and lexical queries."""

    tiers: Optional[list[MemoryTier]] = None
    kinds: Optional[list[MemoryKind]] = None
    tags: Optional[list[str]] = None
    static_only: bool = False
    dynamic_only: bool = False
    min_importance: Optional[float] = Field(None, ge=0.0, le=1.0)
    include_forgotten: bool = False

    def matches(self, record: MemoryRecord) -> bool:
        """Whether an active latest record passes these filters."""
        if not record.is_latest:
            return False
        if record.is_forgotten and not self.include_forgotten:
            return False
        if self.tiers is not None and record.tier not in self.tiers:
            return False
        if self.kinds is not None and record.kind not in self.kinds:
            return False
        if self.tags is not None and not set(self.tags) & set(record.tags):
            return False
        if self.static_only and not record.is_static:
            return False
        if self.dynamic_only and record.is_static:
            return False
        if self.min_importance is not None and record.importance < self.min_importance:
            return False
        return True


# =============================================================================
# Outputs
# =============================================================================


class ScoredMemory(BaseModel):
    """A memory returned from a store query together with its score."""

    memory: MemoryRecord
    score: float = 0.0


class SearchResult(BaseModel):
    """Hybrid search candidate with per-signal scores."""

    memory: MemoryRecord
    vector_similarity: float = 0.0
    lexical_score: float = 0.0
    rrf_score: float = 0.0
    final_score: float = 0.0

    @property
    def id(self) -> str:
        return self.memory.id

    @property
    def content(self) -> str:
        return self.memory.content


class MemoryProfile(BaseModel):
    """Static identity facts plus query-dependent contextual facts."""

    static: list[MemoryRecord] = Field(default_factory=list)
    dynamic: list[MemoryRecord] = Field(default_factory=list)


class ConsolidationCandidate(BaseModel):
    """A cluster of near-duplicate memories that may be merged."""

    memory_ids: list[str]
    similarity: float
    merged_content: str


class ConsolidationResult(BaseModel):
    """Outcome of a consolidation run."""

    candidates: list[ConsolidationCandidate] = Field(default_factory=list)
    merged_ids: list[str] = Field(default_factory=list)
    dry_run: bool = False

    @property
    def consolidated_count(self) -> int:
        return len(self.merged_ids)


class TierUpdateStats(BaseModel):
    """Tier changes applied by one tier recomputation."""

    promoted_to_hot: int = 0
    demoted_to_warm: int = 0
    demoted_to_cold: int = 0

    @property
    def changed(self) -> int:
        return self.promoted_to_hot + self.demoted_to_warm + self.demoted_to_cold


class MemoryStats(BaseModel):
    """Aggregate counts for one user's memories."""

    total: int = 0
    hot: int = 0
    warm: int = 0
    cold: int = 0
    by_kind: dict[str, int] = Field(default_factory=dict)
    static: int = 0
    forgotten: int = 0
    avg_importance: float = 0.0
    avg_access_velocity: float = 0.0
