"""Pydantic models for API requests and responses.

This module defines all the request/response schemas for the Mnemos API.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from mnemos.models.memory import (
    MemoryCandidate,
    MemoryKind,
    MemoryRecord,
    MemoryTier,
    SearchFilters,
)
from mnemos.models.retrieval import (
    CompletionReason,
    PipelineConfig,
    PipelineTiming,
    QueryRefinement,
)


# =============================================================================
# Memory Models
# =============================================================================


class MemoryCreate(BaseModel):
    """Request model for storing a new fact."""

    user_id: str = Field(..., min_length=1, description="Owning user")
    content: str = Field(
        ...,
        min_length=1,
        description="Fact text",
        json_schema_extra={"example": "User is VP of Finance"},
    )
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    is_static: bool = Field(default=False, description="Stable identity fact")
    kind: MemoryKind = MemoryKind.SEMANTIC
    metadata: dict[str, Any] = Field(default_factory=dict)
    forget_after: Optional[datetime] = Field(None, description="Forget after this time")
    source_chat_id: Optional[str] = None

    def to_candidate(self) -> MemoryCandidate:
        return MemoryCandidate(**self.model_dump(exclude={"user_id"}))


class MemoryForget(BaseModel):
    """Request model for soft-deleting a memory."""

    reason: str = Field(default="user_request", max_length=255)


class MemoryResponse(BaseModel):
    """Memory record as returned by the API (embedding omitted)."""

    id: str
    user_id: str
    root_id: str
    parent_id: Optional[str] = None
    version: int
    is_latest: bool
    content: str
    kind: MemoryKind
    is_static: bool
    tags: list[str]
    metadata: dict[str, Any]
    tier: MemoryTier
    importance: float
    access_count: int
    access_velocity: float
    last_accessed_at: Optional[datetime] = None
    is_forgotten: bool
    forget_after: Optional[datetime] = None
    forget_reason: Optional[str] = None
    source_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: MemoryRecord) -> "MemoryResponse":
        return cls.model_validate(record.model_dump(exclude={"embedding", "embedding_model"}))


class MemoryListResponse(BaseModel):
    """Response model for listing a user's memories."""

    memories: list[MemoryResponse]
    total: int


class DeleteResponse(BaseModel):
    """Response model for hard deletes."""

    deleted: int


class ProfileResponse(BaseModel):
    """Static and contextual facts for a user."""

    user_id: str
    static: list[MemoryResponse]
    dynamic: list[MemoryResponse]
    context: str = Field("", description="Profile rendered for a prompt")


class ConsolidateRequest(BaseModel):
    """Request model for consolidation."""

    similarity_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_batch: Optional[int] = Field(None, ge=2)
    dry_run: bool = False


# =============================================================================
# Retrieval Models
# =============================================================================


class SearchRequest(BaseModel):
    """Request model for hybrid search."""

    user_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    limit: int = Field(default=10, ge=1, le=100)
    filters: Optional[SearchFilters] = None


class SearchHit(BaseModel):
    """One hybrid search result."""

    memory: MemoryResponse
    vector_similarity: float
    lexical_score: float
    score: float


class SearchResponse(BaseModel):
    """Response model for hybrid search."""

    results: list[SearchHit]


class RetrieveRequest(BaseModel):
    """Request model for agentic retrieval."""

    user_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    config: Optional[PipelineConfig] = None
    include_context: bool = Field(default=False, description="Render results as prompt context")


class GradedHit(BaseModel):
    """One graded retrieval result."""

    memory: MemoryResponse
    score: float
    relevance: float
    is_relevant: bool
    reasoning: str
    confidence: float


class RetrieveResponse(BaseModel):
    """Response model for agentic retrieval."""

    results: list[GradedHit]
    relevant_count: int
    avg_relevance: float
    iterations: int
    completion_reason: CompletionReason
    refinements: list[QueryRefinement]
    timing: PipelineTiming
    context: Optional[str] = None


# =============================================================================
# Health and Errors
# =============================================================================


class HealthStatus(BaseModel):
    """Health status for a single service."""

    status: Literal["healthy", "unhealthy", "degraded"] = Field(..., description="Service health status")
    latency_ms: Optional[float] = Field(None, description="Response latency in milliseconds")
    message: Optional[str] = Field(None, description="Additional status information")


class HealthCheckResponse(BaseModel):
    """Response model for health check endpoint."""

    status: Literal["healthy", "unhealthy", "degraded"] = Field(..., description="Overall system health")
    version: str = Field(..., description="API version")
    timestamp: datetime = Field(..., description="Current server time")
    services: dict[str, HealthStatus] = Field(..., description="Individual service health status")
    uptime_seconds: Optional[float] = Field(None, description="Server uptime in seconds")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[Any] = Field(None, description="Additional error details")
    path: Optional[str] = Field(None, description="Request path that caused the error")
    timestamp: datetime = Field(..., description="Error timestamp")


class ValidationErrorDetail(BaseModel):
    """Detail for a single validation error."""

    field: str = Field(..., description="Field that failed validation")
    message: str = Field(..., description="Validation error message")
    value: Optional[Any] = Field(None, description="Invalid value provided")


class ValidationErrorResponse(BaseModel):
    """Response model for validation errors."""

    error: str = Field(default="validation_error", description="Error type")
    message: str = Field(default="Request validation failed", description="Error message")
    errors: list[ValidationErrorDetail] = Field(..., description="List of validation errors")
    timestamp: datetime = Field(..., description="Error timestamp")
