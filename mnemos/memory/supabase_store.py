"""
Supabase-backed tiered store.

Records live in a ``memories`` table with a pgvector column; relations in
``memory_relations``. Chain writes (versioning, merging, deletes, batch
updates) go through SQL functions so each one runs in a single
transaction. The supabase client is synchronous, so every call runs in a
worker thread bounded by the store timeout.

Setup:
    Run get_schema_sql() in the Supabase SQL Editor once per project.
"""

from __future__ import annotations

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from supabase import Client, create_client

from mnemos.config.settings import Settings, get_settings
from mnemos.core.exceptions import (
    ConfigurationError,
    DependencyFailureError,
    DependencyTimeoutError,
    InvalidInputError,
    InvariantViolationError,
    NotFoundError,
)
from mnemos.memory.store import (
    check_mutable,
    check_record_invariants,
    decay_importance,
)
from mnemos.models.memory import (
    MemoryRecord,
    MemoryRelation,
    MemoryTier,
    ScoredMemory,
    SearchFilters,
    utcnow,
)
from mnemos.monitoring.metrics import track_store_operation

logger = structlog.get_logger(__name__)

_executor = ThreadPoolExecutor(max_workers=8)

# Fields the batch update function knows how to write.
BATCH_FIELDS = frozenset(
    {"tier", "importance", "last_decayed_at", "is_forgotten", "forget_reason"}
)


# =============================================================================
# Schema
# =============================================================================

MEMORY_SCHEMA_SQL = """
-- ============================================================================
-- Mnemos Database Schema
-- Run this SQL in Supabase SQL Editor to create the required objects
-- ============================================================================

CREATE EXTENSION IF NOT EXISTS vector;

-- -----------------------------------------------------------------------------
-- Memories Table
-- One row per version; exactly one latest row per root_id
-- -----------------------------------------------------------------------------

CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    root_id TEXT NOT NULL,
    parent_id TEXT,
    version INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
    is_latest BOOLEAN NOT NULL DEFAULT true,
    content TEXT NOT NULL,
    embedding VECTOR(1024),
    embedding_model TEXT,
    kind TEXT NOT NULL DEFAULT 'semantic'
        CHECK (kind IN ('episodic', 'semantic', 'procedural', 'profile')),
    is_static BOOLEAN NOT NULL DEFAULT false,
    tags TEXT[] NOT NULL DEFAULT '{}',
    metadata JSONB NOT NULL DEFAULT '{}',
    source_chat_id TEXT,
    tier TEXT NOT NULL DEFAULT 'warm' CHECK (tier IN ('hot', 'warm', 'cold')),
    importance FLOAT NOT NULL DEFAULT 0.5 CHECK (importance >= 0 AND importance <= 1),
    access_count INTEGER NOT NULL DEFAULT 0,
    access_velocity FLOAT NOT NULL DEFAULT 0,
    last_accessed_at TIMESTAMPTZ,
    last_decayed_at TIMESTAMPTZ,
    is_forgotten BOOLEAN NOT NULL DEFAULT false,
    forget_after TIMESTAMPTZ,
    forget_reason TEXT,
    source_count INTEGER NOT NULL DEFAULT 1 CHECK (source_count >= 1),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (NOT is_forgotten OR tier = 'cold'),
    CHECK (version > 1 OR parent_id IS NULL)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_one_latest ON memories(root_id) WHERE is_latest;
CREATE INDEX IF NOT EXISTS idx_memories_user_latest ON memories(user_id) WHERE is_latest;
CREATE INDEX IF NOT EXISTS idx_memories_embedding ON memories
    USING hnsw (embedding vector_cosine_ops);
CREATE INDEX IF NOT EXISTS idx_memories_content_fts ON memories
    USING gin (to_tsvector('english', content));

-- -----------------------------------------------------------------------------
-- Relations Table
-- -----------------------------------------------------------------------------

CREATE TABLE IF NOT EXISTS memory_relations (
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    relation_type TEXT NOT NULL CHECK (relation_type IN ('updates', 'extends', 'derives')),
    strength FLOAT NOT NULL DEFAULT 1.0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_memory_relations_source ON memory_relations(source_id);
CREATE INDEX IF NOT EXISTS idx_memory_relations_target ON memory_relations(target_id);

-- -----------------------------------------------------------------------------
-- Search Functions
-- -----------------------------------------------------------------------------

CREATE OR REPLACE FUNCTION match_memories(
    p_user_id TEXT,
    p_embedding VECTOR(1024),
    p_threshold FLOAT,
    p_limit INTEGER,
    p_filters JSONB DEFAULT '{}'
)
RETURNS TABLE (memory JSONB, score FLOAT) AS $$
    SELECT to_jsonb(m) AS memory, 1 - (m.embedding <=> p_embedding) AS score
    FROM memories m
    WHERE m.user_id = p_user_id
      AND m.is_latest
      AND m.embedding IS NOT NULL
      AND (COALESCE((p_filters->>'include_forgotten')::boolean, false) OR NOT m.is_forgotten)
      AND (p_filters->'tiers' IS NULL OR m.tier IN (SELECT jsonb_array_elements_text(p_filters->'tiers')))
      AND (p_filters->'kinds' IS NULL OR m.kind IN (SELECT jsonb_array_elements_text(p_filters->'kinds')))
      AND (p_filters->'min_importance' IS NULL OR m.importance >= (p_filters->>'min_importance')::float)
      AND 1 - (m.embedding <=> p_embedding) >= p_threshold
    ORDER BY m.embedding <=> p_embedding
    LIMIT p_limit;
$$ LANGUAGE sql STABLE;

CREATE OR REPLACE FUNCTION search_memories_lexical(
    p_user_id TEXT,
    p_query TEXT,
    p_threshold FLOAT,
    p_limit INTEGER,
    p_filters JSONB DEFAULT '{}'
)
RETURNS TABLE (memory JSONB, score FLOAT) AS $$
    WITH terms AS (
        SELECT array_agg(DISTINCT lexeme) AS lexemes
        FROM unnest(to_tsvector('english', p_query))
    ),
    scored AS (
        SELECT m, (
            SELECT count(*) FROM unnest(t.lexemes) AS q(lexeme)
            WHERE to_tsvector('english', m.content) @@ to_tsquery('english', quote_literal(q.lexeme))
        )::float / cardinality(t.lexemes) AS coverage
        FROM memories m, terms t
        WHERE t.lexemes IS NOT NULL
          AND m.user_id = p_user_id
          AND m.is_latest
          AND (COALESCE((p_filters->>'include_forgotten')::boolean, false) OR NOT m.is_forgotten)
          AND (p_filters->'tiers' IS NULL OR m.tier IN (SELECT jsonb_array_elements_text(p_filters->'tiers')))
          AND (p_filters->'kinds' IS NULL OR m.kind IN (SELECT jsonb_array_elements_text(p_filters->'kinds')))
          AND (p_filters->'min_importance' IS NULL OR m.importance >= (p_filters->>'min_importance')::float)
          AND to_tsvector('english', m.content) @@ to_tsquery('english',
                array_to_string(ARRAY(SELECT quote_literal(l) FROM unnest(t.lexemes) l), ' | '))
    )
    SELECT to_jsonb(m) AS memory, coverage AS score
    FROM scored
    WHERE coverage >= p_threshold
    ORDER BY coverage DESC, (m).importance DESC
    LIMIT p_limit;
$$ LANGUAGE sql STABLE;

-- -----------------------------------------------------------------------------
-- Chain Write Functions
-- -----------------------------------------------------------------------------

CREATE OR REPLACE FUNCTION create_memory_version(
    p_existing_id TEXT,
    p_record JSONB,
    p_relation JSONB
)
RETURNS VOID AS $$
DECLARE
    existing memories%ROWTYPE;
BEGIN
    SELECT * INTO existing FROM memories WHERE id = p_existing_id FOR UPDATE;
    IF NOT FOUND THEN
        RAISE EXCEPTION 'not_found: %', p_existing_id;
    END IF;
    IF NOT existing.is_latest THEN
        RAISE EXCEPTION 'invariant_violation: % is no longer latest', p_existing_id;
    END IF;
    IF (p_record->>'version')::int <> existing.version + 1
       OR p_record->>'root_id' <> existing.root_id THEN
        RAISE EXCEPTION 'invariant_violation: new version does not continue %', p_existing_id;
    END IF;

    UPDATE memories SET is_latest = false, updated_at = NOW() WHERE id = p_existing_id;
    INSERT INTO memories SELECT * FROM jsonb_populate_record(NULL::memories, p_record);
    INSERT INTO memory_relations SELECT * FROM jsonb_populate_record(NULL::memory_relations, p_relation);
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION consolidate_memories(
    p_original_ids TEXT[],
    p_merged JSONB,
    p_relations JSONB
)
RETURNS INTEGER AS $$
DECLARE
    base_root TEXT := p_merged->>'root_id';
    base_top INTEGER;
    folded INTEGER;
BEGIN
    PERFORM 1 FROM memories WHERE id = ANY(p_original_ids) FOR UPDATE;
    IF EXISTS (SELECT 1 FROM memories WHERE id = ANY(p_original_ids) AND NOT is_latest) THEN
        RAISE EXCEPTION 'invariant_violation: merge source is no longer latest';
    END IF;

    SELECT MAX(version) INTO base_top FROM memories WHERE root_id = base_root;
    UPDATE memories SET is_latest = false, updated_at = NOW() WHERE id = ANY(p_original_ids);

    -- Folded chains continue after the base chain, oldest first
    WITH renumbered AS (
        SELECT id, base_top + ROW_NUMBER() OVER (ORDER BY created_at, root_id, version) AS new_version
        FROM memories
        WHERE root_id IN (SELECT root_id FROM memories WHERE id = ANY(p_original_ids))
          AND root_id <> base_root
    )
    UPDATE memories m SET root_id = base_root, version = r.new_version
    FROM renumbered r WHERE m.id = r.id;
    GET DIAGNOSTICS folded = ROW_COUNT;

    p_merged := jsonb_set(p_merged, '{version}', to_jsonb(base_top + folded + 1));
    INSERT INTO memories SELECT * FROM jsonb_populate_record(NULL::memories, p_merged);
    INSERT INTO memory_relations SELECT * FROM jsonb_populate_recordset(NULL::memory_relations, p_relations);
    RETURN base_top + folded + 1;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION batch_update_memories(p_changes JSONB)
RETURNS INTEGER AS $$
DECLARE
    changed INTEGER;
BEGIN
    UPDATE memories m SET
        tier = COALESCE(c.value->>'tier', m.tier),
        importance = COALESCE((c.value->>'importance')::float, m.importance),
        last_decayed_at = COALESCE((c.value->>'last_decayed_at')::timestamptz, m.last_decayed_at),
        is_forgotten = COALESCE((c.value->>'is_forgotten')::boolean, m.is_forgotten),
        forget_reason = COALESCE(c.value->>'forget_reason', m.forget_reason),
        updated_at = NOW()
    FROM jsonb_each(p_changes) c
    WHERE m.id = c.key;
    GET DIAGNOSTICS changed = ROW_COUNT;
    RETURN changed;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION increment_memory_access(
    p_id TEXT,
    p_boost FLOAT,
    p_max_importance FLOAT,
    p_now TIMESTAMPTZ DEFAULT NOW()
)
RETURNS SETOF memories AS $$
    UPDATE memories SET
        access_count = access_count + 1,
        access_velocity = (access_velocity * 6 + 1) / 7,
        importance = LEAST(importance + p_boost, p_max_importance),
        last_accessed_at = p_now,
        updated_at = p_now
    WHERE id = p_id
    RETURNING *;
$$ LANGUAGE sql;

CREATE OR REPLACE FUNCTION delete_memory_chain(p_root_id TEXT)
RETURNS INTEGER AS $$
DECLARE
    removed INTEGER;
BEGIN
    DELETE FROM memory_relations
    WHERE source_id IN (SELECT id FROM memories WHERE root_id = p_root_id)
       OR target_id IN (SELECT id FROM memories WHERE root_id = p_root_id);
    DELETE FROM memories WHERE root_id = p_root_id;
    GET DIAGNOSTICS removed = ROW_COUNT;
    RETURN removed;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION delete_user_memories(p_user_id TEXT)
RETURNS INTEGER AS $$
DECLARE
    removed INTEGER;
BEGIN
    DELETE FROM memory_relations
    WHERE source_id IN (SELECT id FROM memories WHERE user_id = p_user_id)
       OR target_id IN (SELECT id FROM memories WHERE user_id = p_user_id);
    DELETE FROM memories WHERE user_id = p_user_id;
    GET DIAGNOSTICS removed = ROW_COUNT;
    RETURN removed;
END;
$$ LANGUAGE plpgsql;
"""


def get_schema_sql() -> str:
    """Get the SQL that creates the memory tables and functions.

    Returns:
        SQL string. Run this in Supabase SQL Editor.
    """
    return MEMORY_SCHEMA_SQL


def _to_record(row: dict[str, Any]) -> MemoryRecord:
    """Build a record from a table row or a to_jsonb() payload."""
    embedding = row.get("embedding")
    if isinstance(embedding, str):
        row = {**row, "embedding": json.loads(embedding)}
    elif embedding is None:
        row = {**row, "embedding": []}
    return MemoryRecord.from_db_row(row)


def _filters_payload(filters: Optional[SearchFilters]) -> dict[str, Any]:
    if filters is None:
        return {}
    payload = filters.model_dump(mode="json", exclude_none=True)
    return {k: v for k, v in payload.items() if v not in (False, [])}


class SupabaseTieredStore:
    """
    Tiered store backed by Supabase (PostgreSQL + pgvector).

    Usage:
        store = SupabaseTieredStore()
        await store.ping()
    """

    name = "supabase"

    def __init__(
        self,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the store.

        Args:
            supabase_url: Supabase project URL. Defaults to settings.
            supabase_key: Supabase API key. Defaults to settings.
            timeout: Seconds allowed per round trip. Defaults to settings.
        """
        settings = settings or get_settings()
        self._supabase_url = supabase_url or settings.supabase_url
        if supabase_key is None and settings.supabase_key is not None:
            supabase_key = settings.supabase_key.get_secret_value()
        if not self._supabase_url or not supabase_key:
            raise ConfigurationError("Supabase URL and key are required", "supabase_url")

        self._supabase_key = supabase_key
        self._timeout = timeout or settings.store_timeout_seconds
        self._supabase: Optional[Client] = None

        logger.info("supabase_store_initialized", timeout=self._timeout)

    def _get_supabase(self) -> Client:
        """Get or create Supabase client."""
        if self._supabase is None:
            self._supabase = create_client(self._supabase_url, self._supabase_key)
        return self._supabase

    def _translate(self, operation: str, error: Exception) -> Exception:
        message = str(error)
        if "invariant_violation" in message:
            return InvariantViolationError(message, {"operation": operation})
        if "not_found" in message:
            return NotFoundError("memory", message.split("not_found:")[-1].strip())
        return DependencyFailureError("supabase", message, {"operation": operation})

    async def _execute(self, operation: str, call: Callable[[Client], Any]) -> Any:
        """Run one blocking client call off the event loop, bounded by the timeout."""
        client = self._get_supabase()
        loop = asyncio.get_running_loop()
        with track_store_operation(self.name, operation):
            try:
                response = await asyncio.wait_for(
                    loop.run_in_executor(_executor, lambda: call(client).execute()),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as e:
                raise DependencyTimeoutError(
                    "supabase",
                    f"{operation} exceeded {self._timeout}s",
                    {"operation": operation},
                ) from e
            except Exception as e:
                logger.error("supabase_operation_failed", operation=operation, error=str(e))
                raise self._translate(operation, e) from e
        return response.data

    async def _require(self, memory_id: str) -> MemoryRecord:
        record = await self.get(memory_id)
        if record is None:
            raise NotFoundError("memory", memory_id)
        return record

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, memory_id: str) -> Optional[MemoryRecord]:
        rows = await self._execute(
            "get",
            lambda db: db.table("memories").select("*").eq("id", memory_id).limit(1),
        )
        return _to_record(rows[0]) if rows else None

    async def list_memories(
        self,
        user_id: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryRecord]:
        filters = filters or SearchFilters()

        def query(db: Client) -> Any:
            q = db.table("memories").select("*").eq("user_id", user_id).eq("is_latest", True)
            if not filters.include_forgotten:
                q = q.eq("is_forgotten", False)
            if filters.tiers is not None:
                q = q.in_("tier", [t.value for t in filters.tiers])
            if filters.kinds is not None:
                q = q.in_("kind", [k.value for k in filters.kinds])
            if filters.tags is not None:
                q = q.ov("tags", filters.tags)
            if filters.static_only:
                q = q.eq("is_static", True)
            if filters.dynamic_only:
                q = q.eq("is_static", False)
            if filters.min_importance is not None:
                q = q.gte("importance", filters.min_importance)
            q = q.order("importance", desc=True).order("updated_at", desc=True)
            if limit is not None:
                q = q.limit(limit)
            return q

        rows = await self._execute("list_memories", query)
        return [_to_record(row) for row in rows]

    async def get_chain(self, root_id: str) -> list[MemoryRecord]:
        rows = await self._execute(
            "get_chain",
            lambda db: db.table("memories").select("*").eq("root_id", root_id).order("version"),
        )
        return [_to_record(row) for row in rows]

    async def get_relations(self, memory_id: str) -> list[MemoryRelation]:
        rows = await self._execute(
            "get_relations",
            lambda db: db.table("memory_relations")
            .select("*")
            .or_(f"source_id.eq.{memory_id},target_id.eq.{memory_id}"),
        )
        return [MemoryRelation.from_db_row(row) for row in rows]

    async def list_user_ids(self) -> list[str]:
        rows = await self._execute(
            "list_user_ids",
            lambda db: db.table("memories").select("user_id").eq("is_latest", True),
        )
        return sorted({row["user_id"] for row in rows})

    async def _search_rpc(
        self,
        function: str,
        params: dict[str, Any],
        filters: Optional[SearchFilters],
    ) -> list[ScoredMemory]:
        rows = await self._execute(
            function,
            lambda db: db.rpc(function, {**params, "p_filters": _filters_payload(filters)}),
        )
        # Tag and static filters are applied here, after the ranked fetch.
        filters = filters or SearchFilters()
        scored = [
            ScoredMemory(memory=_to_record(row["memory"]), score=float(row["score"]))
            for row in rows
        ]
        return [s for s in scored if filters.matches(s.memory)]

    async def similarity_search(
        self,
        user_id: str,
        embedding: list[float],
        threshold: float,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredMemory]:
        if not embedding:
            raise InvalidInputError("Query embedding cannot be empty")
        return await self._search_rpc(
            "match_memories",
            {
                "p_user_id": user_id,
                "p_embedding": embedding,
                "p_threshold": threshold,
                "p_limit": limit,
            },
            filters,
        )

    async def lexical_search(
        self,
        user_id: str,
        query: str,
        threshold: float,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredMemory]:
        if not query.strip():
            return []
        return await self._search_rpc(
            "search_memories_lexical",
            {
                "p_user_id": user_id,
                "p_query": query,
                "p_threshold": threshold,
                "p_limit": limit,
            },
            filters,
        )

    async def ping(self) -> bool:
        await self._execute("ping", lambda db: db.table("memories").select("id").limit(1))
        return True

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(self, record: MemoryRecord) -> MemoryRecord:
        check_record_invariants(record)
        if record.version != 1 or record.root_id != record.id:
            raise InvariantViolationError(
                "insert() only accepts first versions; use insert_version()",
                {"id": record.id, "version": record.version},
            )
        await self._execute("insert", lambda db: db.table("memories").insert(record.to_db_row()))
        return record

    async def update(self, memory_id: str, changes: dict[str, Any]) -> MemoryRecord:
        check_mutable(changes)
        current = await self._require(memory_id)
        updated = current.model_copy(update={**changes, "updated_at": utcnow()})
        check_record_invariants(updated)

        row = updated.to_db_row()
        payload = {key: row[key] for key in [*changes, "updated_at"]}
        await self._execute(
            "update",
            lambda db: db.table("memories").update(payload).eq("id", memory_id),
        )
        return updated

    async def batch_update(self, changes: dict[str, dict[str, Any]]) -> int:
        if not changes:
            return 0
        for fields in changes.values():
            check_mutable(fields)
            unknown = fields.keys() - BATCH_FIELDS
            if unknown:
                raise InvalidInputError(
                    "Unsupported batch update fields",
                    {"fields": sorted(unknown)},
                )

        rows = await self._execute(
            "batch_fetch",
            lambda db: db.table("memories").select("*").in_("id", list(changes)),
        )
        current = {row["id"]: _to_record(row) for row in rows}
        missing = changes.keys() - current.keys()
        if missing:
            raise NotFoundError("memory", sorted(missing)[0])

        payload: dict[str, dict[str, Any]] = {}
        for memory_id, fields in changes.items():
            updated = current[memory_id].model_copy(update=fields)
            check_record_invariants(updated)
            row = updated.to_db_row()
            payload[memory_id] = {key: row[key] for key in fields}

        return await self._execute(
            "batch_update",
            lambda db: db.rpc("batch_update_memories", {"p_changes": payload}),
        )

    async def insert_version(
        self,
        existing_id: str,
        record: MemoryRecord,
        relation: MemoryRelation,
    ) -> MemoryRecord:
        check_record_invariants(record)
        await self._execute(
            "insert_version",
            lambda db: db.rpc(
                "create_memory_version",
                {
                    "p_existing_id": existing_id,
                    "p_record": record.to_db_row(),
                    "p_relation": relation.to_db_row(),
                },
            ),
        )
        return record

    async def replace_with_merged(
        self,
        original_ids: list[str],
        merged: MemoryRecord,
        relations: list[MemoryRelation],
    ) -> MemoryRecord:
        check_record_invariants(merged)
        if merged.parent_id not in original_ids:
            raise InvariantViolationError(
                "Merged memory must continue the chain of one of its originals",
                {"parent_id": merged.parent_id},
            )
        version = await self._execute(
            "replace_with_merged",
            lambda db: db.rpc(
                "consolidate_memories",
                {
                    "p_original_ids": original_ids,
                    "p_merged": merged.to_db_row(),
                    "p_relations": [rel.to_db_row() for rel in relations],
                },
            ),
        )
        return merged.model_copy(update={"version": version})

    async def delete_chain(self, root_id: str) -> int:
        return await self._execute(
            "delete_chain",
            lambda db: db.rpc("delete_memory_chain", {"p_root_id": root_id}),
        )

    async def delete_user(self, user_id: str) -> int:
        return await self._execute(
            "delete_user",
            lambda db: db.rpc("delete_user_memories", {"p_user_id": user_id}),
        )

    async def apply_decay(
        self,
        user_id: str,
        daily_rate: float,
        min_importance: float,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        changes: dict[str, dict[str, Any]] = {}
        for record in await self.list_memories(user_id):
            owed = decay_importance(record, daily_rate, min_importance, now)
            if owed is not None:
                importance, anchor = owed
                changes[record.id] = {"importance": importance, "last_decayed_at": anchor}
        return await self.batch_update(changes)

    async def increment_access(
        self,
        memory_id: str,
        boost: float,
        max_importance: float,
        now: Optional[datetime] = None,
    ) -> MemoryRecord:
        now = now or utcnow()
        rows = await self._execute(
            "increment_access",
            lambda db: db.rpc(
                "increment_memory_access",
                {
                    "p_id": memory_id,
                    "p_boost": boost,
                    "p_max_importance": max_importance,
                    "p_now": now.isoformat(),
                },
            ),
        )
        if not rows:
            raise NotFoundError("memory", memory_id)
        return _to_record(rows[0])

    async def forget_expired(
        self,
        user_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> list[str]:
        now = now or utcnow()
        rows = await self._execute(
            "forget_expired",
            lambda db: db.table("memories")
            .update(
                {
                    "is_forgotten": True,
                    "forget_reason": reason,
                    "tier": MemoryTier.COLD.value,
                    "updated_at": now.isoformat(),
                }
            )
            .eq("user_id", user_id)
            .eq("is_latest", True)
            .eq("is_forgotten", False)
            .lte("forget_after", now.isoformat()),
        )
        return [row["id"] for row in rows]
