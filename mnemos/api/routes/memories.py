"""Memory lifecycle endpoints.

Create, read, forget and delete memories, plus per-user listing, profile,
stats and consolidation.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status

from mnemos.api.dependencies import get_manager, get_search
from mnemos.api.models import (
    ConsolidateRequest,
    DeleteResponse,
    MemoryCreate,
    MemoryForget,
    MemoryListResponse,
    MemoryResponse,
    ProfileResponse,
)
from mnemos.memory.manager import MemoryManager
from mnemos.memory.search import HybridSearch, format_memories_for_prompt
from mnemos.models.memory import (
    ConsolidationResult,
    MemoryKind,
    MemoryStats,
    MemoryTier,
    SearchFilters,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Memories"])


@router.post(
    "/memories",
    response_model=MemoryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a memory",
    description="Store a fact. A near-duplicate of an existing fact becomes its next version.",
)
async def create_memory(
    request: MemoryCreate,
    manager: MemoryManager = Depends(get_manager),
) -> MemoryResponse:
    record = await manager.create(request.user_id, request.to_candidate())
    return MemoryResponse.from_record(record)


@router.get("/memories/{memory_id}", response_model=MemoryResponse, summary="Get a memory")
async def get_memory(
    memory_id: str,
    manager: MemoryManager = Depends(get_manager),
) -> MemoryResponse:
    return MemoryResponse.from_record(await manager.get(memory_id))


@router.get(
    "/memories/{memory_id}/history",
    response_model=MemoryListResponse,
    summary="Version history",
    description="Every version in the chain containing this memory, oldest first.",
)
async def get_memory_history(
    memory_id: str,
    manager: MemoryManager = Depends(get_manager),
) -> MemoryListResponse:
    chain = await manager.get_history(memory_id)
    return MemoryListResponse(
        memories=[MemoryResponse.from_record(r) for r in chain],
        total=len(chain),
    )


@router.post(
    "/memories/{memory_id}/forget",
    response_model=MemoryResponse,
    summary="Forget a memory",
    description="Soft delete: the memory is kept, moved to the cold tier and excluded from search.",
)
async def forget_memory(
    memory_id: str,
    request: Optional[MemoryForget] = None,
    manager: MemoryManager = Depends(get_manager),
) -> MemoryResponse:
    reason = request.reason if request else "user_request"
    return MemoryResponse.from_record(await manager.forget(memory_id, reason))


@router.delete(
    "/memories/{memory_id}",
    response_model=DeleteResponse,
    summary="Delete a memory",
    description="Hard delete the whole version chain containing this memory.",
)
async def delete_memory(
    memory_id: str,
    manager: MemoryManager = Depends(get_manager),
) -> DeleteResponse:
    return DeleteResponse(deleted=await manager.delete_by_id(memory_id))


@router.get(
    "/users/{user_id}/memories",
    response_model=MemoryListResponse,
    summary="List a user's memories",
)
async def list_user_memories(
    user_id: str,
    tier: Optional[list[MemoryTier]] = Query(None),
    kind: Optional[list[MemoryKind]] = Query(None),
    static_only: bool = False,
    include_forgotten: bool = False,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    manager: MemoryManager = Depends(get_manager),
) -> MemoryListResponse:
    filters = SearchFilters(
        tiers=tier,
        kinds=kind,
        static_only=static_only,
        include_forgotten=include_forgotten,
    )
    records = await manager.list_memories(user_id, filters, limit)
    return MemoryListResponse(
        memories=[MemoryResponse.from_record(r) for r in records],
        total=len(records),
    )


@router.delete(
    "/users/{user_id}/memories",
    response_model=DeleteResponse,
    summary="Delete all of a user's memories",
)
async def delete_user_memories(
    user_id: str,
    manager: MemoryManager = Depends(get_manager),
) -> DeleteResponse:
    return DeleteResponse(deleted=await manager.delete_all(user_id))


@router.get(
    "/users/{user_id}/profile",
    response_model=ProfileResponse,
    summary="User profile",
    description="Static identity facts plus contextual facts, optionally ranked against a query.",
)
async def get_user_profile(
    user_id: str,
    query: Optional[str] = None,
    static_limit: Optional[int] = Query(None, ge=0, le=50),
    dynamic_limit: Optional[int] = Query(None, ge=0, le=50),
    search: HybridSearch = Depends(get_search),
) -> ProfileResponse:
    profile = await search.get_profile(user_id, query, static_limit, dynamic_limit)
    return ProfileResponse(
        user_id=user_id,
        static=[MemoryResponse.from_record(m) for m in profile.static],
        dynamic=[MemoryResponse.from_record(m) for m in profile.dynamic],
        context=format_memories_for_prompt(profile),
    )


@router.get("/users/{user_id}/stats", response_model=MemoryStats, summary="Memory statistics")
async def get_user_stats(
    user_id: str,
    manager: MemoryManager = Depends(get_manager),
) -> MemoryStats:
    return await manager.get_stats(user_id)


@router.post(
    "/users/{user_id}/consolidate",
    response_model=ConsolidationResult,
    summary="Consolidate near-duplicates",
    description="Merge clusters of near-duplicate memories. Use dry_run to preview.",
)
async def consolidate_user_memories(
    user_id: str,
    request: Optional[ConsolidateRequest] = None,
    manager: MemoryManager = Depends(get_manager),
) -> ConsolidationResult:
    request = request or ConsolidateRequest()
    result = await manager.consolidate(
        user_id,
        similarity_threshold=request.similarity_threshold,
        max_batch=request.max_batch,
        dry_run=request.dry_run,
    )
    logger.info(
        "consolidation_requested",
        user_id=user_id,
        dry_run=request.dry_run,
        candidates=len(result.candidates),
    )
    return result
