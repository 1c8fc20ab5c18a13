"""
Self-correcting retrieval for Mnemos.

- RelevanceGrader: remote or heuristic relevance grades with metadata boosts
- QueryRefiner: rewrites under-performing queries
- Reranker: Cohere cross-encoder with a BM25 fallback
- AgenticPipeline: the retrieve, grade, refine and rerank loop

Example:
    from mnemos.retrieval import AgenticPipeline, build_context

    result = await pipeline.retrieve("what does the user do?", user_id)
    context = build_context(result)
"""

from mnemos.retrieval.grader import (
    HeuristicRelevanceGrader,
    RelevanceGrader,
    RemoteRelevanceGrader,
)
from mnemos.retrieval.pipeline import (
    AgenticPipeline,
    build_context,
    fast_retrieve,
    graded_retrieve,
)
from mnemos.retrieval.refiner import (
    HeuristicQueryRefiner,
    QueryRefiner,
    RemoteQueryRefiner,
    decompose_query,
    extract_entities,
)
from mnemos.retrieval.reranker import BM25Reranker, CohereReranker, Reranker

__all__ = [
    "AgenticPipeline",
    "BM25Reranker",
    "CohereReranker",
    "HeuristicQueryRefiner",
    "HeuristicRelevanceGrader",
    "QueryRefiner",
    "RelevanceGrader",
    "RemoteQueryRefiner",
    "RemoteRelevanceGrader",
    "Reranker",
    "build_context",
    "decompose_query",
    "extract_entities",
    "fast_retrieve",
    "graded_retrieve",
]
