"""Reciprocal Rank Fusion of vector and BM25 search results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

DEFAULT_K = 60.0


@dataclass
class VecHit:
    """A vector search hit; ``score`` is cosine similarity."""

    chunk_id: str
    memory_id: str
    score: float
    payload: Optional[dict[str, Any]] = None


@dataclass
class BM25Hit:
    """A full-text hit; its position in the list is its rank."""

    chunk_id: str
    memory_id: str
    content: str = ""
    rank: float = 0.0


@dataclass
class FusedResult:
    chunk_id: str
    memory_id: str
    score: float
    content: str = ""
    payload: Optional[dict[str, Any]] = None


@dataclass
class FusionConfig:
    """``k`` <= 0 falls back to 60; hits must pass a floor or rank cap to be kept."""

    k: float = DEFAULT_K
    vector_floor: float = 0.0
    bm25_k: int = 0


@dataclass
class _Entry:
    memory_id: str = ""
    content: str = ""
    payload: Optional[dict[str, Any]] = None
    score: float = 0.0
    eligible: bool = False


def fuse(
    config: FusionConfig,
    vec_hits: Optional[Sequence[VecHit]],
    bm25_hits: Optional[Sequence[BM25Hit]],
) -> list[FusedResult]:
    """Merge both ranked lists, best score first, ties by chunk ID."""
    k = config.k if config.k > 0 else DEFAULT_K
    acc: dict[str, _Entry] = {}

    for rank, hit in enumerate(vec_hits or (), start=1):
        entry = acc.setdefault(hit.chunk_id, _Entry())
        entry.memory_id = hit.memory_id
        if hit.payload is not None:
            entry.payload = hit.payload
        entry.score += 1.0 / (k + rank)
        if hit.score >= config.vector_floor:
            entry.eligible = True

    for rank, hit in enumerate(bm25_hits or (), start=1):
        entry = acc.setdefault(hit.chunk_id, _Entry())
        if not entry.memory_id:
            entry.memory_id = hit.memory_id
        if hit.content:
            entry.content = hit.content
        entry.score += 1.0 / (k + rank)
        if rank <= config.bm25_k:
            entry.eligible = True

    results = [
        FusedResult(
            chunk_id=chunk_id,
            memory_id=e.memory_id,
            score=e.score,
            content=e.content,
            payload=e.payload,
        )
        for chunk_id, e in acc.items()
        if e.eligible
    ]
    results.sort(key=lambda r: (-r.score, r.chunk_id))
    return results