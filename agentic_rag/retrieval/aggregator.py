"""
Fan-out result aggregation.

The three retrievers search the same query with k = 6, 10 and 14, so their
results overlap heavily.  Aggregation keeps one hit per chunk id (the first
seen), orders by score and keeps the top few, which bounds the synthesis
prompt and removes the duplicates the overlapping k values produce.
"""
from __future__ import annotations

from typing import Iterable

from agentic_rag.schemas import ChunkHit

TOP_N = 3


def aggregate_hits(hits: Iterable[ChunkHit], top_n: int = TOP_N) -> list[ChunkHit]:
    """Dedupe by chunk_id (first occurrence wins), sort by score desc, keep top_n."""
    unique: dict[int, ChunkHit] = {}
    for hit in hits:
        unique.setdefault(hit.chunk_id, hit)
    ranked = sorted(unique.values(), key=lambda h: h.score, reverse=True)
    return ranked[: max(0, top_n)]
