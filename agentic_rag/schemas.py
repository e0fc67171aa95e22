"""
Core Pydantic schemas for the agentic RAG service.

Storage, retrieval, the answer pipeline and the HTTP layer all exchange these
models, so a chunk returned by search can be cited, streamed and logged
without re-mapping.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Corpus -------------------------------------------------------------------

class IngestResult(BaseModel):
    """Identity of the document version written by one ingest."""

    document_id: int
    logical_id: str                      # Stable across re-uploads
    version: int                         # 1-based, monotonic per logical_id


class DocumentVersion(BaseModel):
    document_id: int
    logical_id: str
    version: int
    is_latest: bool
    source: str
    title: str
    created_at: Optional[datetime] = None


class CorpusStats(BaseModel):
    latest_documents: int
    total_documents: int
    chunks: int
    embedding_model: str


# --- Retrieval ----------------------------------------------------------------

class ChunkHit(BaseModel):
    """
    One similarity-search result.

    score is 1 - cosine distance (i.e. cosine similarity); higher is better.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: int
    document_id: int
    title: str
    chunk_index: int
    content: str
    score: float


class Citation(BaseModel):
    chunk_id: int
    title: str
    chunk_index: int
    score: float

    @classmethod
    def from_hit(cls, hit: ChunkHit) -> "Citation":
        return cls(
            chunk_id=hit.chunk_id,
            title=hit.title,
            chunk_index=hit.chunk_index,
            score=hit.score,
        )


class FinalAnswer(BaseModel):
    """Terminal result of one question."""

    answer: str
    citations: list[Citation] = Field(default_factory=list)
    grounded: bool = False               # False for greetings and exhausted retries
    attempts: int = 0                    # Synthesis attempts used (0 = ungrounded path)


# --- Events -------------------------------------------------------------------

class AgentEvent(BaseModel):
    """Observability-only trace event emitted by a pipeline stage."""

    agent: str                           # e.g. "router", "retriever-b", "judge"
    type: str                            # e.g. "route", "retrieve", "judge"
    ts: datetime = Field(default_factory=_utcnow)
    data: dict[str, Any] = Field(default_factory=dict)


class IngestProgressEvent(BaseModel):
    """Progress of a background ingest job.  done=True marks the last event."""

    job_id: str
    stage: str                           # received | chunk_embed_store | done | error
    current: int = 0
    total: int = 0
    message: str = ""
    document_id: Optional[int] = None
    logical_id: Optional[str] = None
    version: Optional[int] = None
    done: bool = False
    error: Optional[str] = None
    ts: datetime = Field(default_factory=_utcnow)

    @classmethod
    def of(cls, job_id: str, stage: str, current: int, total: int, message: str) -> "IngestProgressEvent":
        return cls(job_id=job_id, stage=stage, current=current, total=total, message=message)

    @classmethod
    def finished(cls, job_id: str, result: IngestResult, message: str) -> "IngestProgressEvent":
        return cls(
            job_id=job_id,
            stage="done",
            current=1,
            total=1,
            message=message,
            document_id=result.document_id,
            logical_id=result.logical_id,
            version=result.version,
            done=True,
        )

    @classmethod
    def failed(cls, job_id: str, message: str, error: str) -> "IngestProgressEvent":
        return cls(job_id=job_id, stage="error", message=message, done=True, error=error)
