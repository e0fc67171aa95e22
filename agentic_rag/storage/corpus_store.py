"""
Versioned Corpus Store
-----------------------
Ingests chunked, embedded text as versions of a logical document and serves
k-nearest-neighbour search over the latest version of each document.

Versioning rules for ingest_text():
  - explicit logical_id    : reuse it, next version = max(existing) + 1
  - upsert by source+title : reuse the logical_id of the latest row with the
                             same (source, title), version + 1
  - otherwise              : mint a new logical_id at version 1

The previous latest row is demoted in the SAME transaction that inserts the
new version and its chunks, so an interrupted ingest can never leave two
latest rows (or a latest row without its chunks) behind.

Two writers re-uploading the same document race for the same version number;
the loser hits the (logical_id, version) unique constraint, rolls back, and
is retried against the fresh state (up to WRITE_ATTEMPTS times).

Similarity is cosine similarity (1 - cosine distance) computed with numpy
over chunks whose document is latest and whose embedding_model matches the
configured model.  Vectors from other models are invisible until re-embedded.

The decoded vector matrix is cached in memory and keyed by the
corpus_revision counter, which every ingest and re-embed bumps inside its
own transaction.  A search costs one revision read plus the matrix product
until the corpus changes, from this process or any other.
"""
from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import numpy as np
from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_random

from agentic_rag.chunking.chunker import smart_chunk
from agentic_rag.errors import ConfigurationError, PersistenceFailure
from agentic_rag.schemas import ChunkHit, CorpusStats, DocumentVersion, IngestResult
from agentic_rag.storage.models import ChunkRow, CorpusRevisionRow, DocumentRow, IngestJobRow
from agentic_rag.utils.helpers import truncate_text

ProgressCallback = Callable[[int, int], None]

REEMBED_SCOPES = {"latest", "all"}
WRITE_ATTEMPTS = 8
_REVISION_ROW_ID = 1


def _is_write_conflict(exc: BaseException) -> bool:
    """A concurrent writer won the race: duplicate version or a busy SQLite file."""
    cause = exc.__cause__ if isinstance(exc, PersistenceFailure) else None
    if isinstance(cause, IntegrityError):
        return True
    return isinstance(cause, OperationalError) and "locked" in str(cause).lower()


@dataclass(frozen=True)
class _Snapshot:
    """Searchable rows of one corpus revision with their stacked vectors."""

    revision: int
    rows: list[Any]
    widths: frozenset
    matrix: Optional[np.ndarray]
    norms: Optional[np.ndarray]


def _parse_logical_id(logical_id: Optional[str]) -> Optional[str]:
    if logical_id is None or not logical_id.strip():
        return None
    try:
        return str(uuid.UUID(logical_id.strip()))
    except ValueError as exc:
        raise ValueError(f"logical_id is not a UUID: {logical_id!r}") from exc


class VersionedCorpusStore:
    """
    Corpus persistence + retrieval over a SQLAlchemy session factory.

    Usage:
        store = VersionedCorpusStore(session_factory, embedder)
        res = store.ingest_text("file", "report.pdf", text)
        hits = store.search("total revenue", k=6)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        embedder,
        embedding_model: Optional[str] = None,
    ) -> None:
        self._session_factory = session_factory
        self.embedder = embedder
        self.embedding_model = embedding_model or embedder.model
        if not self.embedding_model:
            raise ConfigurationError("Embedding model name is required")
        self._snapshot: Optional[_Snapshot] = None
        self._snapshot_lock = threading.Lock()

    # --- Sessions -------------------------------------------------------------

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        """One commit-or-rollback unit; database errors become PersistenceFailure."""
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error(f"[CorpusStore] {action} failed: {exc}")
            raise PersistenceFailure(f"{action} failed: {exc}") from exc

    @staticmethod
    def _bump_revision(session: Session) -> None:
        bumped = session.execute(
            update(CorpusRevisionRow)
            .where(CorpusRevisionRow.id == _REVISION_ROW_ID)
            .values(revision=CorpusRevisionRow.revision + 1)
        )
        if bumped.rowcount == 0:
            session.add(CorpusRevisionRow(id=_REVISION_ROW_ID, revision=1))

    @staticmethod
    def _read_revision(session: Session) -> int:
        revision = session.execute(
            select(CorpusRevisionRow.revision).where(CorpusRevisionRow.id == _REVISION_ROW_ID)
        ).scalar()
        return revision or 0

    # --- Ingest ---------------------------------------------------------------

    def ingest_text(
        self,
        source: str,
        title: str,
        text: str,
        logical_id: Optional[str] = None,
        upsert_by_source_title: bool = True,
        job_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """
        Chunk, embed and persist text as the new latest version of a document.

        Raises:
            ValueError:          logical_id is given but is not a UUID.
            ExternalCallFailure: the embedding service failed (nothing written).
            PersistenceFailure:  the write failed or produced no document id.
        """
        lid = _parse_logical_id(logical_id)
        text = text or ""

        chunks = smart_chunk(text)
        vectors = self.embedder.embed_texts(chunks) if chunks else []
        logger.info(
            f"[CorpusStore] Ingest {source}:{title!r} | {len(text)} chars -> "
            f"{len(chunks)} chunk(s) | model={self.embedding_model}"
        )

        result = self._write_version(
            source, title, text, lid, upsert_by_source_title, chunks, vectors, job_id, on_progress
        )
        logger.info(
            f"[CorpusStore] Stored document {result.document_id} | "
            f"logical_id={result.logical_id} v{result.version}"
        )
        return result

    @retry(
        retry=retry_if_exception(_is_write_conflict),
        stop=stop_after_attempt(WRITE_ATTEMPTS),
        wait=wait_random(min=0.01, max=0.1),
        before_sleep=lambda rs: logger.warning(
            f"[CorpusStore] Write conflict, retrying ingest (attempt {rs.attempt_number})"
        ),
        reraise=True,
    )
    def _write_version(
        self,
        source: str,
        title: str,
        text: str,
        lid: Optional[str],
        upsert_by_source_title: bool,
        chunks: list[str],
        vectors,
        job_id: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> IngestResult:
        """Demote the previous latest row and insert the new version in one transaction."""
        with self._transaction("ingest") as session:
            next_version = 1
            if lid is not None:
                current_max = session.execute(
                    select(func.max(DocumentRow.version)).where(DocumentRow.logical_id == lid)
                ).scalar()
                next_version = (current_max or 0) + 1
                self._demote(session, lid)
            elif upsert_by_source_title:
                latest = session.execute(
                    select(DocumentRow.logical_id, DocumentRow.version)
                    .where(
                        DocumentRow.source == source,
                        DocumentRow.title == title,
                        DocumentRow.is_latest.is_(True),
                    )
                    .order_by(DocumentRow.version.desc())
                    .limit(1)
                ).first()
                if latest is not None:
                    lid = latest.logical_id
                    next_version = latest.version + 1
                    self._demote(session, lid)

            if lid is None:
                lid = str(uuid.uuid4())

            doc = DocumentRow(
                logical_id=lid,
                version=next_version,
                is_latest=True,
                source=source,
                title=title,
                text=text,
            )
            session.add(doc)
            session.flush()
            if doc.id is None:
                raise PersistenceFailure("Document insert returned no id")

            total = len(chunks)
            for idx, (content, vec) in enumerate(zip(chunks, vectors)):
                session.add(
                    ChunkRow(
                        document_id=doc.id,
                        chunk_index=idx,
                        content=content,
                        embedding=[float(x) for x in vec],
                        embedding_model=self.embedding_model,
                    )
                )
                if on_progress is not None:
                    on_progress(idx + 1, total)

            if job_id:
                session.add(IngestJobRow(job_id=job_id, document_id=doc.id))
            self._bump_revision(session)

            return IngestResult(document_id=doc.id, logical_id=lid, version=next_version)

    @staticmethod
    def _demote(session: Session, logical_id: str) -> None:
        session.execute(
            update(DocumentRow)
            .where(DocumentRow.logical_id == logical_id, DocumentRow.is_latest.is_(True))
            .values(is_latest=False)
        )

    # --- Search ---------------------------------------------------------------

    def search(self, query: Optional[str], k: int) -> list[ChunkHit]:
        """
        Return up to k chunks best-first by cosine similarity to query.

        A blank query returns [] without calling the embedding service.
        """
        if query is None or not query.strip():
            logger.debug("[CorpusStore] search(): blank query, skipping")
            return []
        if k <= 0:
            return []

        qvec = np.asarray(self.embedder.embed_query(query), dtype=np.float32).ravel()

        snapshot = self._current_snapshot()
        rows = snapshot.rows
        if not rows:
            return []

        if snapshot.widths != {qvec.shape[0]}:
            raise ConfigurationError(
                f"Query vector has {qvec.shape[0]} dimensions but corpus vectors "
                f"tagged {self.embedding_model!r} have {sorted(snapshot.widths)}"
            )

        norms = snapshot.norms * np.linalg.norm(qvec)
        norms = np.where(norms == 0, 1, norms)
        scores = (snapshot.matrix @ qvec) / norms

        order = np.argsort(-scores, kind="stable")[:k]
        hits = [
            ChunkHit(
                chunk_id=rows[i].id,
                document_id=rows[i].document_id,
                title=rows[i].title,
                chunk_index=rows[i].chunk_index,
                content=rows[i].content,
                score=float(scores[i]),
            )
            for i in order
        ]
        logger.debug(
            f"[CorpusStore] search k={k} query={truncate_text(query, 80)!r} -> "
            f"{len(hits)} hit(s)" + (f", top={hits[0].score:.4f}" if hits else "")
        )
        return hits

    def _current_snapshot(self) -> _Snapshot:
        """Cached snapshot for the stored revision, reloaded when the revision moved."""
        with self._snapshot_lock:
            try:
                with self._session_factory() as session:
                    # Revision before rows: a concurrent write can only make the
                    # rows newer than the label, which forces a reload next time.
                    revision = self._read_revision(session)
                    cached = self._snapshot
                    if cached is not None and cached.revision == revision:
                        return cached
                    self._snapshot = self._load_snapshot(session, revision)
            except SQLAlchemyError as exc:
                raise PersistenceFailure(f"search failed: {exc}") from exc
            return self._snapshot

    def _load_snapshot(self, session: Session, revision: int) -> _Snapshot:
        rows = session.execute(
            select(
                ChunkRow.id,
                ChunkRow.document_id,
                DocumentRow.title,
                ChunkRow.chunk_index,
                ChunkRow.content,
                ChunkRow.embedding,
            )
            .join(DocumentRow, DocumentRow.id == ChunkRow.document_id)
            .where(
                DocumentRow.is_latest.is_(True),
                ChunkRow.embedding_model == self.embedding_model,
                ChunkRow.embedding.is_not(None),
            )
        ).all()
        rows = [r for r in rows if r.embedding]
        widths = frozenset(len(r.embedding) for r in rows)

        matrix = norms = None
        if len(widths) == 1:
            matrix = np.asarray([r.embedding for r in rows], dtype=np.float32)
            norms = np.linalg.norm(matrix, axis=1)
        logger.debug(f"[CorpusStore] Loaded {len(rows)} vector(s) at corpus revision {revision}")
        return _Snapshot(revision=revision, rows=rows, widths=widths, matrix=matrix, norms=norms)

    # --- Re-embed -------------------------------------------------------------

    def reembed(self, scope: Optional[str] = "latest", model_name: Optional[str] = None) -> int:
        """
        Recompute embeddings for every chunk of in-scope documents.

        scope is "latest" (default) or "all".  Chunks are retagged with
        model_name, or the configured model when none is given.  Content,
        order and chunk_index are never touched.
        """
        scope_norm = (scope or "latest").strip().lower() or "latest"
        if scope_norm not in REEMBED_SCOPES:
            raise ValueError(f"scope must be one of {sorted(REEMBED_SCOPES)}, got {scope!r}")
        tag = model_name.strip() if model_name and model_name.strip() else self.embedding_model

        with self._transaction("reembed") as session:
            stmt = (
                select(ChunkRow)
                .join(DocumentRow, DocumentRow.id == ChunkRow.document_id)
                .order_by(DocumentRow.id, ChunkRow.chunk_index)
            )
            if scope_norm == "latest":
                stmt = stmt.where(DocumentRow.is_latest.is_(True))
            chunks = list(session.scalars(stmt).all())

            vectors = self.embedder.embed_texts([c.content for c in chunks]) if chunks else []
            for row, vec in zip(chunks, vectors):
                row.embedding = [float(x) for x in vec]
                row.embedding_model = tag
            self._bump_revision(session)

        logger.info(f"[CorpusStore] Re-embedded {len(chunks)} chunk(s) | scope={scope_norm} model={tag}")
        return len(chunks)

    # --- Introspection --------------------------------------------------------

    def has_any_documents(self) -> bool:
        try:
            with self._session_factory() as session:
                first = session.execute(
                    select(DocumentRow.id).where(DocumentRow.is_latest.is_(True)).limit(1)
                ).first()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"document probe failed: {exc}") from exc
        return first is not None

    def stats(self) -> CorpusStats:
        try:
            with self._session_factory() as session:
                latest = session.execute(
                    select(func.count(DocumentRow.id)).where(DocumentRow.is_latest.is_(True))
                ).scalar_one()
                total = session.execute(select(func.count(DocumentRow.id))).scalar_one()
                chunks = session.execute(select(func.count(ChunkRow.id))).scalar_one()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"stats failed: {exc}") from exc
        return CorpusStats(
            latest_documents=latest,
            total_documents=total,
            chunks=chunks,
            embedding_model=self.embedding_model,
        )

    def list_versions(self, logical_id: str) -> list[DocumentVersion]:
        lid = _parse_logical_id(logical_id)
        if lid is None:
            return []
        try:
            with self._session_factory() as session:
                rows = session.scalars(
                    select(DocumentRow)
                    .where(DocumentRow.logical_id == lid)
                    .order_by(DocumentRow.version)
                ).all()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"version listing failed: {exc}") from exc
        return [
            DocumentVersion(
                document_id=r.id,
                logical_id=r.logical_id,
                version=r.version,
                is_latest=r.is_latest,
                source=r.source,
                title=r.title,
                created_at=r.created_at,
            )
            for r in rows
        ]
