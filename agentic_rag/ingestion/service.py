"""
Ingest Service
--------------
Thin layer between callers (HTTP, CLI) and VersionedCorpusStore.

Synchronous ingests go straight to the store.  Background jobs report
progress through an IngestionJobRegistry:

    received -> parse -> chunk_embed_store (one event per stored chunk) -> done
    any stage that fails -> error

A background job never raises; failures become an "error" event carrying a
human-readable message and the underlying error text.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from agentic_rag.errors import AgenticRagError, ParseFailure
from agentic_rag.ingestion.jobs import IngestionJobRegistry
from agentic_rag.schemas import IngestProgressEvent, IngestResult

TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".csv", ".tsv", ".json", ".log", ".rst"}


def decode_text(data: bytes, name: str = "<upload>") -> str:
    """Decode uploaded bytes as UTF-8 text; binary content raises ParseFailure."""
    if b"\x00" in data:
        raise ParseFailure(f"{name} looks like a binary file; only plain text is supported")
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseFailure(f"{name} is not valid UTF-8 text: {exc}") from exc


def read_text_file(path: str | Path) -> str:
    """Read a plain UTF-8 text file."""
    p = Path(path)
    return decode_text(p.read_bytes(), p.name)


def _describe(exc: Exception) -> str:
    if isinstance(exc, ParseFailure):
        return "Could not read the uploaded file"
    if isinstance(exc, AgenticRagError):
        return f"Ingest failed ({type(exc).__name__})"
    return "Ingest failed with an unexpected error"


class IngestService:
    """
    Usage:
        service = IngestService(store, IngestionJobRegistry())
        job_id = service.jobs.new_job()
        executor.submit(service.run_file_job, job_id, "upload", "notes.txt", data)
    """

    def __init__(self, store, jobs: Optional[IngestionJobRegistry] = None) -> None:
        self.store = store
        self.jobs = jobs if jobs is not None else IngestionJobRegistry()

    def ingest_text(
        self,
        source: str,
        title: str,
        text: str,
        logical_id: Optional[str] = None,
        upsert_by_source_title: bool = True,
    ) -> IngestResult:
        return self.store.ingest_text(
            source,
            title,
            text,
            logical_id=logical_id,
            upsert_by_source_title=upsert_by_source_title,
        )

    def reembed(self, scope: Optional[str] = "latest", model_name: Optional[str] = None) -> int:
        return self.store.reembed(scope, model_name)

    # --- Background jobs --------------------------------------------------------

    def run_file_job(self, job_id: str, source: str, filename: str, data: bytes) -> Optional[IngestResult]:
        """Decode an uploaded file and ingest it, reporting progress on job_id."""
        self.jobs.emit(IngestProgressEvent.of(job_id, "received", 0, 1, f"Received {filename} ({len(data)} bytes)"))
        try:
            self.jobs.emit(IngestProgressEvent.of(job_id, "parse", 0, 1, f"Reading {filename}"))
            text = decode_text(data, filename)
        except ParseFailure as exc:
            logger.warning(f"[IngestService] job {job_id}: {exc}")
            self.jobs.emit(IngestProgressEvent.failed(job_id, _describe(exc), str(exc)))
            return None
        return self._ingest_for_job(job_id, source, filename, text)

    def run_ingest_job(self, job_id: str, source: str, title: str, text: str) -> Optional[IngestResult]:
        """Ingest already-decoded text, reporting progress on job_id."""
        self.jobs.emit(IngestProgressEvent.of(job_id, "received", 0, 1, f"Received {title} ({len(text)} chars)"))
        return self._ingest_for_job(job_id, source, title, text)

    def _ingest_for_job(self, job_id: str, source: str, title: str, text: str) -> Optional[IngestResult]:
        def on_progress(current: int, total: int) -> None:
            self.jobs.emit(
                IngestProgressEvent.of(job_id, "chunk_embed_store", current, total, f"Stored chunk {current}/{total}")
            )

        try:
            result = self.store.ingest_text(source, title, text, job_id=job_id, on_progress=on_progress)
        except Exception as exc:
            logger.error(f"[IngestService] job {job_id} failed: {exc}")
            self.jobs.emit(IngestProgressEvent.failed(job_id, _describe(exc), str(exc)))
            return None

        self.jobs.emit(
            IngestProgressEvent.finished(
                job_id, result, f"Stored {title} as version {result.version}"
            )
        )
        logger.info(f"[IngestService] job {job_id} done | document {result.document_id}")
        return result
