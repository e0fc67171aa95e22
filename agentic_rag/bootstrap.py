"""
Wires settings into a ready-to-use object graph.

Both the HTTP server and the CLI call build_components(); tests pass their
own embedder / chat fakes so nothing here touches the network.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.engine import Engine

from agentic_rag.config import Settings, load_settings
from agentic_rag.embedding.embedder import Embedder
from agentic_rag.generation.client import make_chat_client
from agentic_rag.ingestion.jobs import IngestionJobRegistry
from agentic_rag.ingestion.service import IngestService
from agentic_rag.serving.pipeline import AgenticPipeline
from agentic_rag.storage.corpus_store import VersionedCorpusStore
from agentic_rag.storage.database import create_engine_for, create_session_factory, init_db


@dataclass
class Components:
    settings: Settings
    engine: Engine
    store: VersionedCorpusStore
    pipeline: AgenticPipeline
    ingest: IngestService

    def dispose(self) -> None:
        self.engine.dispose()


def build_components(
    settings: Optional[Settings] = None,
    embedder=None,
    chat=None,
) -> Components:
    settings = settings or load_settings()

    engine = create_engine_for(settings.database.url, echo=settings.database.echo)
    init_db(engine)

    if embedder is None:
        embedder = Embedder(
            model=settings.embedding.model,
            dimensions=settings.embedding.dimensions,
            batch_size=settings.embedding.batch_size,
            base_url=settings.embedding.base_url,
        )
    if chat is None:
        chat = make_chat_client(settings.generation)

    store = VersionedCorpusStore(create_session_factory(engine), embedder)
    pipeline = AgenticPipeline(store, chat)
    ingest = IngestService(store, IngestionJobRegistry())

    logger.info(
        f"[Bootstrap] database={engine.url.render_as_string(hide_password=True)} | "
        f"embedding={store.embedding_model} | chat={getattr(chat, 'model', type(chat).__name__)}"
    )
    return Components(settings=settings, engine=engine, store=store, pipeline=pipeline, ingest=ingest)
