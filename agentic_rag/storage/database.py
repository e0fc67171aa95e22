"""Engine and session factory for the corpus database."""
from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def create_engine_for(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for url.

    SQLite files get their parent directory created and cross-thread access
    enabled (the retrieval fan-out searches from worker threads).
    """
    parsed = make_url(url)
    connect_args = {}
    if parsed.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args, echo=echo, future=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables. Call once at startup."""
    from agentic_rag.storage import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
