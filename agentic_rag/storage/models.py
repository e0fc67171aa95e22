"""
Corpus tables.

  documents    one row per document VERSION; logical_id groups the versions
               of one re-uploaded source and at most one of them is_latest
  chunks       passages of one document version with their embedding and
               the name of the model that produced it
  ingest_jobs  which document a background ingest job wrote
  corpus_revision
               single-row counter bumped by every write that changes what
               search can see
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from agentic_rag.storage.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentRow(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    logical_id = Column(String(36), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    is_latest = Column(Boolean, nullable=False, default=True)

    source = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    chunks = relationship(
        "ChunkRow",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="ChunkRow.chunk_index",
    )

    __table_args__ = (
        UniqueConstraint("logical_id", "version", name="documents_logical_version_uq"),
        Index("documents_latest_idx", "is_latest"),
        Index("documents_source_title_idx", "source", "title"),
    )


class ChunkRow(Base):
    __tablename__ = "chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(JSON(none_as_null=True), nullable=True)   # list[float]
    embedding_model = Column(String(200), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    document = relationship("DocumentRow", back_populates="chunks")


class IngestJobRow(Base):
    __tablename__ = "ingest_jobs"

    job_id = Column(String(36), primary_key=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CorpusRevisionRow(Base):
    __tablename__ = "corpus_revision"

    id = Column(Integer, primary_key=True)
    revision = Column(Integer, nullable=False, default=0)
