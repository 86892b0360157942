"""
SQLAlchemy Models

Defines the database schema for:
- Knowledge sources (document metadata)
- Knowledge chunks (text + pgvector embedding)
- The relevance configuration record
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    Text,
    DateTime,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from ..config import settings


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ---------------------------------------------------------------------
# Knowledge Source Model
# ---------------------------------------------------------------------

class KnowledgeSource(Base):
    """
    An uploaded or ingested document.

    ``level`` is mirrored onto every chunk row of the source.
    """
    __tablename__ = "kb_source"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    topic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    download_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    indexing_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    indexing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_errors: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)
    chunks_written: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    indexed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------
# Knowledge Chunk Model
# ---------------------------------------------------------------------

class KnowledgeChunk(Base):
    """
    One embedded span of a source document.

    Uses pgvector for similarity search.
    """
    __tablename__ = "kb_chunk"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("kb_source.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_name: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[str] = mapped_column(String(32), nullable=False)
    topic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    download_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    header: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # pgvector column - 768 dimensions for text-embedding-004
    embedding = Column(Vector(settings.embedding_dimensions), nullable=False)

    __table_args__ = (
        Index("idx_chunk_source", "source_id"),
        Index("idx_chunk_level_topic", "level", "topic"),
    )


# ---------------------------------------------------------------------
# Relevance Configuration Model
# ---------------------------------------------------------------------

class RelevanceSetting(Base):
    """
    Single-row relevance configuration (id is always 1).

    A NULL threshold means "use the measure's default".
    """
    __tablename__ = "kb_relevance_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    distance_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
