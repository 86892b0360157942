"""
Knowledge Base Data Models

This module defines the canonical data model used to represent indexed
knowledge-base content:

- ``Chunk``: one embedded span of a source document (the retrievable unit)
- ``Source``: one uploaded or ingested document that owns chunks
- ``ResultChunk``: the fixed result shape returned by search

Chunks are immutable once created; re-indexing a source replaces its chunks.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field, ConfigDict


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------

class Level(str, Enum):
    """
    Priority tier of a source and its chunks, in descending priority.

    ``ARCHIVE`` is a storage tier only; it is never searched.
    """

    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    SPANISH_PDFS = "Spanish PDFs"
    CHAT_HISTORY = "Chat History"
    ARCHIVE = "Archive"


LEVEL_ORDER: tuple[Level, ...] = tuple(Level)

SEARCHABLE_LEVELS: tuple[Level, ...] = (
    Level.HIGH,
    Level.MEDIUM,
    Level.LOW,
    Level.SPANISH_PDFS,
    Level.CHAT_HISTORY,
)

_RANKS = {level.value: rank for rank, level in enumerate(LEVEL_ORDER)}


def level_rank(level: str | Level | None) -> int:
    """
    Return the priority rank of ``level`` (0 is highest).

    Unknown values rank after every recognised tier.
    """
    if isinstance(level, Level):
        level = level.value
    return _RANKS.get(level or "", len(LEVEL_ORDER))


def parse_level(value: str) -> Optional[Level]:
    """Case-insensitive lookup of a level by value; None when unknown."""
    for level in Level:
        if level.value.lower() == value.strip().lower():
            return level
    return None


class TaskType(str, Enum):
    """Embedding task hint passed to the provider."""

    RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
    RETRIEVAL_QUERY = "RETRIEVAL_QUERY"


class DistanceMeasure(str, Enum):
    """Distance metric of the nearest-neighbour index. Smaller is closer."""

    COSINE = "cosine"
    EUCLIDEAN = "euclidean"


class IndexingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------
# Chunk
# ---------------------------------------------------------------------

class Chunk(BaseModel):
    """
    A single indexed document chunk.

    ``embedding`` is computed from the normalized ``text`` with the same
    normalizer and model used for queries.
    """

    id: str = Field(default_factory=new_id, min_length=1)
    source_id: str = Field(..., min_length=1)
    source_name: str = Field(..., min_length=1)
    level: str = Field(..., min_length=1)
    topic: Optional[str] = None
    text: str = Field(..., min_length=1)
    embedding: Optional[List[float]] = None
    download_url: Optional[str] = None
    chunk_number: int = Field(default=1, ge=1)

    # Citation-only positional metadata
    page_number: Optional[int] = None
    title: Optional[str] = None
    header: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
    )


# ---------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------

class ChunkError(BaseModel):
    """Embedding failure recorded against a source for one chunk."""

    chunk_number: int
    error: str


class Source(BaseModel):
    """
    One uploaded or ingested unit of content.

    A source's ``level`` is always mirrored on every chunk it owns.
    """

    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(..., min_length=1)
    level: Level
    topic: Optional[str] = None
    description: Optional[str] = None
    download_url: Optional[str] = None

    indexing_status: IndexingStatus = IndexingStatus.PENDING
    indexing_error: Optional[str] = None
    chunk_errors: List[ChunkError] = Field(default_factory=list)
    chunks_written: int = 0
    processing_started_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_utcnow)
    indexed_at: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")

    def claim_expired(self, lease_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when a ``processing`` claim has outlived its lease."""
        if self.processing_started_at is None:
            return True
        now = now or _utcnow()
        return (now - self.processing_started_at).total_seconds() > lease_seconds


# ---------------------------------------------------------------------
# Search contracts
# ---------------------------------------------------------------------

class SearchFilters(BaseModel):
    """Optional restriction applied by ``find_nearest``."""

    levels: Optional[List[str]] = None
    topic: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    def matches(self, chunk: Chunk) -> bool:
        if self.levels is not None and chunk.level not in self.levels:
            return False
        if self.topic is not None and chunk.topic != self.topic:
            return False
        return True

    @classmethod
    def for_levels(
        cls,
        levels: Sequence[str | Level],
        topic: Optional[str] = None,
    ) -> "SearchFilters":
        return cls(
            levels=[l.value if isinstance(l, Level) else l for l in levels],
            topic=topic,
        )


class ResultChunk(BaseModel):
    """
    Canonical search result.

    Carries the chunk text plus the metadata needed to cite it and to show
    a human why it was returned (``level`` and ``distance``).
    """

    id: str
    source_id: str
    source_name: str
    level: str
    topic: Optional[str] = None
    text: str
    download_url: Optional[str] = None
    distance: float
    chunk_number: Optional[int] = None
    page_number: Optional[int] = None
    title: Optional[str] = None
    header: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_chunk(cls, chunk: Chunk, distance: float) -> "ResultChunk":
        return cls(
            id=chunk.id,
            source_id=chunk.source_id,
            source_name=chunk.source_name,
            level=chunk.level,
            topic=chunk.topic,
            text=chunk.text,
            download_url=chunk.download_url,
            distance=float(distance),
            chunk_number=chunk.chunk_number,
            page_number=chunk.page_number,
            title=chunk.title,
            header=chunk.header,
        )
