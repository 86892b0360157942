"""
API Models for the Knowledge Base Server

This module defines all Pydantic models used for request/response validation
across search, source management, admin and chat endpoints.

Design Goals
------------
- Strong typing
- Safe defaults (no shared mutable state)
- Clear schema documentation
- Explicit result contracts
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..embeddings.models import ChunkError, IndexingStatus, Level, Source


# ---------------------------------------------------------------------
# Shared Contracts
# ---------------------------------------------------------------------

class OperationResult(BaseModel):
    """
    Standardized mutation operation result.
    Used for create/update/delete-style endpoints.
    """
    status: Literal["updated", "deleted", "created", "queued", "ok"]
    count: Optional[int] = Field(default=None, ge=0)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Search Models
# ---------------------------------------------------------------------

class SearchRequest(BaseModel):
    """
    Request model for knowledge base search.
    """
    query: str = Field(..., description="Free-text user question")
    limit: int = Field(default=5, ge=1, le=50)
    topic: Optional[str] = None
    levels: Optional[List[str]] = Field(
        default=None,
        description="Restrict the search to these tiers",
    )

    model_config = ConfigDict(extra="forbid")


class TestSearchRequest(SearchRequest):
    """Admin search with an optional per-call threshold override."""
    distance_threshold: Optional[float] = None


# ---------------------------------------------------------------------
# Source Models
# ---------------------------------------------------------------------

class SourceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    level: str = Field(..., description="Priority tier, e.g. 'High'")
    text: str = Field(..., description="Full text content to index")
    topic: Optional[str] = None
    description: Optional[str] = None
    download_url: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class SourceMoveRequest(BaseModel):
    level: str

    model_config = ConfigDict(extra="forbid")


class SourceReindexRequest(BaseModel):
    text: str

    model_config = ConfigDict(extra="forbid")


class SourceResponse(BaseModel):
    id: str
    name: str
    level: Level
    topic: Optional[str] = None
    description: Optional[str] = None
    download_url: Optional[str] = None
    indexing_status: IndexingStatus
    indexing_error: Optional[str] = None
    chunk_errors: List[ChunkError] = Field(default_factory=list)
    chunks_written: int = 0
    created_at: datetime
    indexed_at: Optional[datetime] = None

    @classmethod
    def from_source(cls, source: Source) -> "SourceResponse":
        return cls(**source.model_dump())


# ---------------------------------------------------------------------
# Admin Models
# ---------------------------------------------------------------------

class RelevanceSettings(BaseModel):
    """Current relevance configuration as seen by the search path."""
    distance_threshold: float
    source: Literal["override", "configured", "default", "fallback"]
    measure: str
    clamped: bool = False


class RelevanceUpdateRequest(BaseModel):
    """``null`` clears the stored value and restores the measure default."""
    distance_threshold: Optional[float] = None

    model_config = ConfigDict(extra="forbid")


class StatsResponse(BaseModel):
    backend: str
    measure: str
    total_vectors: int
    total_sources: int
    indexed_sources: int
    chunks_per_level: Dict[str, int] = Field(default_factory=dict)
    queue_size: int = 0


class EmbeddingDiagnostics(BaseModel):
    success: bool
    model: str
    embedding_vector_length: Optional[int] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Chat Models
# ---------------------------------------------------------------------

class ChatMessage(BaseModel):
    """
    Single message in a chat conversation.
    """
    role: Literal["user", "assistant", "system"]
    content: str

    model_config = ConfigDict(extra="forbid")


class ChatRequest(BaseModel):
    """
    Request model for the chat endpoint.

    The last user message is used as the retrieval query.
    """
    messages: List[ChatMessage] = Field(..., min_length=1)
    topic: Optional[str] = None
    limit: int = Field(default=5, ge=1, le=20)

    model_config = ConfigDict(extra="forbid")


class Citation(BaseModel):
    source_id: str
    source_name: str
    level: str
    chunk_number: Optional[int] = None
    download_url: Optional[str] = None
    distance: float


class ChatResponse(BaseModel):
    """
    Response model returned by the chat endpoint.
    """
    messages: List[ChatMessage]
    citations: List[Citation] = Field(default_factory=list)
    retrieval_failed: bool = False
