"""
Database Package

Provides SQLAlchemy async session management, model definitions and the
pgvector-backed knowledge store.
"""

from .session import get_engine, get_session_factory, create_schema
from .models import Base, KnowledgeChunk, KnowledgeSource, RelevanceSetting
from .vector_store import PgVectorStore, PgRelevanceConfigStore

__all__ = [
    "get_engine",
    "get_session_factory",
    "create_schema",
    "Base",
    "KnowledgeChunk",
    "KnowledgeSource",
    "RelevanceSetting",
    "PgVectorStore",
    "PgRelevanceConfigStore",
]
