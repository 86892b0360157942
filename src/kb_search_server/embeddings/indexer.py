"""
Source Indexing

Write-side counterpart to retrieval: splits a source's text into chunks,
embeds each chunk from its normalized text, and replaces the source's old
chunks with the new set.

Every write to a source (index, delete, move) first claims it through the
store's optimistic ``processing`` status, so two writers can never
interleave on the same source.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ..config import settings
from ..core.errors import (
    ConfigurationError,
    EmbeddingError,
    SourceBusyError,
    SourceNotFoundError,
)
from ..retrieval.normalizer import normalize
from .models import Chunk, ChunkError, IndexingStatus, Level, Source, TaskType
from .protocols import EmbeddingProvider, KnowledgeStore

logger = logging.getLogger("kb.indexer")


def build_splitter(
    chunk_size: Optional[int] = None,
    chunk_overlap: Optional[int] = None,
) -> RecursiveCharacterTextSplitter:
    return RecursiveCharacterTextSplitter(
        chunk_size=chunk_size or settings.chunk_size,
        chunk_overlap=settings.chunk_overlap if chunk_overlap is None else chunk_overlap,
        length_function=len,
        separators=["\n\n", "\n", ".", " ", ""],
    )


class IndexingService:
    """
    Creates, re-indexes, moves and deletes sources.

    Parameters
    ----------
    store : KnowledgeStore
        Backend holding both sources and chunks.

    embedder : EmbeddingProvider
        Provider used with ``RETRIEVAL_DOCUMENT``.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: EmbeddingProvider,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._splitter = build_splitter(chunk_size, chunk_overlap)

    def split(self, text: str) -> List[str]:
        return [piece for piece in self._splitter.split_text(text or "") if piece.strip()]

    # ------------------------------------------------------------------
    # Source lifecycle
    # ------------------------------------------------------------------

    async def create_and_index(self, source: Source, content: str) -> Source:
        """Register a new source and index its content."""
        await self._store.create_source(source)
        logger.info("Created source %s (%s, level=%s)", source.id, source.name, source.level.value)
        return await self.index_source(source.id, content)

    async def index_source(self, source_id: str, content: str) -> Source:
        """
        Replace every chunk of ``source_id`` with chunks built from ``content``.

        Chunks whose embedding fails are skipped and recorded on the source;
        the source only fails outright when nothing could be embedded.

        Raises
        ------
        SourceNotFoundError
            If the source does not exist.
        SourceBusyError
            If another write is already in progress for this source.
        """
        source = await self._claim(source_id)

        try:
            pieces = self.split(content)
            if not pieces:
                await self._store.finish_processing(
                    source_id,
                    IndexingStatus.FAILED,
                    error="No text content to index.",
                )
                logger.warning("Source %s has no text content; nothing indexed", source_id)
                return await self._reload(source_id)

            chunks, chunk_errors = await self._embed_pieces(source, pieces)

            await self._store.delete_chunks_by_source(source_id)
            written = await self._store.upsert_chunks(chunks) if chunks else 0
        except ConfigurationError as exc:
            await self._store.finish_processing(
                source_id, IndexingStatus.FAILED, error=f"Misconfigured: {exc.setting}"
            )
            raise
        except Exception as exc:
            logger.exception("Indexing failed for source %s", source_id)
            await self._store.finish_processing(
                source_id, IndexingStatus.FAILED, error=type(exc).__name__
            )
            raise

        if written == 0:
            status = IndexingStatus.FAILED
            error: Optional[str] = "No chunks could be embedded."
        else:
            status = IndexingStatus.SUCCESS
            error = None

        await self._store.finish_processing(
            source_id,
            status,
            error=error,
            chunk_errors=chunk_errors,
            chunks_written=written,
        )
        logger.info(
            "Indexed source %s: %d/%d chunk(s) written, %d failed",
            source_id,
            written,
            len(pieces),
            len(chunk_errors),
        )
        return await self._reload(source_id)

    async def delete_source(self, source_id: str) -> int:
        """Delete a source and all of its chunks; returns the chunk count removed."""
        await self._claim(source_id)
        try:
            removed = await self._store.delete_source(source_id)
        except Exception:
            await self._store.finish_processing(
                source_id, IndexingStatus.FAILED, error="Delete failed."
            )
            raise
        logger.info("Deleted source %s and %d chunk(s)", source_id, removed)
        return removed

    async def move_source(self, source_id: str, new_level: Level) -> Source:
        """Change a source's level; every chunk it owns follows."""
        source = await self._claim(source_id)
        try:
            moved = await self._store.move_source(source_id, new_level)
        finally:
            await self._store.finish_processing(
                source_id,
                source.indexing_status,
                error=source.indexing_error,
                chunk_errors=source.chunk_errors,
                chunks_written=source.chunks_written,
            )
        logger.info(
            "Moved source %s from %s to %s (%d chunk(s) updated)",
            source_id,
            source.level.value,
            new_level.value,
            moved,
        )
        return await self._reload(source_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _claim(self, source_id: str) -> Source:
        """
        Mark the source as processing and return its state from before the claim.
        """
        before = await self._store.get_source(source_id)
        if before is None:
            raise SourceNotFoundError(f"Source '{source_id}' not found.")
        before = before.model_copy(deep=True)
        if not await self._store.try_begin_processing(source_id):
            raise SourceBusyError(f"Source {source_id} is already being processed.")
        return before

    async def _reload(self, source_id: str) -> Source:
        source = await self._store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(f"Source '{source_id}' not found.")
        return source

    async def _embed_pieces(
        self,
        source: Source,
        pieces: List[str],
    ) -> Tuple[List[Chunk], List[ChunkError]]:
        chunks: List[Chunk] = []
        errors: List[ChunkError] = []

        for number, piece in enumerate(pieces, start=1):
            normalized = normalize(piece)
            if not normalized:
                errors.append(ChunkError(chunk_number=number, error="Chunk is empty after normalization."))
                continue
            try:
                vector = await self._embedder.embed(normalized, TaskType.RETRIEVAL_DOCUMENT)
            except EmbeddingError as exc:
                logger.warning(
                    "Skipping chunk %d of source %s: %s", number, source.id, exc
                )
                errors.append(ChunkError(chunk_number=number, error=str(exc)))
                continue

            chunks.append(
                Chunk(
                    source_id=source.id,
                    source_name=source.name,
                    level=source.level.value,
                    topic=source.topic,
                    text=piece,
                    embedding=vector,
                    download_url=source.download_url,
                    chunk_number=number,
                    title=source.name,
                )
            )

        return chunks, errors
