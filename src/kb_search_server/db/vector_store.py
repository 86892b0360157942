"""
Vector Store

PostgreSQL + pgvector based knowledge store and similarity search.
Implements the same chunk/source interface as the FAISS store, with
filters pushed down into SQL.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, delete, update, func, or_
from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import KnowledgeChunk, KnowledgeSource, RelevanceSetting
from ..config import settings
from ..core.errors import IndexQueryError, IndexUnavailableError, SourceNotFoundError
from ..embeddings.models import (
    Chunk,
    ChunkError,
    DistanceMeasure,
    IndexingStatus,
    Level,
    SearchFilters,
    Source,
)

logger = logging.getLogger("kb.pgvector")


# ---------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------

def _chunk_from_row(row: KnowledgeChunk) -> Chunk:
    embedding = None
    if row.embedding is not None:
        embedding = [float(x) for x in row.embedding]
    return Chunk(
        id=row.id,
        source_id=row.source_id,
        source_name=row.source_name,
        level=row.level,
        topic=row.topic,
        text=row.text,
        embedding=embedding,
        download_url=row.download_url,
        chunk_number=row.chunk_number,
        page_number=row.page_number,
        title=row.title,
        header=row.header,
        created_at=row.created_at,
    )


def _source_from_row(row: KnowledgeSource) -> Source:
    return Source(
        id=row.id,
        name=row.name,
        level=Level(row.level),
        topic=row.topic,
        description=row.description,
        download_url=row.download_url,
        indexing_status=IndexingStatus(row.indexing_status),
        indexing_error=row.indexing_error,
        chunk_errors=[ChunkError(**e) for e in (row.chunk_errors or [])],
        chunks_written=row.chunks_written,
        processing_started_at=row.processing_started_at,
        created_at=row.created_at,
        indexed_at=row.indexed_at,
    )


def _classify(exc: SQLAlchemyError) -> Exception:
    """Map a database failure onto the retrieval error taxonomy."""
    if isinstance(exc, ProgrammingError):
        # Missing table / extension / operator: a deployment problem
        return IndexUnavailableError(f"Vector index is not available: {type(exc.orig).__name__}")
    if isinstance(exc, OperationalError) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        return IndexUnavailableError(
            f"Database unreachable: {type(exc).__name__}",
            transient=True,
        )
    return IndexQueryError(f"Vector query failed: {type(exc).__name__}")


class PgVectorStore:
    """
    PostgreSQL-backed knowledge store using pgvector for similarity search.

    Each public method runs in its own session and transaction, so
    source-level operations (delete, move) are all-or-nothing.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        measure: DistanceMeasure = DistanceMeasure.COSINE,
        delete_batch_size: Optional[int] = None,
        lease_seconds: Optional[float] = None,
    ) -> None:
        """
        Parameters
        ----------
        session_factory : async_sessionmaker[AsyncSession]
            Factory for SQLAlchemy async sessions.
        measure : DistanceMeasure
            Distance operator used for nearest-neighbour queries.
        delete_batch_size : Optional[int]
            Maximum rows deleted per statement when removing a source's chunks.
        lease_seconds : Optional[float]
            Age after which a ``processing`` claim is considered abandoned.
        """
        self._session_factory = session_factory
        self.measure = measure
        self._delete_batch_size = delete_batch_size or settings.delete_batch_size
        self._lease_seconds = (
            settings.processing_lease_seconds if lease_seconds is None else lease_seconds
        )

    # ------------------------------------------------------------------
    # Chunk API
    # ------------------------------------------------------------------

    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> int:
        """
        Insert or replace chunk rows with their embeddings.
        """
        if not chunks:
            return 0

        async with self._session_factory() as session, session.begin():
            for chunk in chunks:
                if not chunk.embedding:
                    raise IndexQueryError(f"Chunk {chunk.id} has no embedding.")
                await session.merge(
                    KnowledgeChunk(
                        id=chunk.id,
                        source_id=chunk.source_id,
                        source_name=chunk.source_name,
                        level=chunk.level,
                        topic=chunk.topic,
                        text=chunk.text,
                        download_url=chunk.download_url,
                        chunk_number=chunk.chunk_number,
                        page_number=chunk.page_number,
                        title=chunk.title,
                        header=chunk.header,
                        created_at=chunk.created_at,
                        embedding=chunk.embedding,
                    )
                )
        return len(chunks)

    async def _delete_source_chunks(self, session: AsyncSession, source_id: str) -> int:
        removed = 0
        while True:
            ids = (
                await session.execute(
                    select(KnowledgeChunk.id)
                    .where(KnowledgeChunk.source_id == source_id)
                    .limit(self._delete_batch_size)
                )
            ).scalars().all()
            if not ids:
                return removed
            await session.execute(delete(KnowledgeChunk).where(KnowledgeChunk.id.in_(ids)))
            removed += len(ids)

    async def delete_chunks_by_source(self, source_id: str) -> int:
        """
        Remove all chunks of a source in bounded batches, in one transaction.
        """
        async with self._session_factory() as session, session.begin():
            return await self._delete_source_chunks(session, source_id)

    async def delete_chunk(self, chunk_id: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(KnowledgeChunk).where(KnowledgeChunk.id == chunk_id)
            )
            return result.rowcount > 0

    async def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        async with self._session_factory() as session:
            row = await session.get(KnowledgeChunk, chunk_id)
            return _chunk_from_row(row) if row is not None else None

    async def delete_all_chunks(self) -> int:
        removed = 0
        async with self._session_factory() as session:
            while True:
                async with session.begin():
                    ids = (
                        await session.execute(
                            select(KnowledgeChunk.id).limit(self._delete_batch_size)
                        )
                    ).scalars().all()
                    if not ids:
                        break
                    await session.execute(
                        delete(KnowledgeChunk).where(KnowledgeChunk.id.in_(ids))
                    )
                removed += len(ids)
                logger.info("Deleted a batch of %d chunks (total %d)", len(ids), removed)
        return removed

    async def iter_chunks(self) -> AsyncIterator[Chunk]:
        async with self._session_factory() as session:
            rows = await session.stream_scalars(
                select(KnowledgeChunk).order_by(KnowledgeChunk.created_at, KnowledgeChunk.id)
            )
            async for row in rows:
                yield _chunk_from_row(row)

    async def find_nearest(
        self,
        vector: Sequence[float],
        k: int,
        measure: DistanceMeasure,
        filters: Optional[SearchFilters] = None,
    ) -> List[Tuple[Chunk, float]]:
        """
        Nearest-neighbour query using pgvector's distance operators.

        Returns
        -------
        List[Tuple[Chunk, float]]
            (chunk, distance) pairs ordered ascending by distance.
        """
        if measure is not self.measure:
            raise IndexQueryError(
                f"Store is configured for {self.measure.value} distance, "
                f"query asked for {measure.value}."
            )
        if k <= 0:
            return []

        query_vector = list(vector)
        if measure is DistanceMeasure.COSINE:
            distance = KnowledgeChunk.embedding.cosine_distance(query_vector)
        else:
            distance = KnowledgeChunk.embedding.l2_distance(query_vector)

        stmt = (
            select(KnowledgeChunk, distance.label("distance"))
            .order_by(distance, KnowledgeChunk.created_at, KnowledgeChunk.id)
            .limit(k)
        )

        if filters is not None:
            if filters.levels is not None:
                stmt = stmt.where(KnowledgeChunk.level.in_(filters.levels))
            if filters.topic is not None:
                stmt = stmt.where(KnowledgeChunk.topic == filters.topic)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as exc:
            raise _classify(exc) from exc

        return [(_chunk_from_row(row[0]), float(row.distance)) for row in rows]

    async def stats(self) -> Dict[str, Any]:
        """
        Return statistics about the store.
        """
        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(KnowledgeChunk))
            ).scalar() or 0

            per_level_rows = await session.execute(
                select(KnowledgeChunk.level, func.count()).group_by(KnowledgeChunk.level)
            )
            per_level = {level: count for level, count in per_level_rows.all()}

            total_sources = (
                await session.execute(select(func.count()).select_from(KnowledgeSource))
            ).scalar() or 0

            indexed_sources = (
                await session.execute(
                    select(func.count(func.distinct(KnowledgeChunk.source_id)))
                )
            ).scalar() or 0

        return {
            "backend": "pgvector",
            "measure": self.measure.value,
            "total_vectors": total,
            "total_sources": total_sources,
            "indexed_sources": indexed_sources,
            "chunks_per_level": per_level,
        }

    # ------------------------------------------------------------------
    # Source API
    # ------------------------------------------------------------------

    async def create_source(self, source: Source) -> Source:
        async with self._session_factory() as session, session.begin():
            session.add(
                KnowledgeSource(
                    id=source.id,
                    name=source.name,
                    level=source.level.value,
                    topic=source.topic,
                    description=source.description,
                    download_url=source.download_url,
                    indexing_status=source.indexing_status.value,
                    chunks_written=source.chunks_written,
                    created_at=source.created_at,
                )
            )
        return source

    async def get_source(self, source_id: str) -> Optional[Source]:
        async with self._session_factory() as session:
            row = await session.get(KnowledgeSource, source_id)
            return _source_from_row(row) if row is not None else None

    async def list_sources(self, level: Optional[Level] = None) -> List[Source]:
        stmt = select(KnowledgeSource).order_by(KnowledgeSource.created_at.desc())
        if level is not None:
            stmt = stmt.where(KnowledgeSource.level == level.value)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_source_from_row(row) for row in rows]

    async def delete_source(self, source_id: str) -> int:
        """
        Delete a source's chunks (batched) and its metadata in one transaction.
        """
        async with self._session_factory() as session, session.begin():
            row = await session.get(KnowledgeSource, source_id, with_for_update=True)
            if row is None:
                raise SourceNotFoundError(f"Source '{source_id}' not found.")
            removed = await self._delete_source_chunks(session, source_id)
            await session.delete(row)
        logger.info("Deleted source %s and %d chunks", source_id, removed)
        return removed

    async def move_source(self, source_id: str, new_level: Level) -> int:
        """
        Change a source's level and cascade it to all its chunks atomically.
        """
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(KnowledgeSource)
                .where(KnowledgeSource.id == source_id)
                .values(level=new_level.value)
            )
            if result.rowcount == 0:
                raise SourceNotFoundError(f"Source '{source_id}' not found.")
            chunks = await session.execute(
                update(KnowledgeChunk)
                .where(KnowledgeChunk.source_id == source_id)
                .values(level=new_level.value)
            )
            return chunks.rowcount

    async def try_begin_processing(self, source_id: str) -> bool:
        """
        Optimistically claim a source for indexing.

        Returns False if another worker holds a claim younger than the lease.
        """
        now = datetime.now(timezone.utc)
        expired = now - timedelta(seconds=self._lease_seconds)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(KnowledgeSource)
                .where(
                    KnowledgeSource.id == source_id,
                    or_(
                        KnowledgeSource.indexing_status != IndexingStatus.PROCESSING.value,
                        KnowledgeSource.processing_started_at.is_(None),
                        KnowledgeSource.processing_started_at < expired,
                    ),
                )
                .values(
                    indexing_status=IndexingStatus.PROCESSING.value,
                    indexing_error=None,
                    processing_started_at=now,
                )
            )
            if result.rowcount:
                return True
            exists = await session.get(KnowledgeSource, source_id)
            if exists is None:
                raise SourceNotFoundError(f"Source '{source_id}' not found.")
            return False

    async def finish_processing(
        self,
        source_id: str,
        status: IndexingStatus,
        error: Optional[str] = None,
        chunk_errors: Sequence[ChunkError] = (),
        chunks_written: int = 0,
    ) -> None:
        values: Dict[str, Any] = {
            "indexing_status": status.value,
            "indexing_error": error,
            "chunk_errors": [e.model_dump() for e in chunk_errors],
            "chunks_written": chunks_written,
            "processing_started_at": None,
        }
        if status is IndexingStatus.SUCCESS:
            values["indexed_at"] = datetime.now(timezone.utc)

        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(KnowledgeSource)
                .where(KnowledgeSource.id == source_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise SourceNotFoundError(f"Source '{source_id}' not found.")


class PgRelevanceConfigStore:
    """Relevance configuration persisted as a single database row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def read(self) -> Dict[str, Any]:
        async with self._session_factory() as session:
            row = await session.get(RelevanceSetting, 1)
        if row is None or row.distance_threshold is None:
            return {}
        return {"distance_threshold": row.distance_threshold}

    async def write(self, values: Dict[str, Any]) -> None:
        async with self._session_factory() as session, session.begin():
            await session.merge(
                RelevanceSetting(id=1, distance_threshold=values.get("distance_threshold"))
            )
