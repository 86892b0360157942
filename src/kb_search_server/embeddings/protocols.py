"""Protocols for the retrieval pipeline's external collaborators."""

from __future__ import annotations

from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from .models import (
    Chunk,
    ChunkError,
    DistanceMeasure,
    IndexingStatus,
    Level,
    SearchFilters,
    Source,
    TaskType,
)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns normalized text into fixed-length vectors."""

    @property
    def model_name(self) -> str:
        ...

    async def embed(self, text: str, task_type: TaskType) -> List[float]:
        ...

    async def embed_many(
        self,
        texts: Sequence[str],
        task_type: TaskType,
    ) -> List[List[float]]:
        ...


@runtime_checkable
class NearestNeighborIndex(Protocol):
    """
    Nearest-neighbour search.

    Results are ordered ascending by distance (smaller is more similar).
    """

    async def find_nearest(
        self,
        vector: Sequence[float],
        k: int,
        measure: DistanceMeasure,
        filters: Optional[SearchFilters] = None,
    ) -> List[Tuple[Chunk, float]]:
        ...


@runtime_checkable
class ChunkStore(NearestNeighborIndex, Protocol):
    """System of record for chunks and their vectors."""

    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> int:
        ...

    async def delete_chunks_by_source(self, source_id: str) -> int:
        ...

    async def delete_chunk(self, chunk_id: str) -> bool:
        ...

    async def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        ...

    async def delete_all_chunks(self) -> int:
        ...

    def iter_chunks(self) -> AsyncIterator[Chunk]:
        ...

    async def stats(self) -> Dict[str, Any]:
        ...


@runtime_checkable
class SourceStore(Protocol):
    """Source metadata with cascading delete / move semantics."""

    async def create_source(self, source: Source) -> Source:
        ...

    async def get_source(self, source_id: str) -> Optional[Source]:
        ...

    async def list_sources(self, level: Optional[Level] = None) -> List[Source]:
        ...

    async def delete_source(self, source_id: str) -> int:
        ...

    async def move_source(self, source_id: str, new_level: Level) -> int:
        ...

    async def try_begin_processing(self, source_id: str) -> bool:
        ...

    async def finish_processing(
        self,
        source_id: str,
        status: IndexingStatus,
        error: Optional[str] = None,
        chunk_errors: Sequence[ChunkError] = (),
        chunks_written: int = 0,
    ) -> None:
        ...


class KnowledgeStore(ChunkStore, SourceStore, Protocol):
    """A backend that stores both sources and chunks."""


@runtime_checkable
class RelevanceConfigStore(Protocol):
    """Persisted relevance configuration record."""

    async def read(self) -> Dict[str, Any]:
        ...

    async def write(self, values: Dict[str, Any]) -> None:
        ...
