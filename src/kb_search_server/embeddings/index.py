"""
FAISS Knowledge Store

This module implements a persistent, FAISS-backed store for knowledge-base
sources and chunks. It is the single-node backend: it holds source metadata,
chunk records and their vectors, and answers nearest-neighbour queries.

Key Properties
--------------
- Explicit ID management via IndexIDMap2
- Exact search (flat index) so filtered queries stay exact
- Source-level operations (delete, move) are atomic under one lock
- Crash-safe persistence (index + metadata) when paths are configured
- Fully testable in memory (no paths)
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from .models import (
    Chunk,
    ChunkError,
    DistanceMeasure,
    IndexingStatus,
    Level,
    SearchFilters,
    Source,
)
from ..config import settings
from ..core.errors import IndexQueryError, SourceNotFoundError

logger = logging.getLogger("kb.index")


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class FaissIndexError(RuntimeError):
    """Base error for FAISS index failures."""


class FaissPersistenceError(FaissIndexError):
    """Raised when index persistence fails."""


# ---------------------------------------------------------------------
# FAISS Store
# ---------------------------------------------------------------------

class FaissChunkStore:
    """
    Persistent FAISS store with explicit ID mapping.

    The measure is fixed at construction: cosine uses inner product over
    L2-normalized vectors (distance = 1 - similarity), euclidean uses L2.
    """

    def __init__(
        self,
        measure: DistanceMeasure = DistanceMeasure.COSINE,
        index_path: Optional[str] = None,
        meta_path: Optional[str] = None,
        delete_batch_size: Optional[int] = None,
        lease_seconds: Optional[float] = None,
    ) -> None:
        """
        Parameters
        ----------
        measure : DistanceMeasure
            Distance metric; must match the embedding model's intended metric.

        index_path, meta_path : Optional[str]
            Where to persist the FAISS index and metadata. When omitted the
            store is memory-only.

        delete_batch_size : Optional[int]
            Maximum ids removed per batch when deleting a source's chunks.

        lease_seconds : Optional[float]
            Age after which a ``processing`` claim is considered abandoned.
        """
        self.measure = measure
        self._index_path = index_path
        self._meta_path = meta_path
        self._delete_batch_size = delete_batch_size or settings.delete_batch_size
        self._lease_seconds = (
            settings.processing_lease_seconds if lease_seconds is None else lease_seconds
        )

        self._index: Optional[faiss.IndexIDMap2] = None
        self._dim: Optional[int] = None
        self._doc_map: Dict[int, Chunk] = {}
        self._id_lookup: Dict[str, int] = {}
        self._sources: Dict[str, Source] = {}
        self._next_id: int = 0

        self._lock = RLock()

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _init_index(self, dim: int) -> None:
        if self.measure is DistanceMeasure.COSINE:
            base = faiss.IndexFlatIP(dim)
        else:
            base = faiss.IndexFlatL2(dim)
        self._index = faiss.IndexIDMap2(base)
        self._dim = dim

    def _prepare(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        arr = np.asarray(vectors, dtype="float32")
        if self.measure is DistanceMeasure.COSINE:
            faiss.normalize_L2(arr)
        return arr

    def _to_distance(self, raw: float) -> float:
        if self.measure is DistanceMeasure.COSINE:
            # float32 rounding can push similarity slightly past [-1, 1]
            return min(2.0, max(0.0, 1.0 - raw))
        return math.sqrt(max(0.0, raw))

    def _validate_chunks(self, chunks: Sequence[Chunk]) -> None:
        dim = self._dim
        for chunk in chunks:
            if not chunk.embedding:
                raise FaissIndexError(f"Chunk {chunk.id} has no embedding.")
            if dim is None:
                dim = len(chunk.embedding)
            if len(chunk.embedding) != dim:
                raise FaissIndexError(
                    f"Inconsistent embedding dimensionality for chunk {chunk.id}."
                )

    def _remove_ids(self, ids: List[int]) -> None:
        if not ids:
            return
        try:
            self._index.remove_ids(np.asarray(ids, dtype="int64"))
        except Exception as exc:
            raise FaissIndexError(
                f"Failed to remove IDs from FAISS: {type(exc).__name__}"
            ) from exc
        for idx in ids:
            chunk = self._doc_map.pop(idx, None)
            if chunk is not None:
                self._id_lookup.pop(chunk.id, None)

    def _delete_source_chunks(self, source_id: str) -> int:
        removed = 0
        while True:
            batch = [
                idx
                for idx, chunk in self._doc_map.items()
                if chunk.source_id == source_id
            ][: self._delete_batch_size]
            if not batch:
                return removed
            self._remove_ids(batch)
            removed += len(batch)

    def _require_source(self, source_id: str) -> Source:
        source = self._sources.get(source_id)
        if source is None:
            raise SourceNotFoundError(f"Source '{source_id}' not found.")
        return source

    # ------------------------------------------------------------------
    # Chunk API
    # ------------------------------------------------------------------

    async def upsert_chunks(self, chunks: Sequence[Chunk]) -> int:
        """
        Add chunks with their embeddings, replacing any with the same id.
        """
        if not chunks:
            return 0

        with self._lock:
            self._validate_chunks(chunks)

            if self._index is None:
                self._init_index(len(chunks[0].embedding))

            self._remove_ids(
                [self._id_lookup[c.id] for c in chunks if c.id in self._id_lookup]
            )

            ids = np.arange(
                self._next_id,
                self._next_id + len(chunks),
                dtype="int64",
            )
            self._next_id += len(chunks)

            vectors = self._prepare([c.embedding for c in chunks])

            try:
                self._index.add_with_ids(vectors, ids)
            except Exception as exc:
                raise FaissIndexError(
                    f"Failed to add vectors to FAISS: {type(exc).__name__}"
                ) from exc

            for idx, chunk in zip(ids, chunks):
                self._doc_map[int(idx)] = chunk
                self._id_lookup[chunk.id] = int(idx)

            self._persist()
            return len(chunks)

    async def delete_chunks_by_source(self, source_id: str) -> int:
        """
        Remove all chunks belonging to a source, in bounded batches.

        Returns
        -------
        int
            Number of removed chunks.
        """
        with self._lock:
            if self._index is None:
                return 0
            removed = self._delete_source_chunks(source_id)
            if removed:
                self._persist()
            return removed

    async def delete_chunk(self, chunk_id: str) -> bool:
        with self._lock:
            idx = self._id_lookup.get(chunk_id)
            if idx is None:
                return False
            self._remove_ids([idx])
            self._persist()
            return True

    async def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        with self._lock:
            idx = self._id_lookup.get(chunk_id)
            return self._doc_map.get(idx) if idx is not None else None

    async def delete_all_chunks(self) -> int:
        with self._lock:
            removed = 0
            while self._doc_map:
                batch = list(self._doc_map)[: self._delete_batch_size]
                self._remove_ids(batch)
                removed += len(batch)
                logger.info("Deleted a batch of %d chunks (total %d)", len(batch), removed)
            self._persist()
            return removed

    async def iter_chunks(self) -> AsyncIterator[Chunk]:
        with self._lock:
            snapshot = list(self._doc_map.values())
        for chunk in snapshot:
            yield chunk

    async def find_nearest(
        self,
        vector: Sequence[float],
        k: int,
        measure: DistanceMeasure,
        filters: Optional[SearchFilters] = None,
    ) -> List[Tuple[Chunk, float]]:
        """
        Search the index using a query embedding.

        Returns up to ``k`` (chunk, distance) tuples, ascending by distance.
        """
        if measure is not self.measure:
            raise IndexQueryError(
                f"Index was built for {self.measure.value} distance, "
                f"query asked for {measure.value}."
            )
        if k <= 0:
            return []

        with self._lock:
            if self._index is None or not self._doc_map:
                return []

            if len(vector) != self._dim:
                raise IndexQueryError(
                    f"Query vector has {len(vector)} dimensions, index has {self._dim}."
                )

            # Flat index: searching everything when filtering keeps results exact
            search_k = self._index.ntotal if filters is not None else min(k, self._index.ntotal)

            q = self._prepare([vector])
            try:
                raw_scores, idxs = self._index.search(q, search_k)
            except Exception as exc:
                raise IndexQueryError(
                    f"FAISS search failed: {type(exc).__name__}"
                ) from exc

            results: List[Tuple[Chunk, float]] = []

            for raw, idx in zip(raw_scores[0], idxs[0]):
                idx = int(idx)
                if idx == -1:
                    continue

                chunk = self._doc_map.get(idx)
                if chunk is None:
                    continue
                if filters is not None and not filters.matches(chunk):
                    continue

                results.append((chunk, self._to_distance(float(raw))))
                if len(results) >= k:
                    break

            return results

    async def stats(self) -> Dict[str, Any]:
        """
        Return store statistics for diagnostics.
        """
        with self._lock:
            per_level: Dict[str, int] = {}
            sources_with_chunks = set()
            for chunk in self._doc_map.values():
                per_level[chunk.level] = per_level.get(chunk.level, 0) + 1
                sources_with_chunks.add(chunk.source_id)

            return {
                "backend": "faiss",
                "measure": self.measure.value,
                "total_vectors": self._index.ntotal if self._index else 0,
                "total_sources": len(self._sources),
                "indexed_sources": len(sources_with_chunks),
                "chunks_per_level": per_level,
            }

    # ------------------------------------------------------------------
    # Source API
    # ------------------------------------------------------------------

    async def create_source(self, source: Source) -> Source:
        with self._lock:
            self._sources[source.id] = source
            self._persist()
            return source

    async def get_source(self, source_id: str) -> Optional[Source]:
        with self._lock:
            source = self._sources.get(source_id)
            return source.model_copy() if source else None

    async def list_sources(self, level: Optional[Level] = None) -> List[Source]:
        with self._lock:
            sources = [
                s.model_copy()
                for s in self._sources.values()
                if level is None or s.level == level
            ]
        return sorted(sources, key=lambda s: s.created_at, reverse=True)

    async def delete_source(self, source_id: str) -> int:
        """
        Delete a source's chunks and then its metadata record.

        Both happen under one lock, so no reader sees a half-deleted source.
        """
        with self._lock:
            self._require_source(source_id)
            removed = self._delete_source_chunks(source_id) if self._index else 0
            del self._sources[source_id]
            self._persist()
            logger.info("Deleted source %s and %d chunks", source_id, removed)
            return removed

    async def move_source(self, source_id: str, new_level: Level) -> int:
        """
        Change a source's level and cascade it to every chunk it owns.

        Returns the number of chunks updated.
        """
        with self._lock:
            source = self._require_source(source_id)
            source.level = new_level

            updated = 0
            for idx, chunk in list(self._doc_map.items()):
                if chunk.source_id == source_id:
                    self._doc_map[idx] = chunk.model_copy(update={"level": new_level.value})
                    updated += 1

            self._persist()
            return updated

    async def try_begin_processing(self, source_id: str) -> bool:
        """
        Claim a source for a write.

        A ``processing`` claim older than the lease is taken over.
        """
        with self._lock:
            source = self._require_source(source_id)
            if source.indexing_status is IndexingStatus.PROCESSING:
                if not source.claim_expired(self._lease_seconds):
                    return False
                logger.warning("Taking over expired processing claim on source %s", source_id)
            source.indexing_status = IndexingStatus.PROCESSING
            source.indexing_error = None
            source.processing_started_at = datetime.now(timezone.utc)
            self._persist()
            return True

    async def finish_processing(
        self,
        source_id: str,
        status: IndexingStatus,
        error: Optional[str] = None,
        chunk_errors: Sequence[ChunkError] = (),
        chunks_written: int = 0,
    ) -> None:
        with self._lock:
            source = self._require_source(source_id)
            source.indexing_status = status
            source.indexing_error = error
            source.chunk_errors = list(chunk_errors)
            source.chunks_written = chunks_written
            source.processing_started_at = None
            if status is IndexingStatus.SUCCESS:
                source.indexed_at = datetime.now(timezone.utc)
            self._persist()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        if self._index_path and self._meta_path:
            self.save()

    def save(self) -> None:
        """
        Persist both FAISS index and metadata to disk.
        """
        with self._lock:
            if not (self._index_path and self._meta_path):
                return

            index_path = Path(self._index_path)
            meta_path = Path(self._meta_path)

            if self._index is not None:
                index_path.parent.mkdir(parents=True, exist_ok=True)
                try:
                    faiss.write_index(self._index, str(index_path))
                except Exception as exc:
                    raise FaissPersistenceError(
                        f"Failed to write FAISS index: {type(exc).__name__}"
                    ) from exc

            meta = {
                "measure": self.measure.value,
                "dim": self._dim,
                "next_id": self._next_id,
                # vectors live in the FAISS file only
                "doc_map": {
                    str(k): v.model_dump(mode="json", exclude={"embedding"})
                    for k, v in self._doc_map.items()
                },
                "sources": {
                    k: v.model_dump(mode="json")
                    for k, v in self._sources.items()
                },
            }

            try:
                meta_path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = meta_path.with_suffix(meta_path.suffix + ".tmp")
                with tmp_path.open("w", encoding="utf-8") as f:
                    json.dump(meta, f)
                tmp_path.replace(meta_path)
            except Exception as exc:
                raise FaissPersistenceError(
                    f"Failed to write FAISS metadata: {type(exc).__name__}"
                ) from exc

    def load(self) -> None:
        """
        Load index and metadata from disk if available.
        """
        with self._lock:
            if not (self._index_path and self._meta_path):
                return

            index_path = Path(self._index_path)
            meta_path = Path(self._meta_path)

            if not meta_path.exists():
                return

            try:
                with meta_path.open("r", encoding="utf-8") as f:
                    data = json.load(f)

                stored_measure = data.get("measure", self.measure.value)
                if stored_measure != self.measure.value:
                    raise FaissPersistenceError(
                        f"Stored index uses {stored_measure} distance, "
                        f"configured measure is {self.measure.value}."
                    )

                self._next_id = int(data.get("next_id", 0))
                self._dim = data.get("dim")
                self._doc_map = {
                    int(k): Chunk(**v)
                    for k, v in data.get("doc_map", {}).items()
                }
                self._id_lookup = {c.id: k for k, c in self._doc_map.items()}
                self._sources = {
                    k: Source(**v)
                    for k, v in data.get("sources", {}).items()
                }
            except FaissPersistenceError:
                raise
            except Exception as exc:
                raise FaissPersistenceError(
                    f"Failed to load FAISS metadata: {type(exc).__name__}"
                ) from exc

            if index_path.exists():
                try:
                    self._index = faiss.read_index(str(index_path))
                except Exception as exc:
                    raise FaissPersistenceError(
                        f"Failed to read FAISS index: {type(exc).__name__}"
                    ) from exc
                self._restore_embeddings()
            else:
                self._index = None

            self._release_interrupted_claims()

    def _restore_embeddings(self) -> None:
        """
        Re-attach each chunk's vector from the FAISS index.

        Under cosine the index holds unit-length vectors, so restored
        embeddings are normalized.
        """
        for idx, chunk in list(self._doc_map.items()):
            try:
                vector = self._index.reconstruct(idx)
            except Exception as exc:
                raise FaissPersistenceError(
                    f"FAISS index has no vector for chunk {chunk.id}: {type(exc).__name__}"
                ) from exc
            self._doc_map[idx] = chunk.model_copy(
                update={"embedding": [float(x) for x in vector]}
            )

    def _release_interrupted_claims(self) -> None:
        """Fail sources a previous run left in ``processing``."""
        released = 0
        for source in self._sources.values():
            if source.indexing_status is IndexingStatus.PROCESSING:
                source.indexing_status = IndexingStatus.FAILED
                source.indexing_error = "Interrupted before completion."
                source.processing_started_at = None
                released += 1
        if released:
            logger.warning("Released %d interrupted processing claim(s)", released)
            self._persist()
