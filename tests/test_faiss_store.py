import json
from datetime import timedelta

import pytest

from kb_search_server.core.errors import IndexQueryError, SourceNotFoundError
from kb_search_server.embeddings.index import FaissChunkStore, FaissPersistenceError
from kb_search_server.embeddings.indexer import IndexingService
from kb_search_server.embeddings.models import (
    Chunk,
    DistanceMeasure,
    IndexingStatus,
    Level,
    SearchFilters,
    Source,
)

COSINE = DistanceMeasure.COSINE
EUCLIDEAN = DistanceMeasure.EUCLIDEAN


def make_chunk(source: Source, number: int, vector, topic=None) -> Chunk:
    return Chunk(
        source_id=source.id,
        source_name=source.name,
        level=source.level.value,
        topic=topic,
        text=f"{source.name} chunk {number}",
        embedding=list(vector),
        chunk_number=number,
    )


async def seeded(store: FaissChunkStore, level: Level, vectors, name="doc") -> Source:
    source = await store.create_source(Source(name=name, level=level))
    await store.upsert_chunks(
        [make_chunk(source, i + 1, v) for i, v in enumerate(vectors)]
    )
    return source


# ---------------------------------------------------------------------
# Chunk API
# ---------------------------------------------------------------------

async def test_upsert_and_get_chunk():
    store = FaissChunkStore(COSINE)
    source = await seeded(store, Level.HIGH, [[1.0, 0.0]])
    chunk = (await store.find_nearest([1.0, 0.0], 1, COSINE))[0][0]

    assert await store.get_chunk(chunk.id) == chunk
    assert chunk.source_id == source.id


async def test_upsert_with_same_id_replaces_vector():
    store = FaissChunkStore(COSINE)
    source = await store.create_source(Source(name="doc", level=Level.HIGH))
    original = make_chunk(source, 1, [1.0, 0.0])
    await store.upsert_chunks([original])
    await store.upsert_chunks([original.model_copy(update={"embedding": [0.0, 1.0]})])

    results = await store.find_nearest([0.0, 1.0], 5, COSINE)

    assert len(results) == 1
    assert results[0][1] == pytest.approx(0.0, abs=1e-6)


async def test_cosine_distances_ascend():
    store = FaissChunkStore(COSINE)
    await seeded(store, Level.HIGH, [[0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])

    distances = [d for _, d in await store.find_nearest([1.0, 0.0], 3, COSINE)]

    assert distances == sorted(distances)
    assert distances[0] == pytest.approx(0.0, abs=1e-6)
    assert distances[-1] == pytest.approx(1.0, abs=1e-6)


async def test_euclidean_distance_is_not_squared():
    store = FaissChunkStore(EUCLIDEAN)
    await seeded(store, Level.HIGH, [[3.0, 4.0]])

    [(_, distance)] = await store.find_nearest([0.0, 0.0], 1, EUCLIDEAN)

    assert distance == pytest.approx(5.0, rel=1e-5)


async def test_filters_are_applied_before_k():
    store = FaissChunkStore(COSINE)
    await seeded(store, Level.HIGH, [[1.0, 0.0], [0.9, 0.1]], name="high")
    await seeded(store, Level.LOW, [[0.0, 1.0]], name="low")

    results = await store.find_nearest(
        [1.0, 0.0], 1, COSINE, SearchFilters(levels=["Low"])
    )

    assert [c.source_name for c, _ in results] == ["low"]


async def test_topic_filter():
    store = FaissChunkStore(COSINE)
    source = await store.create_source(Source(name="doc", level=Level.HIGH))
    await store.upsert_chunks([
        make_chunk(source, 1, [1.0, 0.0], topic="billing"),
        make_chunk(source, 2, [1.0, 0.0], topic="shipping"),
    ])

    results = await store.find_nearest([1.0, 0.0], 5, COSINE, SearchFilters(topic="shipping"))

    assert [c.topic for c, _ in results] == ["shipping"]


async def test_measure_mismatch_is_query_error():
    store = FaissChunkStore(COSINE)
    await seeded(store, Level.HIGH, [[1.0, 0.0]])
    with pytest.raises(IndexQueryError):
        await store.find_nearest([1.0, 0.0], 1, EUCLIDEAN)


async def test_dimension_mismatch_is_query_error():
    store = FaissChunkStore(COSINE)
    await seeded(store, Level.HIGH, [[1.0, 0.0]])
    with pytest.raises(IndexQueryError):
        await store.find_nearest([1.0, 0.0, 0.0], 1, COSINE)


async def test_empty_store_returns_nothing():
    assert await FaissChunkStore(COSINE).find_nearest([1.0], 5, COSINE) == []


async def test_delete_single_chunk():
    store = FaissChunkStore(COSINE)
    await seeded(store, Level.HIGH, [[1.0, 0.0], [0.0, 1.0]])
    victim = (await store.find_nearest([1.0, 0.0], 1, COSINE))[0][0]

    assert await store.delete_chunk(victim.id) is True
    assert await store.delete_chunk(victim.id) is False
    assert await store.get_chunk(victim.id) is None


# ---------------------------------------------------------------------
# Cascades
# ---------------------------------------------------------------------

async def test_delete_source_removes_every_chunk_and_the_record():
    store = FaissChunkStore(COSINE, delete_batch_size=2)
    doomed = await seeded(store, Level.HIGH, [[1.0, 0.0]] * 5, name="doomed")
    kept = await seeded(store, Level.HIGH, [[1.0, 0.0]], name="kept")

    removed = await store.delete_source(doomed.id)

    assert removed == 5
    assert await store.get_source(doomed.id) is None
    remaining = await store.find_nearest([1.0, 0.0], 100, COSINE)
    assert {c.source_id for c, _ in remaining} == {kept.id}


async def test_delete_chunks_by_source_in_batches():
    store = FaissChunkStore(COSINE, delete_batch_size=3)
    source = await seeded(store, Level.HIGH, [[1.0, 0.0]] * 7)

    assert await store.delete_chunks_by_source(source.id) == 7
    assert await store.find_nearest([1.0, 0.0], 100, COSINE) == []
    assert await store.get_source(source.id) is not None


async def test_delete_unknown_source_raises():
    with pytest.raises(SourceNotFoundError):
        await FaissChunkStore(COSINE).delete_source("missing")


async def test_move_source_cascades_level_to_chunks():
    store = FaissChunkStore(COSINE)
    source = await seeded(store, Level.LOW, [[1.0, 0.0], [0.0, 1.0]])

    updated = await store.move_source(source.id, Level.HIGH)

    assert updated == 2
    assert (await store.get_source(source.id)).level is Level.HIGH
    chunks = [c async for c in store.iter_chunks() if c.source_id == source.id]
    assert {c.level for c in chunks} == {"High"}
    high_hits = await store.find_nearest(
        [1.0, 0.0], 10, COSINE, SearchFilters(levels=["High"])
    )
    assert len(high_hits) == 2


async def test_delete_all_chunks():
    store = FaissChunkStore(COSINE, delete_batch_size=2)
    await seeded(store, Level.HIGH, [[1.0, 0.0]] * 5)

    assert await store.delete_all_chunks() == 5
    assert (await store.stats())["total_vectors"] == 0


# ---------------------------------------------------------------------
# Processing guard
# ---------------------------------------------------------------------

async def test_processing_claim_is_exclusive():
    store = FaissChunkStore(COSINE)
    source = await store.create_source(Source(name="doc", level=Level.HIGH))

    assert await store.try_begin_processing(source.id) is True
    assert await store.try_begin_processing(source.id) is False

    await store.finish_processing(source.id, IndexingStatus.SUCCESS, chunks_written=3)
    refreshed = await store.get_source(source.id)
    assert refreshed.indexing_status is IndexingStatus.SUCCESS
    assert refreshed.indexed_at is not None
    assert await store.try_begin_processing(source.id) is True


# ---------------------------------------------------------------------
# Persistence & stats
# ---------------------------------------------------------------------

async def test_save_and_load_round_trip(tmp_path):
    index_path = str(tmp_path / "kb.bin")
    meta_path = str(tmp_path / "kb.json")
    store = FaissChunkStore(COSINE, index_path=index_path, meta_path=meta_path)
    source = await seeded(store, Level.MEDIUM, [[1.0, 0.0], [0.0, 1.0]])

    reloaded = FaissChunkStore(COSINE, index_path=index_path, meta_path=meta_path)
    reloaded.load()

    assert (await reloaded.get_source(source.id)).name == "doc"
    [(chunk, distance)] = await reloaded.find_nearest([0.0, 1.0], 1, COSINE)
    assert chunk.chunk_number == 2
    assert distance == pytest.approx(0.0, abs=1e-6)
    assert chunk.embedding == pytest.approx([0.0, 1.0])

    with open(meta_path, encoding="utf-8") as f:
        persisted = json.load(f)
    assert all("embedding" not in c for c in persisted["doc_map"].values())


async def test_load_rejects_other_measure(tmp_path):
    index_path = str(tmp_path / "kb.bin")
    meta_path = str(tmp_path / "kb.json")
    store = FaissChunkStore(COSINE, index_path=index_path, meta_path=meta_path)
    await seeded(store, Level.HIGH, [[1.0, 0.0]])

    other = FaissChunkStore(EUCLIDEAN, index_path=index_path, meta_path=meta_path)
    with pytest.raises(FaissPersistenceError):
        other.load()


async def test_stats_counts_chunks_per_level():
    store = FaissChunkStore(COSINE)
    await seeded(store, Level.HIGH, [[1.0, 0.0]] * 2)
    await seeded(store, Level.LOW, [[0.0, 1.0]])
    await store.create_source(Source(name="empty", level=Level.MEDIUM))

    stats = await store.stats()

    assert stats["total_vectors"] == 3
    assert stats["total_sources"] == 3
    assert stats["indexed_sources"] == 2
    assert stats["chunks_per_level"] == {"High": 2, "Low": 1}


async def test_expired_processing_claim_can_be_taken_over():
    store = FaissChunkStore(COSINE, lease_seconds=60)
    source = await store.create_source(Source(name="doc", level=Level.HIGH))
    assert await store.try_begin_processing(source.id) is True

    store._sources[source.id].processing_started_at -= timedelta(minutes=5)

    assert await store.try_begin_processing(source.id) is True
    assert await store.try_begin_processing(source.id) is False


async def test_restart_releases_interrupted_claim(tmp_path, embedder):
    index_path = str(tmp_path / "kb.bin")
    meta_path = str(tmp_path / "kb.json")
    store = FaissChunkStore(COSINE, index_path=index_path, meta_path=meta_path)
    source = await seeded(store, Level.HIGH, [[1.0, 0.0]])
    assert await store.try_begin_processing(source.id) is True

    restarted = FaissChunkStore(COSINE, index_path=index_path, meta_path=meta_path)
    restarted.load()

    refreshed = await restarted.get_source(source.id)
    assert refreshed.indexing_status is IndexingStatus.FAILED
    assert refreshed.processing_started_at is None
    assert await IndexingService(restarted, embedder).delete_source(source.id) == 1
    assert await restarted.get_source(source.id) is None
