import math

import pytest

from kb_search_server.core.errors import ConfigurationError
from kb_search_server.embeddings.models import DistanceMeasure
from kb_search_server.retrieval.relevance import (
    JsonRelevanceConfigStore,
    RelevanceConfigProvider,
    default_threshold,
    validate_threshold,
)

from conftest import MemoryRelevanceStore


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class BrokenStore:
    async def read(self):
        raise OSError("disk on fire")

    async def write(self, values):
        raise OSError("disk on fire")


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def test_cosine_threshold_is_clamped_to_range():
    assert validate_threshold(3.5, DistanceMeasure.COSINE) == (2.0, True)
    assert validate_threshold(-1, DistanceMeasure.COSINE) == (0.0, True)
    assert validate_threshold(0.4, DistanceMeasure.COSINE) == (0.4, False)


def test_euclidean_accepts_values_above_cosine_range():
    value, clamped = validate_threshold(5.0, DistanceMeasure.EUCLIDEAN)
    assert value == 5.0
    assert not clamped


@pytest.mark.parametrize("bad", ["0.5", None, True, math.nan, math.inf])
def test_non_numeric_threshold_is_configuration_error(bad):
    with pytest.raises(ConfigurationError) as exc_info:
        validate_threshold(bad, DistanceMeasure.COSINE)
    assert exc_info.value.setting == "distance_threshold"


def test_defaults_are_measure_specific():
    assert default_threshold(DistanceMeasure.COSINE) != default_threshold(DistanceMeasure.EUCLIDEAN)


# ---------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------

async def test_unset_threshold_uses_default_and_says_so(caplog):
    provider = RelevanceConfigProvider(MemoryRelevanceStore(), DistanceMeasure.COSINE)

    with caplog.at_level("WARNING", logger="kb.relevance"):
        resolution = await provider.get_threshold()

    assert resolution.source == "default"
    assert resolution.value == default_threshold(DistanceMeasure.COSINE)
    assert "not set" in caplog.text


async def test_configured_threshold_is_used():
    provider = RelevanceConfigProvider(
        MemoryRelevanceStore({"distance_threshold": 0.6}), DistanceMeasure.COSINE
    )
    resolution = await provider.get_threshold()
    assert resolution.value == 0.6
    assert resolution.source == "configured"


async def test_out_of_range_configured_threshold_is_clamped():
    provider = RelevanceConfigProvider(
        MemoryRelevanceStore({"distance_threshold": 9}), DistanceMeasure.COSINE
    )
    resolution = await provider.get_threshold()
    assert resolution.value == 2.0
    assert resolution.clamped


async def test_garbage_configured_threshold_raises():
    provider = RelevanceConfigProvider(
        MemoryRelevanceStore({"distance_threshold": "loose"}), DistanceMeasure.COSINE
    )
    with pytest.raises(ConfigurationError):
        await provider.get_threshold()


async def test_override_wins_over_configured_value():
    provider = RelevanceConfigProvider(
        MemoryRelevanceStore({"distance_threshold": 0.6}), DistanceMeasure.COSINE
    )
    resolution = await provider.resolve(0.3)
    assert resolution.value == 0.3
    assert resolution.source == "override"


async def test_unreadable_store_falls_back_to_default():
    provider = RelevanceConfigProvider(BrokenStore(), DistanceMeasure.COSINE)
    resolution = await provider.get_threshold()
    assert resolution.source == "fallback"
    assert resolution.value == default_threshold(DistanceMeasure.COSINE)


async def test_value_is_cached_until_ttl_expires():
    store = MemoryRelevanceStore({"distance_threshold": 0.5})
    clock = FakeClock()
    provider = RelevanceConfigProvider(store, DistanceMeasure.COSINE, ttl=30, clock=clock)

    assert (await provider.get_threshold()).value == 0.5
    store.values["distance_threshold"] = 0.7

    clock.now = 10
    assert (await provider.get_threshold()).value == 0.5
    assert store.reads == 1

    clock.now = 31
    assert (await provider.get_threshold()).value == 0.7
    assert store.reads == 2


async def test_set_threshold_persists_and_invalidates_cache():
    store = MemoryRelevanceStore({"distance_threshold": 0.5})
    provider = RelevanceConfigProvider(store, DistanceMeasure.COSINE, ttl=300)
    await provider.get_threshold()

    resolution = await provider.set_threshold(0.42)

    assert store.values["distance_threshold"] == 0.42
    assert resolution.value == 0.42
    assert resolution.source == "configured"


async def test_clearing_threshold_restores_default():
    store = MemoryRelevanceStore({"distance_threshold": 0.5})
    provider = RelevanceConfigProvider(store, DistanceMeasure.COSINE)

    resolution = await provider.set_threshold(None)

    assert resolution.source == "default"


async def test_set_threshold_without_store_is_configuration_error():
    provider = RelevanceConfigProvider(None, DistanceMeasure.COSINE)
    with pytest.raises(ConfigurationError):
        await provider.set_threshold(0.5)


# ---------------------------------------------------------------------
# JSON store
# ---------------------------------------------------------------------

async def test_json_store_round_trip(tmp_path):
    store = JsonRelevanceConfigStore(str(tmp_path / "cfg" / "relevance.json"))

    assert await store.read() == {}
    await store.write({"distance_threshold": 0.66})

    assert await store.read() == {"distance_threshold": 0.66}


async def test_json_store_rejects_non_object(tmp_path):
    path = tmp_path / "relevance.json"
    path.write_text("[1, 2]")
    store = JsonRelevanceConfigStore(str(path))

    with pytest.raises(ConfigurationError):
        await store.read()
