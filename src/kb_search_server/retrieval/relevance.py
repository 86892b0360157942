"""
Relevance Configuration

Resolves the distance threshold used by the relevance filter.

The threshold is measure-specific: cosine distance lives in [0, 2] while
euclidean distance is unbounded, so defaults and valid ranges are looked up
per measure and never shared. Every resolution reports where its value came
from so that default usage is visible in logs and diagnostics.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Optional, Tuple

from ..config import settings
from ..core.errors import ConfigurationError
from ..embeddings.models import DistanceMeasure
from ..embeddings.protocols import RelevanceConfigStore

logger = logging.getLogger("kb.relevance")

ThresholdSource = Literal["override", "configured", "default", "fallback"]


def threshold_range(measure: DistanceMeasure) -> Tuple[float, float]:
    if measure is DistanceMeasure.COSINE:
        return 0.0, 2.0
    return 0.0, settings.max_euclidean_threshold


def default_threshold(measure: DistanceMeasure) -> float:
    if measure is DistanceMeasure.COSINE:
        return settings.default_cosine_threshold
    return settings.default_euclidean_threshold


def validate_threshold(value: Any, measure: DistanceMeasure) -> Tuple[float, bool]:
    """
    Check that ``value`` is a finite number and clamp it to the measure's range.

    Returns
    -------
    (float, bool)
        The usable threshold and whether it had to be clamped.

    Raises
    ------
    ConfigurationError
        If the value is not a finite number.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"distance_threshold must be a number, got {type(value).__name__}.",
            setting="distance_threshold",
        )
    if not math.isfinite(value):
        raise ConfigurationError(
            "distance_threshold must be finite.",
            setting="distance_threshold",
        )

    low, high = threshold_range(measure)
    clamped = min(high, max(low, float(value)))
    return clamped, clamped != float(value)


@dataclass(frozen=True)
class ThresholdResolution:
    value: float
    source: ThresholdSource
    clamped: bool = False


class RelevanceConfigProvider:
    """
    Reads the relevance record through a store, with an explicit TTL cache.

    Injected into the retrieval façade; never reached as global state.
    """

    def __init__(
        self,
        store: Optional[RelevanceConfigStore],
        measure: DistanceMeasure,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.measure = measure
        self._ttl = settings.relevance_cache_ttl if ttl is None else ttl
        self._clock = clock
        self._cached: Optional[ThresholdResolution] = None
        self._cached_at: float = 0.0

    def invalidate(self) -> None:
        self._cached = None

    async def get_threshold(self) -> ThresholdResolution:
        """
        Return the configured threshold, or the measure default when unset.
        """
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self._ttl:
            return self._cached

        resolution = await self._load()
        self._cached = resolution
        self._cached_at = now
        return resolution

    async def resolve(self, override: Optional[float] = None) -> ThresholdResolution:
        """
        Resolve the threshold for one search; a per-call override wins.
        """
        if override is not None:
            value, clamped = validate_threshold(override, self.measure)
            return ThresholdResolution(value=value, source="override", clamped=clamped)
        return await self.get_threshold()

    async def set_threshold(self, value: Optional[float]) -> ThresholdResolution:
        """
        Persist a new threshold (``None`` clears it back to the default).
        """
        if self._store is None:
            raise ConfigurationError(
                "No relevance configuration store is configured.",
                setting="relevance_config_path",
            )
        if value is None:
            await self._store.write({"distance_threshold": None})
        else:
            clamped_value, _ = validate_threshold(value, self.measure)
            await self._store.write({"distance_threshold": clamped_value})
        self.invalidate()
        return await self.get_threshold()

    async def _load(self) -> ThresholdResolution:
        default = default_threshold(self.measure)

        if self._store is None:
            logger.warning(
                "No relevance store configured; using default %s threshold %.3f",
                self.measure.value,
                default,
            )
            return ThresholdResolution(value=default, source="default")

        try:
            record = await self._store.read()
        except ConfigurationError:
            raise
        except Exception:
            logger.exception(
                "Could not read relevance configuration; using default threshold %.3f",
                default,
            )
            return ThresholdResolution(value=default, source="fallback")

        raw = record.get("distance_threshold")
        if raw is None:
            logger.warning(
                "distance_threshold is not set; using default %s threshold %.3f",
                self.measure.value,
                default,
            )
            return ThresholdResolution(value=default, source="default")

        value, clamped = validate_threshold(raw, self.measure)
        if clamped:
            logger.warning(
                "distance_threshold %r outside %s range, clamped to %.3f",
                raw,
                self.measure.value,
                value,
            )
        return ThresholdResolution(value=value, source="configured", clamped=clamped)


class JsonRelevanceConfigStore:
    """Relevance record kept in a small JSON file (single-node deployments)."""

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = Path(path or settings.relevance_config_path)

    async def read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"{self._path} must contain a JSON object.",
                setting="relevance_config_path",
            )
        return data

    async def write(self, values: Dict[str, Any]) -> None:
        current = await self.read()
        current.update(values)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(current, f)
        tmp_path.replace(self._path)
