"""Metric primitives for queue counters, depths and wait times."""
from __future__ import annotations

from abc import ABC, abstractmethod
from bisect import bisect_left
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Iterable, Mapping, MutableMapping, Tuple

LabelValues = Tuple[str, ...]

# minutes a kiosk customer typically waits, expressed in seconds
DEFAULT_WAIT_BUCKETS: Tuple[float, ...] = (60.0, 300.0, 600.0, 900.0, 1800.0, 3600.0)


class Metric(ABC):
    """A named metric keyed by a fixed tuple of label values."""

    kind = "untyped"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        self.name = name
        self.description = description
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self._lock = Lock()

    def _label_values(self, labels: Mapping[str, str] | None = None) -> LabelValues:
        if not self.label_names:
            if labels:
                raise ValueError(f"Metric '{self.name}' does not accept labels")
            return ()
        if labels is None:
            raise ValueError(f"Metric '{self.name}' requires labels {self.label_names}")
        missing = [label for label in self.label_names if label not in labels]
        if missing:
            raise ValueError(f"Missing label(s) {missing} for metric '{self.name}'")
        return tuple(str(labels[label]) for label in self.label_names)

    @abstractmethod
    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        """Return the current values per label combination."""


class CounterMetric(Metric):
    """Monotonic counter, e.g. tickets issued per department."""

    kind = "counter"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: MutableMapping[LabelValues, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, *, labels: Mapping[str, str] | None = None) -> None:
        if amount < 0:
            raise ValueError("Counters can only be incremented")
        key = self._label_values(labels)
        with self._lock:
            self._values[key] += amount

    def value(self, *, labels: Mapping[str, str] | None = None) -> float:
        key = self._label_values(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: {"value": value} for key, value in self._values.items()}


class GaugeMetric(Metric):
    """Point-in-time value such as the number of tickets waiting at a window."""

    kind = "gauge"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: MutableMapping[LabelValues, float] = {}

    def set(self, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._label_values(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, *, labels: Mapping[str, str] | None = None) -> float:
        key = self._label_values(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: {"value": value} for key, value in self._values.items()}


@dataclass
class DistributionStats:
    """Running totals and cumulative bucket counts for observed values."""

    bounds: Tuple[float, ...]
    count: int = 0
    total: float = 0.0
    buckets: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.buckets:
            self.buckets = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        # every bucket whose upper bound is >= value counts it
        for index in range(bisect_left(self.bounds, value), len(self.bounds)):
            self.buckets[index] += 1

    def to_mapping(self) -> Mapping[str, float]:
        values = {"count": float(self.count), "sum": self.total}
        for bound, hits in zip(self.bounds, self.buckets):
            values[f"le:{bound:g}"] = float(hits)
        return values


class DistributionMetric(Metric):
    """Histogram of observed values, e.g. seconds from queueing to being called."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        *,
        description: str = "",
        label_names: Iterable[str] | None = None,
        buckets: Iterable[float] | None = None,
    ) -> None:
        super().__init__(name, description=description, label_names=label_names)
        bounds = tuple(sorted(float(bound) for bound in (buckets if buckets is not None else DEFAULT_WAIT_BUCKETS)))
        if any(bound <= 0 for bound in bounds):
            raise ValueError("Histogram bucket bounds must be positive")
        self.buckets = bounds
        self._values: Dict[LabelValues, DistributionStats] = {}

    def observe(self, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        if value < 0:
            raise ValueError(f"Metric '{self.name}' only observes non-negative values")
        key = self._label_values(labels)
        with self._lock:
            stats = self._values.get(key)
            if stats is None:
                stats = self._values[key] = DistributionStats(self.buckets)
            stats.observe(value)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: stats.to_mapping() for key, stats in self._values.items()}
