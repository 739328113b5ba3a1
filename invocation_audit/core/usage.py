"""
Usage aggregation.

Folds raw per-invocation measurements into running statistics per metric
without keeping the samples around.
"""

import math
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .catalog import MetricCatalog, UnknownMetricError


@dataclass(frozen=True)
class UsageSample:
    """One observed measurement of a metric."""
    metric_name: str
    quantity: float
    timestamp_ordinal: int = 0

    def __post_init__(self):
        """Validate quantity is finite and non-negative."""
        if not math.isfinite(self.quantity):
            raise ValueError(
                f"quantity for metric '{self.metric_name}' must be a finite number"
            )
        if self.quantity < 0:
            raise ValueError(
                f"quantity for metric '{self.metric_name}' cannot be negative"
            )


@dataclass(frozen=True)
class MetricAggregate:
    """Point-in-time statistics for one metric.

    ``sum == mean * sample_count`` holds within floating tolerance.
    ``minimum`` and ``maximum`` are None until a raw sample has been folded,
    since merged upstream statistics carry no extremes.
    """
    metric_name: str
    sample_count: int
    mean: float
    sum: float
    stdev: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None


class _RunningStats:
    """Mutable Welford accumulator guarded by its own lock."""

    __slots__ = ("lock", "count", "mean", "m2", "total", "minimum", "maximum")

    def __init__(self):
        self.lock = threading.Lock()
        self.clear()

    def clear(self) -> None:
        self.count = 0
        self.mean = 0.0
        self.m2 = 0.0
        self.total = 0.0
        self.minimum: Optional[float] = None
        self.maximum: Optional[float] = None

    def add(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    def combine(self, mean: float, count: int, stdev: float, divisor: float = 1.0) -> None:
        # Chan et al. pairwise combination of two partial aggregates.
        # The total is mean * count / divisor in that order.
        if count == 0:
            return
        added_total = mean * count / divisor
        mean = mean / divisor
        stdev = stdev / divisor
        other_m2 = (stdev ** 2) * (count - 1) if count > 1 else 0.0
        combined = self.count + count
        delta = mean - self.mean
        self.mean += delta * count / combined
        self.m2 += other_m2 + delta * delta * self.count * count / combined
        self.total += added_total
        self.count = combined

    def freeze(self, metric_name: str) -> MetricAggregate:
        stdev = math.sqrt(self.m2 / (self.count - 1)) if self.count > 1 else 0.0
        return MetricAggregate(
            metric_name=metric_name,
            sample_count=self.count,
            mean=self.mean,
            sum=self.total,
            stdev=stdev,
            minimum=self.minimum,
            maximum=self.maximum,
        )


class UsageAggregator:
    """Running statistics for every metric in a catalog.

    Each metric has its own lock: folds into different metrics never
    contend, folds into the same metric are serialized.
    """

    def __init__(self, catalog: MetricCatalog):
        self.catalog = catalog
        self._stats: Dict[str, _RunningStats] = {
            name: _RunningStats() for name in catalog.names()
        }
        self._version = 0
        self._version_lock = threading.Lock()

    @property
    def version(self) -> int:
        """Counter bumped by every fold, merge and reset."""
        with self._version_lock:
            return self._version

    def _bump(self) -> None:
        with self._version_lock:
            self._version += 1

    def _stats_for(self, metric_name: str) -> _RunningStats:
        try:
            return self._stats[metric_name]
        except KeyError:
            raise UnknownMetricError(metric_name) from None

    def fold(self, sample: UsageSample) -> None:
        """Fold one sample into its metric's aggregate.

        Raises:
            UnknownMetricError: If the sample's metric is not in the catalog
        """
        stats = self._stats_for(sample.metric_name)
        with stats.lock:
            stats.add(float(sample.quantity))
        self._bump()

    def fold_many(self, samples: Iterable[UsageSample]) -> int:
        """Fold samples in order and return how many were folded."""
        folded = 0
        for sample in samples:
            self.fold(sample)
            folded += 1
        return folded

    def merge(
        self,
        metric_name: str,
        mean: float,
        sample_count: int,
        stdev: float = 0.0,
        divisor: float = 1.0
    ) -> None:
        """Fold pre-aggregated statistics reported by an upstream source.

        The merged total is ``mean * sample_count / divisor``, computed in
        that order so it matches the upstream unit conversion exactly.

        Args:
            metric_name: Metric the statistics belong to
            mean: Mean of the upstream samples
            sample_count: Number of upstream samples
            stdev: Sample standard deviation of the upstream samples
            divisor: Converts upstream units into the metric's unit

        Raises:
            UnknownMetricError: If the metric is not in the catalog
            ValueError: If the statistics are invalid
        """
        stats = self._stats_for(metric_name)
        if sample_count < 0:
            raise ValueError("sample_count cannot be negative")
        if not math.isfinite(mean) or mean < 0:
            raise ValueError("mean must be a finite, non-negative number")
        if not math.isfinite(stdev) or stdev < 0:
            raise ValueError("stdev must be a finite, non-negative number")
        if not math.isfinite(divisor) or divisor <= 0:
            raise ValueError("divisor must be > 0")
        with stats.lock:
            stats.combine(float(mean), int(sample_count), float(stdev), float(divisor))
        self._bump()

    def snapshot(self, metric_name: str) -> MetricAggregate:
        """Return a consistent copy of one metric's aggregate.

        Raises:
            UnknownMetricError: If the metric is not in the catalog
        """
        stats = self._stats_for(metric_name)
        with stats.lock:
            return stats.freeze(metric_name)

    def snapshots(self) -> List[MetricAggregate]:
        """Snapshots of every metric in catalog order."""
        return [self.snapshot(name) for name in self.catalog.names()]

    def reset(self) -> None:
        for stats in self._stats.values():
            with stats.lock:
                stats.clear()
        self._bump()
