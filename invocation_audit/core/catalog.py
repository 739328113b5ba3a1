"""
Billable metric definitions.

Holds the priced, unit-bearing metrics a cost report is built from.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


class UnknownMetricError(ValueError):
    """Raised when a metric name is not registered in the catalog."""
    def __init__(self, name: str):
        super().__init__(f"Unknown metric: {name}")
        self.name = name


class DuplicateMetricError(ValueError):
    """Raised when a metric name is registered twice."""
    def __init__(self, name: str):
        super().__init__(f"Metric already registered: {name}")
        self.name = name


class CatalogFrozenError(RuntimeError):
    """Raised when registering into a catalog that is read-only."""


@dataclass(frozen=True)
class MetricDefinition:
    """A named, priced quantity of resource consumption."""
    name: str
    unit: str
    price_per_unit: float
    comment: Optional[str] = None

    def __post_init__(self):
        """Validate definition fields."""
        if not self.name or not self.name.strip():
            raise ValueError("metric name cannot be empty")
        if not self.unit or not self.unit.strip():
            raise ValueError(f"unit for metric '{self.name}' cannot be empty")
        if not math.isfinite(self.price_per_unit) or self.price_per_unit <= 0:
            raise ValueError(f"price_per_unit for metric '{self.name}' must be > 0")


class MetricCatalog:
    """Registry of metric definitions in registration order.

    The catalog is built once by whoever composes the accounting components
    and then frozen. Lookups read an immutable tuple/dict pair that is
    replaced wholesale on every registration, so readers never observe a
    partially registered metric.
    """

    def __init__(self, definitions: Optional[List[MetricDefinition]] = None):
        self._ordered: Tuple[MetricDefinition, ...] = ()
        self._by_name: Dict[str, MetricDefinition] = {}
        self._frozen = False
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: MetricDefinition) -> None:
        """Add a metric definition.

        Raises:
            DuplicateMetricError: If the name is already registered
            CatalogFrozenError: If the catalog has been frozen
        """
        if self._frozen:
            raise CatalogFrozenError(
                f"Cannot register '{definition.name}': catalog is frozen"
            )
        if definition.name in self._by_name:
            raise DuplicateMetricError(definition.name)
        by_name = dict(self._by_name)
        by_name[definition.name] = definition
        self._by_name = by_name
        self._ordered = self._ordered + (definition,)

    def lookup(self, name: str) -> MetricDefinition:
        """Get the definition for a metric.

        Raises:
            UnknownMetricError: If the metric is not registered
        """
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownMetricError(name) from None

    def freeze(self) -> "MetricCatalog":
        """Make the catalog read-only and return it."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def definitions(self) -> Tuple[MetricDefinition, ...]:
        """All definitions in registration order."""
        return self._ordered

    def names(self) -> List[str]:
        return [definition.name for definition in self._ordered]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._ordered)


# Per-GB-second compute price and per-request price of the reference provider
_PRICE_PER_GB_SECOND = 0.0000166667
_PRICE_PER_REQUEST = 0.0000002
_PRICE_PER_QUEUE_MESSAGE = 0.0000004
_PRICE_PER_GB_OUT = 0.09


def build_default_catalog(memory_size_mb: int = 512) -> MetricCatalog:
    """Build the reference per-invocation price list.

    Duration is priced per second at the configured memory size so that
    ``measured`` for ``functionCallDuration`` is billed seconds.

    Args:
        memory_size_mb: Memory allocated to each invocation

    Returns:
        A frozen MetricCatalog
    """
    if memory_size_mb <= 0:
        raise ValueError("memory_size_mb must be > 0")
    gb = memory_size_mb / 1024
    catalog = MetricCatalog([
        MetricDefinition(
            name="functionCallDuration",
            unit="second",
            price_per_unit=_PRICE_PER_GB_SECOND * gb,
            comment=f"{memory_size_mb}MB at ${_PRICE_PER_GB_SECOND}/GB-second",
        ),
        MetricDefinition(
            name="functionCallRequests",
            unit="request",
            price_per_unit=_PRICE_PER_REQUEST,
        ),
        MetricDefinition(
            name="queueMessages",
            unit="message",
            price_per_unit=_PRICE_PER_QUEUE_MESSAGE,
        ),
        MetricDefinition(
            name="outboundDataTransfer",
            unit="GB",
            price_per_unit=_PRICE_PER_GB_OUT,
        ),
    ])
    return catalog.freeze()
