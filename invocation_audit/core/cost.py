"""
Cost accounting and report generation.

Turns aggregated usage into a priced, verifiable cost report.
"""

import csv
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .catalog import MetricCatalog
from .usage import UsageAggregator

logger = logging.getLogger("invocation_audit")

CSV_COLUMNS = ("name", "unit", "pricePerUnit", "measured", "cost")


class NotFoundError(LookupError):
    """Raised when a report has no line item with the requested name."""
    def __init__(self, name: str):
        super().__init__(f"No line item named '{name}' in cost report")
        self.name = name


class ReportInvariantError(AssertionError):
    """Raised when a generated report fails its arithmetic checks."""
    def __init__(self, violations: List[str]):
        super().__init__("; ".join(violations))
        self.violations = violations


@dataclass(frozen=True)
class CostLineItem:
    """Priced consumption of one metric.

    ``cost`` is derived from ``price_per_unit`` and ``measured`` only, so
    checking it against those two values is a real test of the pipeline
    that produced ``measured``.
    """
    name: str
    unit: str
    price_per_unit: float
    measured: float
    comment: Optional[str] = None

    @property
    def cost(self) -> float:
        return self.price_per_unit * self.measured

    def describe(self) -> str:
        """One-line human readable form."""
        plural = "" if self.measured == 1 else "s"
        line = (
            f"{self.name:24} ${self.price_per_unit:.8f}/{self.unit:8} "
            f"{self.measured:>14.6f} {self.unit}{plural} = ${self.cost:.8f}"
        )
        if self.comment:
            line += f"  // {self.comment}"
        return line


@dataclass(frozen=True)
class CostReport:
    """Ordered line items plus their total."""
    line_items: Tuple[CostLineItem, ...]
    total: float

    @classmethod
    def from_line_items(cls, line_items: List[CostLineItem]) -> "CostReport":
        """Build a report whose total is the sum of the item costs."""
        total = 0.0
        for item in line_items:
            total += item.cost
        return cls(line_items=tuple(line_items), total=total)

    def find(self, name: str) -> CostLineItem:
        """Get the line item for a metric.

        Raises:
            NotFoundError: If the report has no such line item
        """
        for item in self.line_items:
            if item.name == name:
                return item
        raise NotFoundError(name)

    def to_csv(self) -> str:
        """Render as CSV with a trailing total row."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for item in self.line_items:
            writer.writerow([
                item.name,
                item.unit,
                repr(item.price_per_unit),
                repr(item.measured),
                repr(item.cost),
            ])
        writer.writerow(["total", "", "", "", repr(self.total)])
        return buffer.getvalue()

    def __str__(self) -> str:
        lines = [item.describe() for item in self.line_items]
        lines.append("-" * 60)
        lines.append(f"{'total':24} ${self.total:.8f}")
        return "\n".join(lines)


def verify_report(report: CostReport) -> List[str]:
    """Check a report's arithmetic.

    Returns:
        Violation messages; empty when the report is sound
    """
    violations = []
    running = 0.0
    for item in report.line_items:
        if item.price_per_unit <= 0:
            violations.append(f"{item.name}: price_per_unit must be > 0")
        if item.measured < 0:
            violations.append(f"{item.name}: measured cannot be negative")
        if not item.unit:
            violations.append(f"{item.name}: unit is empty")
        if item.cost != item.price_per_unit * item.measured:
            violations.append(
                f"{item.name}: cost {item.cost!r} != "
                f"{item.price_per_unit!r} * {item.measured!r}"
            )
        running += item.cost
    if report.total != running:
        violations.append(
            f"total {report.total!r} != sum of line item costs {running!r}"
        )
    return violations


class CostAccountingEngine:
    """Produces cost reports from a usage aggregator."""

    def __init__(self, catalog: MetricCatalog, aggregator: UsageAggregator):
        if aggregator.catalog is not catalog:
            raise ValueError("aggregator must be built from the same catalog")
        self.catalog = catalog
        self.aggregator = aggregator
        self._last_report: Optional[CostReport] = None
        self._last_version = -1

    def generate_report(self) -> CostReport:
        """Price every metric that has at least one sample.

        Line items follow catalog registration order and measure total
        consumption (the aggregate sum), not the mean.
        """
        version = self.aggregator.version
        line_items = []
        for definition in self.catalog.definitions():
            aggregate = self.aggregator.snapshot(definition.name)
            if aggregate.sample_count == 0:
                continue
            line_items.append(CostLineItem(
                name=definition.name,
                unit=definition.unit,
                price_per_unit=definition.price_per_unit,
                measured=aggregate.sum,
                comment=definition.comment,
            ))
        report = CostReport.from_line_items(line_items)
        self._last_report = report
        self._last_version = version
        logger.debug(
            "Generated cost report with %d line items, total %r",
            len(report.line_items), report.total
        )
        return report

    @property
    def last_report(self) -> Optional[CostReport]:
        return self._last_report

    def _current_report(self) -> CostReport:
        # Regenerate when usage changed since the last report
        if self._last_report is None or self._last_version != self.aggregator.version:
            return self.generate_report()
        return self._last_report

    def find(self, name: str) -> CostLineItem:
        """Find a line item in a report of the current usage.

        Raises:
            NotFoundError: If the report has no such line item
        """
        return self._current_report().find(name)

    def serialize(self) -> str:
        """CSV form of a report of the current usage."""
        return self._current_report().to_csv()

    def write_report(self, path: str) -> Path:
        """Write the CSV form of a report of the current usage to a file."""
        report_path = Path(path)
        report_path.write_text(self.serialize(), encoding="utf-8")
        logger.info("Wrote cost report to %s", report_path)
        return report_path
