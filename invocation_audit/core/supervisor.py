"""
Batch invocation supervision.

Dispatches a batch of concurrent invocations, checks that each one's log
output was captured exactly once, and settles the batch's cost.

Order of a batch:
1. Open the observation window with every token, before any dispatch
2. Dispatch all invocations and collect their outcomes
3. Wait for the remaining tokens, logging progress periodically
4. Drain the channel, close the window, verify exact-once delivery
"""

import logging
import threading
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..fabric.base import InvocationError
from .correlation import (
    CorrelationLedger,
    DuplicateCorrelationError,
    IncompleteCorrelationError,
    LogCorrelationEngine,
    UnexpectedTokenError,
)
from .cost import CostAccountingEngine, CostReport, ReportInvariantError, verify_report
from .usage import UsageAggregator

logger = logging.getLogger("invocation_audit")

# Late redeliveries are counted if they arrive within this many seconds
DRAIN_TIMEOUT_SECONDS = 5.0


class ArtifactNotReadyError(RuntimeError):
    """Raised when the packaged artifact did not pass its startup check."""


@dataclass
class BatchResult:
    """Outcome of one supervised batch."""
    epoch: int
    results: Dict[int, Any]
    errors: Dict[int, Exception]
    ledger: CorrelationLedger
    elapsed_seconds: float = 0.0
    withdrawn: List[int] = field(default_factory=list)

    @property
    def missing(self) -> List[int]:
        return self.ledger.missing()

    @property
    def duplicates(self) -> Dict[int, int]:
        return self.ledger.duplicates()

    @property
    def succeeded(self) -> int:
        return len(self.results)


class _ProgressReporter:
    """Logs missing and duplicate tokens on an interval while waiting."""

    def __init__(self, engine: LogCorrelationEngine, interval: float):
        self._engine = engine
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name="correlation-progress", daemon=True
        )

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            missing, duplicates = self._engine.progress()
            logger.info("missing: %s, duplicate: %s", missing, list(duplicates))

    def __enter__(self) -> "_ProgressReporter":
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        self._thread.join()


class InvocationSupervisor:
    """Runs batches of invocations against a fabric and audits them.

    Args:
        fabric: Execution fabric to invoke on
        engine: Correlation engine attached to the fabric's log channel
        accounting: Cost engine whose aggregator receives fabric usage
        usage_sources: Fabric statistic name to metric mapping, as
            objects with ``metric`` and ``divisor`` attributes
        progress_interval: Seconds between progress log lines
        artifact_check: Returns whether the packaged artifact starts up
    """

    def __init__(
        self,
        fabric,
        engine: LogCorrelationEngine,
        accounting: CostAccountingEngine,
        usage_sources: Optional[Mapping[str, Any]] = None,
        progress_interval: float = 1.0,
        artifact_check: Optional[Callable[[], bool]] = None
    ):
        self.fabric = fabric
        self.engine = engine
        self.accounting = accounting
        self.usage_sources = dict(usage_sources or {})
        self.progress_interval = progress_interval
        self._artifact_check = artifact_check
        self._artifact_ready = artifact_check is None

    @classmethod
    def from_config(
        cls,
        config,
        fabric,
        artifact_check: Optional[Callable[[], bool]] = None
    ) -> "InvocationSupervisor":
        """Wire catalog, aggregator, cost and correlation engines from an
        AuditConfig and attach the correlation engine to the fabric's logs."""
        catalog = config.build_catalog()
        accounting = CostAccountingEngine(catalog, UsageAggregator(catalog))
        engine = LogCorrelationEngine(
            config.correlation.build_matcher(),
            anomaly_policy=config.correlation.anomaly_policy,
        )
        engine.attach(fabric.channel)
        return cls(
            fabric,
            engine,
            accounting,
            usage_sources=config.usage_sources,
            progress_interval=config.correlation.progress_interval_seconds,
            artifact_check=artifact_check,
        )

    def _require_artifact(self) -> None:
        if self._artifact_ready:
            return
        if not self._artifact_check():
            raise ArtifactNotReadyError(
                "Packaged artifact did not emit its startup marker"
            )
        self._artifact_ready = True

    def run_batch(
        self,
        function_ref: str,
        count: int,
        args_for: Callable[[int], Sequence[Any]],
        deadline: float,
        strict: bool = True
    ) -> BatchResult:
        """Invoke ``function_ref`` ``count`` times concurrently.

        Invocation ``i`` is tokenized as ``i``; ``args_for(i)`` must produce
        arguments that make it log a line the engine's matcher maps to ``i``.

        Invocations that raise InvocationError are no longer expected to log.
        Invocations still running at the deadline stay expected, and the batch
        fails as incomplete unless their output already arrived.

        Args:
            function_ref: Function to invoke
            count: Number of invocations
            args_for: Builds the arguments of invocation i
            deadline: Seconds allowed for invocations and their logs
            strict: Raise DuplicateCorrelationError on duplicated output

        Returns:
            BatchResult with per-invocation outcomes and the final ledger

        Raises:
            IncompleteCorrelationError: If output is still missing at the deadline
            UnexpectedTokenError: If the engine is strict and saw an anomaly
            DuplicateCorrelationError: If strict and any token was seen twice
        """
        if count < 0:
            raise ValueError("count cannot be negative")
        self._require_artifact()

        start = time.monotonic()
        end = start + deadline
        epoch = self.engine.open_window(range(count))
        logger.info("Dispatching %d invocation(s) of %s", count, function_ref)

        futures: Dict[int, "Future[Any]"] = {}
        errors: Dict[int, Exception] = {}
        for i in range(count):
            try:
                futures[i] = self.fabric.invoke(
                    function_ref, tuple(args_for(i)), epoch=epoch
                )
            except Exception as e:
                logger.warning("Dispatch of invocation %d failed: %s", i, e)
                errors[i] = e

        results = self._collect(futures, errors, end)
        # A timed out invocation may still log, so it stays expected
        withdrawn = self.engine.withdraw(
            sorted(i for i, e in errors.items() if isinstance(e, InvocationError))
        )

        try:
            with _ProgressReporter(self.engine, self.progress_interval):
                self.engine.await_completion(max(0.0, end - time.monotonic()))
        except (IncompleteCorrelationError, UnexpectedTokenError):
            self._drain()
            self.engine.abandon_window()
            raise

        self._drain()
        ledger = self.engine.close_window()
        result = BatchResult(
            epoch=epoch,
            results=results,
            errors=errors,
            ledger=ledger,
            elapsed_seconds=time.monotonic() - start,
            withdrawn=withdrawn,
        )
        logger.info(
            "Batch %d finished in %.2fs: %d succeeded, %d failed",
            epoch, result.elapsed_seconds, len(results), len(errors)
        )
        if strict and not ledger.is_exact():
            raise DuplicateCorrelationError(ledger.duplicates(), epoch)
        return result

    def _collect(
        self,
        futures: Dict[int, "Future[Any]"],
        errors: Dict[int, Exception],
        end: float
    ) -> Dict[int, Any]:
        """Wait for every future; failures are recorded per invocation."""
        wait(futures.values(), timeout=max(0.0, end - time.monotonic()))
        results: Dict[int, Any] = {}
        for i, future in futures.items():
            if not future.done():
                errors[i] = TimeoutError(f"Invocation {i} did not finish before the deadline")
                continue
            try:
                results[i] = future.result()
            except Exception as e:
                logger.warning("Invocation %d failed: %s", i, e)
                errors[i] = e
        return results

    def _drain(self) -> None:
        channel = getattr(self.fabric, "channel", None)
        if channel is not None and not channel.drain(DRAIN_TIMEOUT_SECONDS):
            logger.warning("Log channel did not drain within %ss", DRAIN_TIMEOUT_SECONDS)

    def settle_costs(self) -> CostReport:
        """Replace aggregated usage with the fabric's cumulative statistics
        and produce a verified cost report.

        Raises:
            ReportInvariantError: If the report's arithmetic does not hold
        """
        aggregator = self.accounting.aggregator
        aggregator.reset()
        for name, stat in self.fabric.get_usage_stats().items():
            source = self.usage_sources.get(name)
            if source is None:
                logger.debug("Ignoring unmapped usage statistic %s", name)
                continue
            aggregator.merge(
                source.metric,
                stat["mean"],
                int(stat["sampleCount"]),
                stat.get("stdev", 0.0),
                divisor=source.divisor,
            )
        report = self.accounting.generate_report()
        violations = verify_report(report)
        if violations:
            raise ReportInvariantError(violations)
        logger.info("Cost report total $%.8f", report.total)
        return report
