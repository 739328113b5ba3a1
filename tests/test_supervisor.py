"""
Integration tests for batch supervision.

Runs batches on the local fabric and checks exact-once log capture and
cost settlement.
"""

import time
from unittest.mock import patch

import pytest

from invocation_audit.config.loader import (
    AuditConfig,
    CorrelationConfig,
    default_audit_config,
)
from invocation_audit.core.correlation import (
    AnomalyPolicy,
    DuplicateCorrelationError,
    IncompleteCorrelationError,
    LogCorrelationEngine,
    UnexpectedTokenError,
    WindowState,
)
from invocation_audit.core.cost import ReportInvariantError
from invocation_audit.core.matcher import RegexTokenMatcher
from invocation_audit.core.supervisor import ArtifactNotReadyError, InvocationSupervisor
from invocation_audit.fabric import InvocationError, LocalExecutionFabric
from invocation_audit.fabric.functions import register_builtin_functions


def log_index(i):
    return (f"Executed call {i}",)


def flaky(context, i):
    if i % 10 == 0:
        raise ValueError(f"invocation {i} refused")
    context.log(f"Executed call {i}")
    return i


def off_by_thousand(context, i):
    context.log(f"Executed call {i + 1000}")


def slow_log(context, i):
    time.sleep(0.6)
    context.log(f"Executed call {i}")
    return i


@pytest.fixture
def fabric():
    """Create a local fabric in queue mode with test functions."""
    fab = LocalExecutionFabric(max_workers=16, use_queue=True)
    register_builtin_functions(fab)
    fab.register("flaky", flaky)
    fab.register("offByThousand", off_by_thousand)
    fab.register("slowLog", slow_log)
    yield fab
    fab.shutdown()


@pytest.fixture
def supervisor(fabric):
    """Create a supervisor with the default configuration."""
    return InvocationSupervisor.from_config(default_audit_config(), fabric)


class TestRunBatch:
    """Test exact-once capture over a batch."""
    
    def test_hundred_concurrent_invocations(self, supervisor):
        """Verify every one of 100 invocations is logged exactly once."""
        result = supervisor.run_batch("consoleLog", 100, log_index, deadline=30)
        
        assert result.succeeded == 100
        assert result.errors == {}
        for i in range(100):
            assert result.ledger.observed_counts[i] == 1
        assert result.missing == []
        assert result.duplicates == {}
        assert supervisor.engine.state == WindowState.IDLE
    
    def test_failed_invocations_do_not_affect_siblings(self, supervisor):
        """Verify failures are recorded per invocation and others still count."""
        result = supervisor.run_batch("flaky", 30, lambda i: (i,), deadline=30)
        
        assert sorted(result.errors) == [0, 10, 20]
        assert all(isinstance(e, InvocationError) for e in result.errors.values())
        assert result.withdrawn == [0, 10, 20]
        assert result.succeeded == 27
        assert result.ledger.is_exact()
        assert set(result.ledger.observed_counts) == set(range(30)) - {0, 10, 20}
    
    def test_missing_output_times_out(self, supervisor):
        """Verify invocations that never log cause IncompleteCorrelationError."""
        with pytest.raises(IncompleteCorrelationError) as exc_info:
            supervisor.run_batch("hello", 3, lambda i: ("x",), deadline=0.5)
        assert exc_info.value.missing == frozenset({0, 1, 2})
        assert supervisor.engine.state == WindowState.IDLE
    
    def test_batch_after_abandoned_batch(self, supervisor):
        """Verify a new batch is unaffected by an abandoned one."""
        with pytest.raises(IncompleteCorrelationError):
            supervisor.run_batch("hello", 2, lambda i: ("x",), deadline=0.3)
        result = supervisor.run_batch("consoleLog", 5, log_index, deadline=30)
        assert result.epoch == 2
        assert result.ledger.is_exact()
    
    def test_invocation_past_deadline_is_incomplete(self, supervisor):
        """Verify an invocation still running at the deadline is not
        withdrawn, and its late output never reaches the next batch."""
        with pytest.raises(IncompleteCorrelationError) as exc_info:
            supervisor.run_batch("slowLog", 1, lambda i: (i,), deadline=0.2)
        assert exc_info.value.missing == frozenset({0})
        
        result = supervisor.run_batch("slowLog", 1, lambda i: (i,), deadline=5)
        
        assert result.epoch == 2
        assert result.withdrawn == []
        assert result.ledger.observed_counts == {0: 1}
        assert result.ledger.is_exact()
    
    def test_duplicates_detected(self):
        """Verify redelivered output fails a strict batch."""
        with LocalExecutionFabric(redelivery_rate=1.0, seed=1) as fab:
            register_builtin_functions(fab)
            supervisor = InvocationSupervisor.from_config(default_audit_config(), fab)
            with pytest.raises(DuplicateCorrelationError) as exc_info:
                supervisor.run_batch("consoleLog", 10, log_index, deadline=30)
            assert exc_info.value.duplicates == {i: 2 for i in range(10)}
    
    def test_duplicates_reported_when_not_strict(self):
        """Verify a non-strict batch returns the duplicate counts."""
        with LocalExecutionFabric(redelivery_rate=1.0, seed=1) as fab:
            register_builtin_functions(fab)
            supervisor = InvocationSupervisor.from_config(default_audit_config(), fab)
            result = supervisor.run_batch("consoleLog", 4, log_index, deadline=30, strict=False)
            assert result.duplicates == {0: 2, 1: 2, 2: 2, 3: 2}
    
    def test_strict_anomaly_policy(self, fabric):
        """Verify unexpected tokens fail a strict window."""
        base = default_audit_config()
        config = AuditConfig(
            metrics=base.metrics,
            usage_sources=base.usage_sources,
            correlation=CorrelationConfig(anomaly_policy=AnomalyPolicy.STRICT),
        )
        supervisor = InvocationSupervisor.from_config(config, fabric)
        with pytest.raises(UnexpectedTokenError):
            supervisor.run_batch("offByThousand", 3, lambda i: (i,), deadline=5)
        assert supervisor.engine.state == WindowState.IDLE
    
    def test_zero_invocations(self, supervisor):
        """Verify an empty batch completes immediately."""
        result = supervisor.run_batch("consoleLog", 0, log_index, deadline=1)
        assert result.succeeded == 0
        assert result.ledger.is_exact()
    
    def test_negative_count(self, supervisor):
        """Verify count must not be negative."""
        with pytest.raises(ValueError):
            supervisor.run_batch("consoleLog", -1, log_index, deadline=1)


class TestArtifactCheck:
    """Test the packaged artifact precondition."""
    
    def test_failed_check_blocks_batches(self, fabric):
        """Verify batches refuse to run when the artifact does not start."""
        supervisor = InvocationSupervisor.from_config(
            default_audit_config(), fabric, artifact_check=lambda: False
        )
        with pytest.raises(ArtifactNotReadyError):
            supervisor.run_batch("consoleLog", 1, log_index, deadline=5)
    
    def test_passed_check_runs_once(self, fabric):
        """Verify a passing check is only evaluated once."""
        calls = []
        
        def check():
            calls.append(1)
            return True
        
        supervisor = InvocationSupervisor.from_config(
            default_audit_config(), fabric, artifact_check=check
        )
        supervisor.run_batch("consoleLog", 1, log_index, deadline=5)
        supervisor.run_batch("consoleLog", 1, log_index, deadline=5)
        assert calls == [1]


class TestSettleCosts:
    """Test cost settlement from fabric statistics."""
    
    def test_cost_for_basic_call(self, supervisor, fabric):
        """Verify a single call produces a sound, tiny cost report."""
        assert fabric.invoke("hello", ("there",)).result(5) == "Hello there!"
        
        report = supervisor.settle_costs()
        
        billed = fabric.get_usage_stats()["estimatedBilledTime"]
        assert report.find("functionCallDuration").measured == (
            billed["mean"] * billed["sampleCount"] / 1000
        )
        assert len(report.line_items) > 1
        assert report.find("functionCallRequests").measured == 1
        for item in report.line_items:
            assert item.cost > 0
            assert item.cost < 0.00001
            assert item.measured > 0
            assert len(item.name) > 0
            assert item.price_per_unit > 0
            assert len(item.unit) > 0
            assert item.cost == item.price_per_unit * item.measured
        assert report.total > 0
        assert report.total == sum(item.cost for item in report.line_items)
    
    def test_billed_duration_matches_fabric_exactly(self, supervisor, fabric):
        """Verify measured duration equals billed mean * samples / 1000 exactly."""
        for _ in range(3):
            fabric.invoke("hello", ("there",)).result(5)
        
        report = supervisor.settle_costs()
        
        billed = fabric.get_usage_stats()["estimatedBilledTime"]
        assert billed["sampleCount"] == 3
        assert report.find("functionCallDuration").measured == (
            billed["mean"] * billed["sampleCount"] / 1000
        )
        transfer = fabric.get_usage_stats()["outboundBytes"]
        assert report.find("outboundDataTransfer").measured == (
            transfer["mean"] * transfer["sampleCount"] / 2 ** 30
        )
    
    def test_settle_is_idempotent(self, supervisor, fabric):
        """Verify settling twice without new calls gives the same report."""
        supervisor.run_batch("consoleLog", 10, log_index, deadline=30)
        first = supervisor.settle_costs()
        second = supervisor.settle_costs()
        assert first == second
        assert first.find("functionCallRequests").measured == 10
    
    def test_aggregates_match_fabric_stats(self, supervisor, fabric):
        """Verify merged aggregates keep sum == mean * count."""
        supervisor.run_batch("consoleLog", 20, log_index, deadline=30)
        supervisor.settle_costs()
        aggregate = supervisor.accounting.aggregator.snapshot("queueMessages")
        assert aggregate.sample_count == 20
        assert aggregate.sum == pytest.approx(aggregate.mean * aggregate.sample_count, rel=1e-9)
        assert aggregate.sum == 40
    
    def test_invariant_violation_raised(self, supervisor, fabric):
        """Verify reports failing verification raise ReportInvariantError."""
        fabric.invoke("hello", ("there",)).result(5)
        with patch(
            "invocation_audit.core.supervisor.verify_report",
            return_value=["total mismatch"]
        ):
            with pytest.raises(ReportInvariantError) as exc_info:
                supervisor.settle_costs()
        assert exc_info.value.violations == ["total mismatch"]


class TestConsoleLevels:
    """Test log capture for every console level on the fabric."""
    
    def test_each_level_logged_once(self, fabric):
        """Verify console.log, warn, error and info lines are each captured."""
        engine = LogCorrelationEngine(RegexTokenMatcher(r"(console\.\w+) works"))
        engine.attach(fabric.channel)
        expected = {"console.log", "console.warn", "console.error", "console.info"}
        engine.open_window(expected)
        
        for function_ref in ("consoleLog", "consoleWarn", "consoleError", "consoleInfo"):
            level = function_ref[len("console"):].lower()
            fabric.invoke(function_ref, (f"console.{level} works",)).result(5)
        
        engine.await_completion(10)
        ledger = engine.close_window()
        engine.detach()
        assert ledger.observed_counts == {token: 1 for token in expected}
        assert ledger.is_exact()
