"""
In-process execution fabric.

Runs registered callables on a thread pool, forwards their log output to a
LogChannel and keeps the same usage statistics a hosted provider reports.
"""

import asyncio
import inspect
import json
import logging
import math
import random
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Sequence

from ..core.channel import LogChannel, LogRecord, Subscription
from .base import InvocationError

logger = logging.getLogger("invocation_audit")

# Stat names reported by get_usage_stats
STAT_REQUESTS = "requests"
STAT_EXECUTION_TIME = "executionTime"
STAT_BILLED_TIME = "estimatedBilledTime"
STAT_OUTBOUND_BYTES = "outboundBytes"
STAT_QUEUE_MESSAGES = "queueMessages"


class InvocationContext:
    """Handed to every invoked callable as its first argument."""

    def __init__(
        self,
        fabric: "LocalExecutionFabric",
        call_id: str,
        function_ref: str,
        epoch: Optional[int] = None
    ):
        self._fabric = fabric
        self.call_id = call_id
        self.function_ref = function_ref
        self.epoch = epoch

    def log(self, text: str) -> None:
        """Emit one line of output from inside the invocation."""
        self._fabric._emit(text, self.call_id, self.epoch)


class _StatAccumulator:
    __slots__ = ("count", "total", "total_sq")

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.total_sq = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.total_sq += value * value

    def as_dict(self) -> Dict[str, float]:
        mean = self.total / self.count
        variance = 0.0
        if self.count > 1:
            variance = max(0.0, (self.total_sq - self.count * mean * mean) / (self.count - 1))
        return {"mean": mean, "sampleCount": self.count, "stdev": math.sqrt(variance)}


class LocalExecutionFabric:
    """Thread pool backed stand-in for a remote function service.

    Coroutine functions are run to completion on an event loop of their own
    inside the worker thread.

    Args:
        max_workers: Concurrent invocations
        channel: Channel to publish log output on; one is created if omitted
        billing_granularity_ms: Billed time is rounded up to this step
        use_queue: Count request/response queue messages per invocation
        redelivery_rate: Probability that a log line is published twice
        seed: Seed for the redelivery decision
    """

    def __init__(
        self,
        max_workers: int = 16,
        channel: Optional[LogChannel] = None,
        billing_granularity_ms: int = 100,
        use_queue: bool = False,
        redelivery_rate: float = 0.0,
        seed: Optional[int] = None
    ):
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if billing_granularity_ms <= 0:
            raise ValueError("billing_granularity_ms must be > 0")
        if not 0.0 <= redelivery_rate <= 1.0:
            raise ValueError("redelivery_rate must be between 0 and 1")
        self._functions: Dict[str, Callable[..., Any]] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="fabric"
        )
        self._owns_channel = channel is None
        self.channel = channel or LogChannel("fabric-logs")
        self.billing_granularity_ms = billing_granularity_ms
        self.use_queue = use_queue
        self.redelivery_rate = redelivery_rate
        self._random = random.Random(seed)
        self._random_lock = threading.Lock()
        self._stats: Dict[str, _StatAccumulator] = {}
        self._stats_lock = threading.Lock()
        self._logger_subscription: Optional[Subscription] = None

    def register(self, name: str, func: Callable[..., Any]) -> None:
        """Make a callable invocable by name."""
        if name in self._functions:
            raise ValueError(f"Function already registered: {name}")
        self._functions[name] = func

    def invoke(
        self,
        function_ref: str,
        args: Sequence[Any] = (),
        epoch: Optional[int] = None
    ) -> "Future[Any]":
        """Start one invocation.

        Log lines it emits carry ``epoch``, the observation window it was
        dispatched for.

        Raises:
            InvocationError: If function_ref is not registered
        """
        func = self._functions.get(function_ref)
        if func is None:
            raise InvocationError(f"Unknown function: {function_ref}", function_ref)
        call_id = uuid.uuid4().hex
        return self._executor.submit(
            self._execute, func, function_ref, call_id, tuple(args), epoch
        )

    def _execute(self, func, function_ref, call_id, args, epoch):
        context = InvocationContext(self, call_id, function_ref, epoch)
        start = time.perf_counter()
        try:
            if inspect.iscoroutinefunction(func):
                result = asyncio.run(func(context, *args))
            else:
                result = func(context, *args)
        except Exception as e:
            self._record_call(time.perf_counter() - start, None)
            logger.debug("Invocation %s of %s failed: %s", call_id, function_ref, e)
            raise InvocationError(str(e), function_ref) from e
        self._record_call(time.perf_counter() - start, result)
        return result

    def _record_call(self, elapsed_seconds: float, result: Any) -> None:
        elapsed_ms = elapsed_seconds * 1000
        step = self.billing_granularity_ms
        billed_ms = max(1, math.ceil(elapsed_ms / step)) * step
        outbound = len(json.dumps(result, default=str).encode("utf-8"))
        with self._stats_lock:
            self._add_stat(STAT_REQUESTS, 1)
            self._add_stat(STAT_EXECUTION_TIME, elapsed_ms)
            self._add_stat(STAT_BILLED_TIME, billed_ms)
            self._add_stat(STAT_OUTBOUND_BYTES, outbound)
            if self.use_queue:
                # One request and one response message
                self._add_stat(STAT_QUEUE_MESSAGES, 2)

    def _add_stat(self, name: str, value: float) -> None:
        self._stats.setdefault(name, _StatAccumulator()).add(value)

    def _emit(self, text: str, call_id: str, epoch: Optional[int]) -> None:
        self.channel.publish(text, source=call_id, epoch=epoch)
        if self.redelivery_rate:
            with self._random_lock:
                redeliver = self._random.random() < self.redelivery_rate
            if redeliver:
                logger.debug("Redelivering log line from %s", call_id)
                self.channel.publish(text, source=call_id, epoch=epoch)

    def attach_logger(self, handler: Optional[Callable[[LogRecord], None]]) -> None:
        """Route log records to handler, replacing any previous one."""
        if self._logger_subscription is not None:
            self._logger_subscription.cancel()
            self._logger_subscription = None
        if handler is not None:
            self._logger_subscription = self.channel.subscribe(handler)

    def get_usage_stats(self) -> Dict[str, Dict[str, float]]:
        with self._stats_lock:
            return {name: acc.as_dict() for name, acc in self._stats.items()}

    def shutdown(self) -> None:
        """Wait for running invocations and release the pool."""
        self._executor.shutdown(wait=True)
        self.attach_logger(None)
        if self._owns_channel:
            self.channel.close()

    def __enter__(self) -> "LocalExecutionFabric":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
