"""
Asynchronous log delivery.

A single ordered stream of raw text records, delivered to subscribers on a
background thread. Producers never wait on consumers.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("invocation_audit")

_STOP = object()


@dataclass(frozen=True)
class LogRecord:
    """One line of output as delivered by the channel.

    ``sequence`` is stamped at publish time and strictly increases, so it
    orders records by arrival. ``epoch`` is the observation window the
    emitting invocation was dispatched for, when the producer knows it.
    """
    sequence: int
    text: str
    source: Optional[str] = None
    epoch: Optional[int] = None


LogHandler = Callable[[LogRecord], None]


class Subscription:
    """Handle returned by LogChannel.subscribe."""

    def __init__(self, channel: "LogChannel", handler: LogHandler):
        self._channel = channel
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        """Stop delivering records to this handler."""
        if self.active:
            self._channel._remove(self)
            self.active = False


class LogChannel:
    """Ordered, asynchronous fan-out of log records.

    Records are queued by ``publish`` and handed to every subscriber in
    arrival order by one dispatcher thread. There is no ordering between
    different producers beyond the order their publishes were accepted.
    """

    def __init__(self, name: str = "log-channel"):
        self.name = name
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._subscriptions: List[Subscription] = []
        self._subscriptions_lock = threading.Lock()
        self._sequence = 0
        self._sequence_lock = threading.Lock()
        self._delivered = 0
        self._delivered_cond = threading.Condition()
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name=f"{name}-dispatcher", daemon=True
        )
        self._thread.start()

    @property
    def last_sequence(self) -> int:
        """Sequence number of the most recently published record."""
        with self._sequence_lock:
            return self._sequence

    def subscribe(self, handler: LogHandler) -> Subscription:
        """Register a handler called once per delivered record."""
        subscription = Subscription(self, handler)
        with self._subscriptions_lock:
            self._subscriptions = self._subscriptions + [subscription]
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._subscriptions_lock:
            self._subscriptions = [
                s for s in self._subscriptions if s is not subscription
            ]

    def publish(
        self,
        text: str,
        source: Optional[str] = None,
        epoch: Optional[int] = None
    ) -> LogRecord:
        """Queue a record for delivery and return it.

        Raises:
            RuntimeError: If the channel is closed
        """
        with self._sequence_lock:
            if self._closed:
                raise RuntimeError(f"Log channel '{self.name}' is closed")
            self._sequence += 1
            record = LogRecord(
                sequence=self._sequence, text=text, source=source, epoch=epoch
            )
            self._queue.put(record)
        return record

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            with self._subscriptions_lock:
                subscriptions = self._subscriptions
            for subscription in subscriptions:
                try:
                    subscription.handler(item)
                except Exception:
                    logger.exception(
                        "Log handler failed on record %d", item.sequence
                    )
            with self._delivered_cond:
                self._delivered = item.sequence
                self._delivered_cond.notify_all()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every record published so far has been delivered.

        Returns:
            True if drained, False if the timeout elapsed first
        """
        target = self.last_sequence
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._delivered_cond:
            while self._delivered < target:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                self._delivered_cond.wait(remaining)
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Deliver what is queued, then stop the dispatcher."""
        with self._sequence_lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._thread.join(timeout)

    def __enter__(self) -> "LogChannel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
