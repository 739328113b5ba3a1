"""
Log correlation.

Attributes log records arriving on a shared channel back to the invocation
that emitted them, and checks that every expected invocation was observed
exactly once within an observation window.

Window lifecycle:
    IDLE -> open_window -> OPEN -> (all expected tokens seen) -> CLOSED
    OPEN or CLOSED -> close_window / abandon_window -> IDLE
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .channel import LogChannel, LogRecord, Subscription
from .matcher import CorrelationToken, TokenMatcher

logger = logging.getLogger("invocation_audit")


class WindowState(Enum):
    """State of the engine's observation window."""
    IDLE = "idle"
    OPEN = "open"
    CLOSED = "closed"


class AnomalyPolicy(Enum):
    """What to do when a record carries a token that was not expected."""
    RECORD = "record"  # Count and log, window continues
    STRICT = "strict"  # Fail the window on the first anomaly


class WindowAlreadyOpenError(RuntimeError):
    """Raised when opening a window while another is still active."""
    def __init__(self, epoch: int):
        super().__init__(f"Observation window {epoch} is still active")
        self.epoch = epoch


class NoWindowOpenError(RuntimeError):
    """Raised when waiting on or closing a window that was never opened."""


class IncompleteCorrelationError(Exception):
    """Raised when the deadline passes before every expected token was seen."""
    def __init__(self, missing: FrozenSet[CorrelationToken], epoch: int):
        super().__init__(
            f"Window {epoch} incomplete, missing {len(missing)} token(s): "
            f"{_sorted_tokens(missing)}"
        )
        self.missing = missing
        self.epoch = epoch


class UnexpectedTokenError(Exception):
    """Raised in strict mode when a record carries an unexpected token."""
    def __init__(self, token: CorrelationToken, epoch: int):
        super().__init__(f"Unexpected token {token!r} in window {epoch}")
        self.token = token
        self.epoch = epoch


class DuplicateCorrelationError(Exception):
    """Raised when an expected token was observed more than once."""
    def __init__(self, duplicates: Mapping[CorrelationToken, int], epoch: int):
        ordered = {t: duplicates[t] for t in _sorted_tokens(duplicates)}
        super().__init__(f"Window {epoch} saw duplicate records for: {ordered}")
        self.duplicates = dict(duplicates)
        self.epoch = epoch


def _sorted_tokens(tokens: Iterable[CorrelationToken]) -> List[CorrelationToken]:
    # Integers first, then strings
    return sorted(tokens, key=lambda t: (isinstance(t, str), t))


@dataclass(frozen=True)
class CorrelationLedger:
    """Expected versus observed tokens for one observation window."""
    epoch: int
    expected: FrozenSet[CorrelationToken]
    observed_counts: Mapping[CorrelationToken, int]
    anomalies: Mapping[CorrelationToken, int] = field(default_factory=dict)
    opened_after_sequence: int = 0

    def missing(self) -> List[CorrelationToken]:
        return _sorted_tokens(
            t for t in self.expected if self.observed_counts.get(t, 0) == 0
        )

    def duplicates(self) -> Dict[CorrelationToken, int]:
        return {
            t: self.observed_counts[t]
            for t in _sorted_tokens(self.observed_counts)
            if self.observed_counts[t] > 1
        }

    def is_complete(self) -> bool:
        return not self.missing()

    def is_exact(self) -> bool:
        """Every expected token observed exactly once."""
        return all(self.observed_counts.get(t, 0) == 1 for t in self.expected)


class _Window:
    """Mutable state of the open window. Guarded by the engine's condition."""

    def __init__(self, epoch: int, expected: FrozenSet[CorrelationToken], opened_after: int):
        self.epoch = epoch
        self.expected = expected
        self.opened_after = opened_after
        self.counts: Counter = Counter()
        self.anomalies: Counter = Counter()
        self.remaining = set(expected)
        self.state = WindowState.CLOSED if not expected else WindowState.OPEN
        self.failure: Optional[Exception] = None

    def ledger(self) -> CorrelationLedger:
        return CorrelationLedger(
            epoch=self.epoch,
            expected=self.expected,
            observed_counts=dict(self.counts),
            anomalies=dict(self.anomalies),
            opened_after_sequence=self.opened_after,
        )


class LogCorrelationEngine:
    """Tracks one observation window at a time over a log channel.

    Token counting and the completion check happen under one lock, so a
    completion can neither be missed nor be signalled before the count that
    caused it is visible.

    Args:
        matcher: Token extraction rule applied to every record
        anomaly_policy: Handling of tokens outside the expected set
    """

    def __init__(
        self,
        matcher: TokenMatcher,
        anomaly_policy: AnomalyPolicy = AnomalyPolicy.RECORD
    ):
        self.matcher = matcher
        self.anomaly_policy = anomaly_policy
        self._cond = threading.Condition()
        self._window: Optional[_Window] = None
        self._epoch = 0
        self._channel: Optional[LogChannel] = None
        self._subscription: Optional[Subscription] = None

    def attach(self, channel: LogChannel) -> None:
        """Subscribe to a channel's records."""
        if self._subscription is not None:
            raise RuntimeError("Correlation engine is already attached to a channel")
        self._channel = channel
        self._subscription = channel.subscribe(self.handle_record)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
        self._subscription = None
        self._channel = None

    @property
    def state(self) -> WindowState:
        with self._cond:
            return WindowState.IDLE if self._window is None else self._window.state

    @property
    def epoch(self) -> int:
        """Epoch of the current or most recent window."""
        with self._cond:
            return self._epoch

    def open_window(self, expected_tokens: Iterable[CorrelationToken]) -> int:
        """Start tracking a new set of expected tokens.

        Records published before this call are never attributed to the
        new window.

        Returns:
            The new window's epoch

        Raises:
            WindowAlreadyOpenError: If a window is open or not yet closed
        """
        expected = frozenset(expected_tokens)
        opened_after = self._channel.last_sequence if self._channel else 0
        with self._cond:
            if self._window is not None:
                raise WindowAlreadyOpenError(self._window.epoch)
            self._epoch += 1
            self._window = _Window(self._epoch, expected, opened_after)
            logger.info(
                "Opened observation window %d expecting %d token(s)",
                self._epoch, len(expected)
            )
            return self._epoch

    def handle_record(self, record: LogRecord) -> Optional[CorrelationToken]:
        """Attribute one record to the open window.

        Records published before the window opened, and records stamped
        with another window's epoch, are discarded.

        Returns:
            The token counted, or None if the record was ignored
        """
        token = self.matcher(record.text)
        if token is None:
            return None
        with self._cond:
            window = self._window
            if window is None:
                logger.debug("Discarding record %d: no open window", record.sequence)
                return None
            if record.sequence <= window.opened_after:
                logger.debug(
                    "Discarding record %d: published before window %d opened",
                    record.sequence, window.epoch
                )
                return None
            if record.epoch is not None and record.epoch != window.epoch:
                logger.debug(
                    "Discarding record %d: emitted for window %d, not %d",
                    record.sequence, record.epoch, window.epoch
                )
                return None
            if token not in window.expected:
                window.anomalies[token] += 1
                logger.warning(
                    "Unexpected token %r in window %d: %s",
                    token, window.epoch, record.text
                )
                if self.anomaly_policy is AnomalyPolicy.STRICT and window.failure is None:
                    window.failure = UnexpectedTokenError(token, window.epoch)
                    self._cond.notify_all()
                return None
            window.counts[token] += 1
            if window.counts[token] > 1:
                logger.warning(
                    "Duplicate record for token %r in window %d (count %d)",
                    token, window.epoch, window.counts[token]
                )
            window.remaining.discard(token)
            if not window.remaining and window.state is WindowState.OPEN:
                window.state = WindowState.CLOSED
                logger.info("Observation window %d complete", window.epoch)
                self._cond.notify_all()
            return token

    def await_completion(self, deadline: float) -> CorrelationLedger:
        """Block until every expected token was seen.

        Args:
            deadline: Seconds to wait

        Returns:
            Snapshot of the ledger at completion

        Raises:
            IncompleteCorrelationError: If the deadline passes first
            UnexpectedTokenError: In strict mode, on the first anomaly
            NoWindowOpenError: If no window is open
        """
        end = time.monotonic() + deadline
        with self._cond:
            window = self._require_window()
            while window.failure is None and window.state is not WindowState.CLOSED:
                remaining = end - time.monotonic()
                if remaining <= 0:
                    raise IncompleteCorrelationError(
                        frozenset(window.remaining), window.epoch
                    )
                self._cond.wait(remaining)
            if window.failure is not None:
                raise window.failure
            return window.ledger()

    def withdraw(self, tokens: Iterable[CorrelationToken]) -> List[CorrelationToken]:
        """Stop expecting tokens whose invocation is known to have failed.

        Tokens already observed stay expected so their counts remain part
        of the ledger.

        Returns:
            The tokens actually withdrawn
        """
        with self._cond:
            window = self._require_window()
            withdrawn = [
                t for t in tokens
                if t in window.expected and window.counts[t] == 0
            ]
            if not withdrawn:
                return []
            window.expected = window.expected - frozenset(withdrawn)
            window.remaining.difference_update(withdrawn)
            logger.info(
                "Window %d no longer expects %d token(s): %s",
                window.epoch, len(withdrawn), _sorted_tokens(withdrawn)
            )
            if not window.remaining and window.state is WindowState.OPEN:
                window.state = WindowState.CLOSED
                self._cond.notify_all()
            return withdrawn

    def progress(self) -> Tuple[List[CorrelationToken], Dict[CorrelationToken, int]]:
        """Missing tokens and duplicate counts of the open window."""
        with self._cond:
            ledger = self._require_window().ledger()
        return ledger.missing(), ledger.duplicates()

    def close_window(self) -> CorrelationLedger:
        """End the window and return its final ledger.

        Raises:
            NoWindowOpenError: If no window is open
        """
        with self._cond:
            window = self._require_window()
            self._window = None
        return self._finish(window)

    def abandon_window(self) -> Optional[CorrelationLedger]:
        """Give up on the current window, if any, and return its ledger."""
        with self._cond:
            window = self._window
            self._window = None
        if window is None:
            return None
        logger.warning("Abandoning observation window %d", window.epoch)
        return self._finish(window)

    def _finish(self, window: _Window) -> CorrelationLedger:
        ledger = window.ledger()
        logger.info(
            "Closed observation window %d: %d missing, %d duplicated, %d anomalous",
            ledger.epoch, len(ledger.missing()), len(ledger.duplicates()),
            len(ledger.anomalies)
        )
        return ledger

    def _require_window(self) -> _Window:
        if self._window is None:
            raise NoWindowOpenError("No observation window is open")
        return self._window
