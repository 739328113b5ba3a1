"""
Collaborator contract for the remote execution fabric.
"""

from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

from ..core.channel import LogRecord


class InvocationError(Exception):
    """Raised when one invocation fails on the remote side.

    Only the caller of that invocation sees it; sibling invocations are
    unaffected.
    """
    def __init__(self, message: str, function_ref: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.function_ref = function_ref


class ExecutionFabric(Protocol):
    """What the supervisor needs from a fabric."""

    def invoke(
        self,
        function_ref: str,
        args: Sequence[Any] = (),
        epoch: Optional[int] = None
    ) -> "Future[Any]":
        """Start one invocation; the future fails with InvocationError.

        Log records the invocation emits must carry ``epoch``.
        """
        ...

    def attach_logger(self, handler: Optional[Callable[[LogRecord], None]]) -> None:
        """Route log records to handler, or stop routing when None."""
        ...

    def get_usage_stats(self) -> Dict[str, Dict[str, float]]:
        """Cumulative ``{stat_name: {"mean", "sampleCount"}}`` snapshot."""
        ...
