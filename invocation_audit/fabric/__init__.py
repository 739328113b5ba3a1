"""
Execution fabric boundary.

The core consumes a fabric through the ExecutionFabric protocol. The local
fabric runs registered Python callables on a thread pool and is what the
CLI and the tests drive.
"""

from .base import ExecutionFabric, InvocationError
from .local import InvocationContext, LocalExecutionFabric

__all__ = [
    "ExecutionFabric",
    "InvocationContext",
    "InvocationError",
    "LocalExecutionFabric",
]
