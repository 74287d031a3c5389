"""
In-Flight Guard Decorator.

Provides a decorator factory that lets at most one call of a given
async operation run at a time per owner object.  A call made while the
same operation is still running is rejected as a no-op and returns
``None``; no network request is issued for it.

Usage::

    from authclient.guards import InFlightTracker, single_flight

    class Service:
        def __init__(self) -> None:
            self.in_flight = InFlightTracker()

        @single_flight("login")
        async def login(self, email: str) -> str:
            ...
"""

from __future__ import annotations

from functools import wraps
from typing import (
    Awaitable,
    Callable,
    Concatenate,
    Optional,
    ParamSpec,
    Protocol,
    TypeVar,
)

from authclient.logger import StructuredLogger

P = ParamSpec("P")
R = TypeVar("R")


class InFlightTracker:
    """Names of the operations currently running for one owner."""

    def __init__(self, logger: Optional[StructuredLogger] = None) -> None:
        self._running: set[str] = set()
        self._logger: Optional[StructuredLogger] = logger

    def try_acquire(self, operation: str) -> bool:
        """Mark *operation* running; ``False`` if it already is."""
        if operation in self._running:
            if self._logger is not None:
                self._logger.info(
                    "%s already in progress; ignoring duplicate call.", operation,
                    extra={"event": "DUPLICATE_CALL_REJECTED", "operation": operation},
                )
            return False
        self._running.add(operation)
        return True

    def release(self, operation: str) -> None:
        self._running.discard(operation)

    def is_running(self, operation: str) -> bool:
        return operation in self._running

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._running)


class GuardedOwner(Protocol):
    in_flight: InFlightTracker


S = TypeVar("S", bound=GuardedOwner)


def single_flight(
    operation: str,
) -> Callable[
    [Callable[Concatenate[S, P], Awaitable[R]]],
    Callable[Concatenate[S, P], Awaitable[Optional[R]]],
]:
    """Return a decorator that rejects overlapping calls of *operation*.

    The owner's ``in_flight`` tracker records the running operation from
    before the first suspension point until the wrapped coroutine
    finishes, whether it returns, raises or is cancelled.

    Args:
        operation: Name the call is tracked under.  Methods sharing a
            name exclude each other.

    Returns:
        A decorator for async methods of a ``GuardedOwner``.
    """

    def decorator(
        func: Callable[Concatenate[S, P], Awaitable[R]],
    ) -> Callable[Concatenate[S, P], Awaitable[Optional[R]]]:
        @wraps(func)
        async def wrapper(self: S, *args: P.args, **kwargs: P.kwargs) -> Optional[R]:
            if not self.in_flight.try_acquire(operation):
                return None
            try:
                return await func(self, *args, **kwargs)
            finally:
                self.in_flight.release(operation)

        return wrapper

    return decorator
