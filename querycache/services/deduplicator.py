"""
RequestDeduplicator - Shares one in-flight request between identical callers.

When several resources fetch the same cache key at the same time, only one
transport call is made and every caller awaits its result. Cancelling one
caller does not cancel the shared call; it is aborted only when its last
caller goes away.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class _InFlight:
    task: asyncio.Task[Any]
    waiters: int = 0


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch(request):
            return await dedup.dedupe(
                key=fingerprint(request),
                request_fn=lambda: transport.send(request),
            )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, _InFlight] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run `request_fn` unless a call for `key` is already in flight, in which
        case join it. Every caller gets the same result or exception.
        """
        flight = self._in_flight.get(key)
        if flight is not None:
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: Waiting for in-flight request: {key[:50]}...")
        else:
            self._stats.total += 1
            self._log(f"NEW: Starting request: {key[:50]}...")
            flight = _InFlight(asyncio.ensure_future(request_fn()))
            self._in_flight[key] = flight
            flight.task.add_done_callback(lambda _: self._cleanup(key, flight))

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                flight.task.cancel()
                self._cleanup(key, flight)
                self._log(f"CANCEL: No callers left for {key[:50]}...")

    def _cleanup(self, key: str, flight: _InFlight) -> None:
        if self._in_flight.get(key) is flight:
            del self._in_flight[key]
            self._log(f"DONE: Request completed: {key[:50]}...")

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def cancel(self, key: str) -> bool:
        """Cancel an in-flight request."""
        flight = self._in_flight.pop(key, None)
        if flight is None:
            return False
        flight.task.cancel()
        self._log(f"CANCEL: Request cancelled: {key[:50]}...")
        return True

    def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        count = len(self._in_flight)
        for flight in self._in_flight.values():
            flight.task.cancel()
        self._in_flight.clear()
        if count:
            self._log(f"CANCEL_ALL: {count} requests cancelled")
        return count

    def get_in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


@dataclass
class DeduplicatorStats:
    total: int = 0  # calls that reached request_fn
    deduplicated: int = 0  # callers that joined an existing call
    in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        callers = self.total + self.deduplicated
        return self.deduplicated / callers if callers else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
