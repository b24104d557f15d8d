"""
Shared machinery of query and mutation resources: breaker wiring, retrying
and deduplicated transport calls, observable status cells and teardown.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

from querycache.reactive import Cell
from querycache.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOptions,
    create_circuit_breaker,
)
from querycache.services.deduplicator import RequestDeduplicator
from querycache.services.errors import HttpStatusError
from querycache.services.fingerprint import RequestDescriptor, fingerprint, request_key
from querycache.services.network import NetworkStatus
from querycache.services.retry import RetryOptions, resolve_retry, run_with_retry
from querycache.services.transport import Response, Transport

T = TypeVar("T")


class ResourceStatus(str, Enum):
    """Resource lifecycle states."""

    IDLE = "idle"  # No request
    LOADING = "loading"  # First load for the current request
    RELOADING = "reloading"  # Re-fetch while a value is shown
    RESOLVED = "resolved"  # Value loaded
    ERROR = "error"  # Last load failed
    LOCAL = "local"  # Value set manually


class BaseResource(Generic[T]):
    """Base class for resources. Must be created inside a running event loop."""

    def __init__(
        self,
        transport: Transport,
        circuit_breaker: CircuitBreakerOptions = None,
        breaker_defaults: CircuitBreakerConfig | None = None,
        retry: RetryOptions = None,
        network: NetworkStatus | None = None,
        deduplicator: RequestDeduplicator | None = None,
        parse: Callable[[Any], T] | None = None,
        service_id: str = "query",
        debug: bool = False,
    ):
        self.service_id = service_id
        self._transport = transport
        self.breaker: CircuitBreaker = create_circuit_breaker(
            circuit_breaker, breaker_defaults, service_id
        )
        # shared breakers outlive this resource
        self._owns_breaker = not isinstance(circuit_breaker, CircuitBreaker)
        self._retry = resolve_retry(retry)
        self._network = network or NetworkStatus()
        self._dedup = deduplicator
        self._parse = parse
        self._debug = debug

        self.status: Cell[ResourceStatus] = Cell(ResourceStatus.IDLE)
        self.error: Cell[BaseException | None] = Cell(None, equal=lambda a, b: a is b)
        self.headers: Cell[dict[str, list[str]] | None] = Cell(None)
        self.status_code: Cell[int | None] = Cell(None)
        self.disabled: Cell[bool] = Cell(False)

        self._task: asyncio.Task[Any] | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._destroy_callbacks: list[Callable[[], None]] = []
        self._destroyed = False

    @property
    def is_loading(self) -> bool:
        return self.status.get() in (ResourceStatus.LOADING, ResourceStatus.RELOADING)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    async def _fetch(self, request: RequestDescriptor) -> Response[Any]:
        """
        Send through retry and, when configured, in-flight deduplication.
        Only requests equal in every compared field share a call.
        """
        label = fingerprint(request)

        async def send() -> Response[Any]:
            return await run_with_retry(
                lambda: self._transport.send(request), self._retry, label
            )

        if self._dedup is None:
            return await send()
        return await self._dedup.dedupe(request_key(request), send)

    def _parse_body(self, body: Any) -> T:
        if self._parse is None:
            return body
        return self._parse(body)

    def _report_error_response(self, err: BaseException) -> None:
        if isinstance(err, HttpStatusError):
            self.status_code.set(err.status)

    def _watch(self, source: Any, listener: Callable[[Any], None]) -> None:
        self._unsubscribers.append(source.subscribe(listener))

    def _start(self, coro: Any) -> asyncio.Task[Any]:
        self._task = asyncio.get_running_loop().create_task(coro)
        return self._task

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def on_destroy(self, callback: Callable[[], None]) -> None:
        """Register a callback run once when the resource is destroyed."""
        self._destroy_callbacks.append(callback)

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[{type(self).__name__}:{self.service_id}] {message}")

    def destroy(self) -> None:
        """Abort in-flight work, unsubscribe and release an owned breaker."""
        if self._destroyed:
            return
        self._destroyed = True
        self._cancel_task()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._owns_breaker:
            self.breaker.destroy()
        callbacks, self._destroy_callbacks = self._destroy_callbacks, []
        for callback in callbacks:
            callback()
