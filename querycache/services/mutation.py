"""
MutationResource - one-shot writes with lifecycle hooks.

    save = client.mutation(
        lambda todo: RequestDescriptor(url="/api/todos", method="POST", body=todo),
        on_mutate=lambda todo, ctx: optimistic_insert(todo),
        on_error=lambda err, ctx: rollback(ctx),
        on_settled=lambda ctx: todos.reload(),
        queue_if_network_unavailable=True,
    )
    save.mutate({"title": "buy milk"})
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from querycache.reactive import Cell
from querycache.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerOptions
from querycache.services.fingerprint import RequestDescriptor
from querycache.services.network import NetworkStatus
from querycache.services.resource import BaseResource, ResourceStatus
from querycache.services.retry import RetryOptions
from querycache.services.transport import Transport
from querycache.utils import safe_call

M = TypeVar("M")  # mutation value
R = TypeVar("R")  # result
C = TypeVar("C")  # context


@dataclass
class PendingMutation(Generic[M, C]):
    value: M
    ctx: C | None = None


class MutationResource(BaseResource[R], Generic[M, R, C]):
    """
    Runs one mutation at a time.

    Without `queue_if_network_unavailable` only the most recent pending
    mutation waits behind the running one; with it, mutations queue FIFO and
    drain in order whenever the network is up and the breaker closed.
    """

    def __init__(
        self,
        request: Callable[[M], RequestDescriptor | None],
        transport: Transport,
        on_mutate: Callable[[M, C | None], C | None] | None = None,
        on_success: Callable[[R, C | None], Any] | None = None,
        on_error: Callable[[BaseException, C | None], Any] | None = None,
        on_settled: Callable[[C | None], Any] | None = None,
        queue_if_network_unavailable: bool = False,
        circuit_breaker: CircuitBreakerOptions = None,
        breaker_defaults: CircuitBreakerConfig | None = None,
        retry: RetryOptions = None,
        parse: Callable[[Any], R] | None = None,
        network: NetworkStatus | None = None,
        service_id: str = "mutation",
        debug: bool = False,
    ):
        super().__init__(
            transport,
            circuit_breaker=circuit_breaker,
            breaker_defaults=breaker_defaults,
            retry=retry,
            network=network,
            parse=parse,
            service_id=service_id,
            debug=debug,
        )
        self._request_fn = request
        self._on_mutate = on_mutate
        self._on_success = on_success
        self._on_error = on_error
        self._on_settled = on_settled
        self._queue_enabled = queue_if_network_unavailable
        self._queue: deque[PendingMutation[M, C]] = deque()

        self.current: Cell[M | None] = Cell(None)
        self.result: Cell[R | None] = Cell(None)

        self._watch(self._network.online, self._on_gate_change)
        self._watch(self.breaker.status, self._on_gate_change)
        self._update_disabled()

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def mutate(self, value: M, ctx: C | None = None) -> None:
        """
        Schedule a mutation. `on_mutate` runs right away; its return value is
        the context passed to the other hooks. Without `on_mutate` the given
        ctx is passed on. An exception from `on_mutate` propagates and the
        mutation is not scheduled.
        """
        if self._destroyed:
            raise RuntimeError("MutationResource is destroyed")

        if self._on_mutate is not None:
            ctx = self._on_mutate(value, ctx)

        if not self._queue_enabled:
            self._drop_pending()
        self._queue.append(PendingMutation(value, ctx))
        self._log(f"Queued mutation ({len(self._queue)} pending)")
        self._drain()

    def _drop_pending(self) -> None:
        """Settle superseded mutations that never ran."""
        while self._queue:
            item = self._queue.popleft()
            self._log("Dropped superseded mutation")
            safe_call(self._on_settled, item.ctx)

    def _can_run(self) -> bool:
        return self._network.is_online and not self.breaker.is_open

    def _update_disabled(self) -> None:
        self.disabled.set(self.breaker.is_open)

    def _on_gate_change(self, _: Any) -> None:
        self._update_disabled()
        self._drain()

    def _drain(self) -> None:
        if self._destroyed or not self._queue or not self._can_run():
            return
        if self._task is not None and not self._task.done():
            return
        self._start(self._run(self._queue.popleft()))

    async def _run(self, item: PendingMutation[M, C]) -> None:
        self.current.set(item.value)
        self.error.set(None)
        self.status.set(ResourceStatus.LOADING)

        try:
            request = self._request_fn(item.value)
            if request is None:
                self._log("Mutation produced no request, skipping")
                self.status.set(ResourceStatus.IDLE)
            else:
                response = await self._fetch(request)
                result = self._parse_body(response.body)
                self.breaker.success()
                self.headers.set(response.headers)
                self.status_code.set(response.status)
                self.result.set(result)
                self.status.set(ResourceStatus.RESOLVED)
                safe_call(self._on_success, result, item.ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.breaker.fail(e)
            self._report_error_response(e)
            self.error.set(e)
            self.status.set(ResourceStatus.ERROR)
            self._log(f"Mutation failed: {type(e).__name__}: {e}")
            safe_call(self._on_error, e, item.ctx)

        safe_call(self._on_settled, item.ctx)
        self.current.set(None)
        self._task = None
        self._drain()

    async def join(self) -> None:
        """Wait until no mutation is running and none can be started."""
        while self._task is not None and not self._task.done():
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    def destroy(self) -> None:
        if not self._destroyed:
            self._drop_pending()
        super().destroy()
