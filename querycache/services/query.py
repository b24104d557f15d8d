"""
QueryResource - reactive, cached, circuit-broken data fetching.

A resource watches a request description (a callable re-evaluated whenever
one of its `depends_on` cells changes), reduces it to a cache key and keeps
its `value` / `status` / `error` cells up to date:

    users = client.query(
        lambda: RequestDescriptor(url="/api/users", params={"page": page.get()}),
        depends_on=[page],
        keep_previous=True,
    )
    users.value.subscribe(render)
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Generic, Iterable, TypeVar

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from querycache.reactive import Cell
from querycache.services.cache import Cache
from querycache.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerOptions
from querycache.services.deduplicator import RequestDeduplicator
from querycache.services.errors import CircuitOpenError
from querycache.services.fingerprint import (
    BodyEqual,
    RequestDescriptor,
    create_equal_request,
    fingerprint,
)
from querycache.services.network import NetworkStatus
from querycache.services.resource import BaseResource, ResourceStatus
from querycache.services.retry import RetryOptions
from querycache.services.transport import Response, Transport
from querycache.utils import logged_job, max_age, parse_cache_control, safe_call

T = TypeVar("T")

RequestFn = Callable[[], RequestDescriptor | None]


@dataclass
class QueryCacheOptions:
    """
    Per-resource caching options.

    None for stale_time/ttl means the cache defaults. `hash` replaces the
    default fingerprint key.
    """

    ttl: timedelta | None = None
    stale_time: timedelta | None = None
    hash: Callable[[RequestDescriptor], str] | None = None
    persist: bool = False
    ignore_cache_control: bool = False


def resolve_cache_options(options: "QueryCacheOptions | bool | None") -> QueryCacheOptions | None:
    """
    False/None disables caching. True caches with an immediately stale entry,
    so every evaluation revalidates behind the cached value.
    """
    if options is None or options is False:
        return None
    if options is True:
        return QueryCacheOptions(stale_time=timedelta(0))
    return options


class QueryResource(BaseResource[T], Generic[T]):
    """
    Observable cells:
        value, status, error, headers, status_code, disabled
    """

    def __init__(
        self,
        request: RequestFn,
        transport: Transport,
        depends_on: Iterable[Any] = (),
        cache: Cache[Response[Any]] | None = None,
        cache_options: QueryCacheOptions | bool | None = None,
        circuit_breaker: CircuitBreakerOptions = None,
        breaker_defaults: CircuitBreakerConfig | None = None,
        retry: RetryOptions = None,
        refresh: timedelta | None = None,
        keep_previous: bool = False,
        on_error: Callable[[BaseException], Any] | None = None,
        trigger_on_same_request: bool = False,
        equal_body: BodyEqual | None = None,
        parse: Callable[[Any], T] | None = None,
        default_value: T | None = None,
        network: NetworkStatus | None = None,
        deduplicator: RequestDeduplicator | None = None,
        scheduler: AsyncIOScheduler | None = None,
        service_id: str = "query",
        debug: bool = False,
    ):
        super().__init__(
            transport,
            circuit_breaker=circuit_breaker,
            breaker_defaults=breaker_defaults,
            retry=retry,
            network=network,
            deduplicator=deduplicator,
            parse=parse,
            service_id=service_id,
            debug=debug,
        )
        self._request_fn = request
        self._cache_options = resolve_cache_options(cache_options) if cache is not None else None
        self._cache = cache if self._cache_options is not None else None
        self._keep_previous = keep_previous
        self._on_error = on_error
        self._trigger_on_same_request = trigger_on_same_request
        self._equal_request = create_equal_request(equal_body)
        self._default_value = default_value

        self.value: Cell[T | None] = Cell(default_value)

        self._current_request: RequestDescriptor | None = None
        self._current_key: str | None = None
        self._suppress_evaluation = False

        self._watch(self._network.online, self._on_gate_change)
        self._watch(self.breaker.status, self._on_gate_change)
        for source in depends_on:
            self._watch(source, self._evaluate)
        if self._cache is not None:
            self._watch(self._cache, self._on_cache_change)

        self._scheduler = scheduler
        self._refresh_job_id: str | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        if refresh is not None:
            self._schedule_refresh(refresh)

        self._evaluate()

    # Request evaluation

    @property
    def request(self) -> RequestDescriptor | None:
        """The request the resource currently tracks."""
        return self._current_request

    @property
    def cache_key(self) -> str | None:
        return self._current_key

    def _effective_request(self) -> RequestDescriptor | None:
        if not self._network.is_online or self.breaker.is_open:
            return None
        return self._request_fn()

    def _key_for(self, request: RequestDescriptor) -> str:
        if self._cache_options is not None and self._cache_options.hash is not None:
            return self._cache_options.hash(request)
        return fingerprint(request)

    def _on_gate_change(self, _: Any) -> None:
        self._evaluate(from_gate=True)

    def _evaluate(self, *_: Any, from_gate: bool = False) -> None:
        if self._destroyed or self._suppress_evaluation:
            return

        request = self._effective_request()
        if request is not None and self._trigger_on_same_request and not from_gate:
            same = False
        else:
            same = self._equal_request(request, self._current_request)
        if same:
            self._update_disabled()
            return

        self._current_request = request
        self._update_disabled()

        if request is None:
            self._go_idle()
            return

        self._current_key = self._key_for(request) if self._cache is not None else None
        self._begin_load(request, force=False)

    def _update_disabled(self) -> None:
        self.disabled.set(self.breaker.is_open or self._current_request is None)

    def _go_idle(self) -> None:
        self._cancel_task()
        self.error.set(None)
        self.status.set(ResourceStatus.IDLE)
        # requests blocked by the breaker or by the network keep showing data
        blocked = not self._network.is_online or self.breaker.is_open
        if blocked or self._keep_previous:
            return
        self._current_key = None
        self.value.set(self._default_value)
        self.headers.set(None)
        self.status_code.set(None)

    # Loading

    def _begin_load(self, request: RequestDescriptor, force: bool) -> None:
        self._cancel_task()
        # a forced re-fetch keeps the value; a new request only keeps it with keep_previous
        reloading = force and self.status.get() in (ResourceStatus.RESOLVED, ResourceStatus.LOCAL)
        if not force and not self._keep_previous:
            self.value.set(self._default_value)
            self.headers.set(None)
            self.status_code.set(None)
        self.error.set(None)
        self.status.set(ResourceStatus.RELOADING if reloading else ResourceStatus.LOADING)
        self._start(self._load(request, self._current_key, force))

    async def _load(self, request: RequestDescriptor, key: str | None, force: bool) -> None:
        if self._cache is not None and key is not None:
            hit = self._cache.get_untracked(key)
            if hit is not None:
                self._publish(hit.value)
                if not hit.is_stale and not force:
                    self.status.set(ResourceStatus.RESOLVED)
                    self._log(f"Served fresh from cache: {key[:50]}")
                    return
                self.status.set(ResourceStatus.RELOADING)

        try:
            response = await self._fetch(request)
            body = self._parse_body(response.body)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_error(e, key)
            return

        self.breaker.success()
        parsed = Response(
            body=body,
            status=response.status,
            headers=response.headers,
            url=response.url,
            status_text=response.status_text,
        )
        self._store(key, parsed)
        self._publish(parsed)
        self.error.set(None)
        self.status.set(ResourceStatus.RESOLVED)

    def _publish(self, response: Response[Any]) -> None:
        self.value.set(response.body)
        self.headers.set(response.headers)
        self.status_code.set(response.status)

    def _store(self, key: str | None, response: Response[Any]) -> None:
        if self._cache is None or key is None:
            return
        lifetimes = self._lifetimes(response)
        if lifetimes is None:
            self._log(f"Not caching {key[:50]}: no-store")
            return
        stale_time, ttl = lifetimes
        self._cache.store(key, response, stale_time, ttl, persist=self._cache_options.persist)

    def _lifetimes(
        self, response: Response[Any]
    ) -> tuple[timedelta | None, timedelta | None] | None:
        """Cache lifetimes for a response, None when it must not be cached."""
        options = self._cache_options
        stale_time, ttl = options.stale_time, options.ttl
        if options.ignore_cache_control:
            return stale_time, ttl

        directives = parse_cache_control(response.header("cache-control"))
        if "no-store" in directives:
            return None
        if "no-cache" in directives:
            stale_time = timedelta(0)
        age = max_age(directives)
        if age is not None:
            ttl = age
        return stale_time, ttl

    def _handle_error(self, err: Exception, key: str | None) -> None:
        self.breaker.fail(err)
        self._log(f"Load failed: {type(err).__name__}: {err}")
        if self.breaker.is_open:
            # the open breaker already moved the resource to idle; it reports
            # disabled, not an error
            safe_call(self._on_error, err)
            return
        cached = self._cache.peek(key) if self._cache is not None and key else None
        if cached is not None:
            self._publish(cached.value)
        else:
            self.value.set(self._default_value)
            self.headers.set(None)
            self.status_code.set(None)
        self._report_error_response(err)
        self.error.set(err)
        self.status.set(ResourceStatus.ERROR)
        safe_call(self._on_error, err)

    def _on_cache_change(self, key: str) -> None:
        if self._destroyed or key != self._current_key:
            return
        hit = self._cache.peek(key)
        # invalidation keeps the last value on screen
        if hit is None:
            return
        self._publish(hit.value)

    # Public operations

    def reload(self) -> bool:
        """
        Half-open the breaker and re-fetch, bypassing a fresh cache entry.

        Returns:
            False when there is nothing to fetch (no request, offline)
        """
        if self._destroyed:
            return False

        self._suppress_evaluation = True
        try:
            self.breaker.half_open()
        finally:
            self._suppress_evaluation = False

        request = self._effective_request()
        self._current_request = request
        self._update_disabled()
        if request is None:
            self._go_idle()
            return False

        self._current_key = self._key_for(request) if self._cache is not None else None
        self._begin_load(request, force=True)
        return True

    def set(self, value: T) -> None:
        """Set the value locally. With caching, also writes a 200 entry."""
        self._cancel_task()
        response = Response(body=value, status=200, headers=self.headers.get() or {})
        self._publish(response)
        self.status.set(ResourceStatus.LOCAL)
        if self._cache is not None and self._current_key is not None:
            options = self._cache_options
            self._cache.store(
                self._current_key,
                response,
                options.stale_time,
                options.ttl,
                persist=options.persist,
            )

    def update(self, fn: Callable[[T], T]) -> None:
        self.set(fn(self.value.get()))

    async def prefetch(self, request: RequestDescriptor | None = None, **overrides: Any) -> None:
        """
        Warm the cache for a related request without touching this resource.

        `overrides` are merged into the current request, or into `request`
        when given.
        """
        if self._cache is None or self._network.has_slow_connection():
            return
        if not self._network.is_online:
            return

        base = request or self._current_request
        if base is None:
            if not overrides.get("url"):
                return
            target = RequestDescriptor(**overrides)
        else:
            target = base.merge(**overrides)
        if not target.url:
            return

        key = self._key_for(target)
        found = self._cache.get_untracked(key)
        if found is not None and not found.is_stale:
            return

        try:
            response = await self._fetch(target)
            body = self._parse_body(response.body)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log(f"Prefetch failed for {key[:50]}: {e}")
            return

        self._store(
            key,
            Response(
                body=body,
                status=response.status,
                headers=response.headers,
                url=response.url,
                status_text=response.status_text,
            ),
        )

    async def settled(self) -> T:
        """
        Wait for the current load to finish.

        Returns:
            The value

        Raises:
            The load error when the resource ended in error
        """
        while self._task is not None and not self._task.done():
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # superseded by a newer load
                if not task.cancelled():
                    raise
        error = self.error.get()
        if self.status.get() == ResourceStatus.ERROR and error is not None:
            raise error
        return self.value.get()

    def has_value(self) -> bool:
        return self.value.get() is not None

    # Refresh

    def _schedule_refresh(self, interval: timedelta) -> None:
        if self._scheduler is not None:
            self._refresh_job_id = f"query-refresh:{id(self)}"
            self._scheduler.add_job(
                self._refresh_job,
                trigger="interval",
                seconds=interval.total_seconds(),
                id=self._refresh_job_id,
                name=f"Refresh {self.service_id}",
                replace_existing=True,
            )
            return

        async def refresh_loop() -> None:
            while True:
                await asyncio.sleep(interval.total_seconds())
                await self._refresh_job()

        self._refresh_task = asyncio.get_running_loop().create_task(refresh_loop())

    @logged_job
    async def _refresh_job(self) -> None:
        if self._destroyed or self._current_request is None:
            return
        if self._task is not None and not self._task.done():
            return
        self._log("Refreshing")
        self._begin_load(self._current_request, force=True)

    def destroy(self) -> None:
        if self._destroyed:
            return
        if self._refresh_job_id is not None and self._scheduler is not None:
            try:
                self._scheduler.remove_job(self._refresh_job_id)
            except JobLookupError:
                pass
        if self._refresh_task is not None:
            self._refresh_task.cancel()
        super().destroy()


class ManualQueryResource(QueryResource[T], Generic[T]):
    """
    Query resource that only fires on trigger().

    Usage:
        search = client.manual_query(lambda: RequestDescriptor(url="/search", params=q()))
        results = await search.trigger()
    """

    def __init__(self, request: RequestFn, transport: Transport, **kwargs: Any):
        self._trigger_count: Cell[int] = Cell(0)
        self._override: RequestDescriptor | None = None
        self._user_request = request
        kwargs["trigger_on_same_request"] = True
        kwargs["depends_on"] = [self._trigger_count, *kwargs.get("depends_on", ())]
        super().__init__(self._manual_request, transport, **kwargs)

    def _manual_request(self) -> RequestDescriptor | None:
        if self._trigger_count.get() == 0:
            return None
        if self._override is not None:
            return self._override
        return self._user_request()

    async def trigger(self, override: RequestDescriptor | str | None = None) -> T:
        """
        Fire the request (or the override) and wait for its result.

        Raises:
            CircuitOpenError: the breaker is open, or this request opened it
        """
        self._raise_if_open()
        if isinstance(override, str):
            override = RequestDescriptor(url=override)
        self._override = override
        self._trigger_count.update(lambda n: n + 1)
        value = await self.settled()
        self._raise_if_open()
        return value

    def _raise_if_open(self) -> None:
        if self.breaker.is_open:
            raise CircuitOpenError(self.service_id, self.breaker.get_time_until_reset())
