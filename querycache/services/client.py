"""
QueryClient - shared context for query and mutation resources.

Holds:
- the query Cache (optionally persisted and synced across instances)
- the Transport (HttpxTransport by default)
- the RequestDeduplicator shared by all queries
- NetworkStatus
- CircuitBreakerRegistry for named, shared breakers
- the APScheduler scheduler running cleanup sweeps and refresh jobs
"""

from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from querycache.services.broadcast import BroadcastHub
from querycache.services.cache import Cache, SyncOptions
from querycache.services.cache_models import CleanupPolicy
from querycache.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
)
from querycache.services.deduplicator import RequestDeduplicator
from querycache.services.fingerprint import RequestDescriptor, fingerprint
from querycache.services.mutation import MutationResource
from querycache.services.network import NetworkStatus
from querycache.services.persistence import open_sql_cache_db
from querycache.services.query import ManualQueryResource, QueryCacheOptions, QueryResource
from querycache.services.resource import BaseResource
from querycache.services.retry import RetryOptions, RetryPolicy
from querycache.services.transport import (
    HttpxTransport,
    Response,
    Transport,
    deserialize_response,
    serialize_response,
)
from querycache.settings import Settings, global_settings

T = TypeVar("T")

SYNC_CHANNEL_PREFIX = "querycache-sync"

BreakerOption = CircuitBreakerOptions | str


class QueryClient:
    """
    Factory and owner of resources. Create it inside a running event loop.

    Usage:
        async with QueryClient() as client:
            users = client.query(lambda: RequestDescriptor(url="https://api.example.com/users"))
            await users.settled()
            print(users.value.get())

        # Named breakers are shared between resources
        client.query(request_a, circuit_breaker="backend")
        client.query(request_b, circuit_breaker="backend")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: Transport | None = None,
        cache: Cache[Response[Any]] | None = None,
        network: NetworkStatus | None = None,
        scheduler: AsyncIOScheduler | None = None,
        hub: BroadcastHub | None = None,
        persist: bool | None = None,
        sync_tabs: bool | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings or global_settings
        s = self.settings
        self._debug = s.debug

        self.scheduler = scheduler or AsyncIOScheduler()
        self._owns_scheduler = scheduler is None

        self.transport: Transport = transport or HttpxTransport(timeout=s.request_timeout)
        self._owns_transport = transport is None

        self.network = network or NetworkStatus()
        self.deduplicator = RequestDeduplicator(debug=self._debug)
        self.breaker_defaults = CircuitBreakerConfig(
            threshold=s.breaker_threshold,
            timeout=timedelta(seconds=s.breaker_timeout_seconds),
        )
        self.breakers = CircuitBreakerRegistry(self.breaker_defaults)

        self.cache = cache if cache is not None else self._create_cache(
            persist=s.cache_persist if persist is None else persist,
            sync_tabs=s.cache_sync_tabs if sync_tabs is None else sync_tabs,
            hub=hub,
            clock=clock,
        )
        self._owns_cache = cache is None

        self._resources: set[BaseResource[Any]] = set()
        self._started = False
        self._closed = False

    def _create_cache(
        self,
        persist: bool,
        sync_tabs: bool,
        hub: BroadcastHub | None,
        clock: Callable[[], datetime],
    ) -> Cache[Response[Any]]:
        s = self.settings

        sync = None
        if sync_tabs:
            sync = SyncOptions(
                id=f"{SYNC_CHANNEL_PREFIX}-v{s.cache_version}",
                serialize=serialize_response,
                deserialize=deserialize_response,
                hub=hub,
            )

        db = None
        if persist:
            db = open_sql_cache_db(
                serialize_response,
                deserialize_response,
                database_url=s.database_url,
                version=s.cache_version,
                debug=self._debug,
            )

        return Cache(
            ttl=timedelta(seconds=s.cache_ttl_seconds),
            stale_time=timedelta(seconds=s.cache_stale_time_seconds),
            cleanup=CleanupPolicy(
                type=s.cache_cleanup_type,
                max_size=s.cache_max_size,
                check_interval=timedelta(seconds=s.cache_check_interval_seconds),
            ),
            sync=sync,
            db=db,
            scheduler=self.scheduler,
            clock=clock,
            debug=self._debug,
        )

    # Lifecycle

    async def start(self) -> "QueryClient":
        """Start the scheduler and wait for the durable store to load."""
        if self._started:
            return self
        if self._owns_scheduler and not self.scheduler.running:
            self.scheduler.start()
        await self.cache.ready()
        self._started = True
        logger.info(f"QueryClient started ({len(self.cache)} cached entries)")
        return self

    async def close(self) -> None:
        """Destroy resources, flush and release the cache, close the transport."""
        if self._closed:
            return
        self._closed = True

        for resource in list(self._resources):
            resource.destroy()
        self._resources.clear()
        self.deduplicator.cancel_all()
        self.breakers.destroy()

        if self._owns_cache:
            await self.cache.close()

        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if self._owns_transport:
            close = getattr(self.transport, "close", None)
            if close is not None:
                await close()

        logger.debug("QueryClient closed")

    async def __aenter__(self) -> "QueryClient":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Resource factories

    def _resolve_breaker(self, option: BreakerOption) -> CircuitBreakerOptions:
        if isinstance(option, str):
            return self.breakers.get(option)
        return option

    def _resolve_retry(self, retry: RetryOptions | bool) -> RetryOptions:
        if retry is True:
            return RetryPolicy(max_retries=self.settings.max_retries)
        if retry is False:
            return None
        return retry

    def _track(self, resource: BaseResource[Any]) -> None:
        self._resources.add(resource)
        resource.on_destroy(lambda: self._resources.discard(resource))

    def query(
        self,
        request: Callable[[], RequestDescriptor | None],
        cache: QueryCacheOptions | bool | None = None,
        circuit_breaker: BreakerOption = None,
        retry: RetryOptions | bool = None,
        **kwargs: Any,
    ) -> QueryResource[Any]:
        """
        Create a query resource bound to this client's cache, transport,
        deduplicator, network status and scheduler.

        Args:
            request: Callable returning the request, or None for no request
            cache: QueryCacheOptions; None caches with the cache defaults, True with
                an always-stale entry (revalidate on every evaluation), False disables
            circuit_breaker: Breaker options, or a name for a shared breaker
            retry: RetryPolicy, max retries, or True for the configured default
            **kwargs: Other QueryResource options (depends_on, keep_previous, ...)
        """
        resource = QueryResource(
            request,
            self.transport,
            **self._resource_kwargs(cache, circuit_breaker, retry, kwargs),
        )
        self._track(resource)
        return resource

    def manual_query(
        self,
        request: Callable[[], RequestDescriptor | None],
        cache: QueryCacheOptions | bool | None = None,
        circuit_breaker: BreakerOption = None,
        retry: RetryOptions | bool = None,
        **kwargs: Any,
    ) -> ManualQueryResource[Any]:
        """Like query(), but only fires on trigger()."""
        resource = ManualQueryResource(
            request,
            self.transport,
            **self._resource_kwargs(cache, circuit_breaker, retry, kwargs),
        )
        self._track(resource)
        return resource

    def _resource_kwargs(
        self,
        cache: QueryCacheOptions | bool | None,
        circuit_breaker: BreakerOption,
        retry: RetryOptions | bool,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "cache": self.cache,
            "cache_options": QueryCacheOptions() if cache is None else cache,
            "circuit_breaker": self._resolve_breaker(circuit_breaker),
            "breaker_defaults": self.breaker_defaults,
            "retry": self._resolve_retry(retry),
            "network": self.network,
            "deduplicator": self.deduplicator,
            "scheduler": self.scheduler,
            "debug": self._debug,
        }
        options.update(extra)
        return options

    def mutation(
        self,
        request: Callable[[Any], RequestDescriptor | None],
        circuit_breaker: BreakerOption = None,
        retry: RetryOptions | bool = None,
        **kwargs: Any,
    ) -> MutationResource[Any, Any, Any]:
        """Create a mutation resource. See MutationResource for the hooks."""
        resource = MutationResource(
            request,
            self.transport,
            circuit_breaker=self._resolve_breaker(circuit_breaker),
            breaker_defaults=self.breaker_defaults,
            retry=self._resolve_retry(retry),
            network=self.network,
            debug=self._debug,
            **kwargs,
        )
        self._track(resource)
        return resource

    # Health and status methods

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of the cache, breakers and deduplicator."""
        return {
            "online": self.network.is_online,
            "cache": self.cache.get_stats().to_dict(),
            "circuit_breakers": self.breakers.get_all_status(),
            "deduplicator": self.deduplicator.get_stats().to_dict(),
            "open_circuits": self.breakers.get_open_circuits(),
            "resources": len(self._resources),
        }

    def invalidate(self, request: RequestDescriptor | str) -> None:
        """Invalidate the cache entry for a request or raw key."""
        key = request if isinstance(request, str) else fingerprint(request)
        self.cache.invalidate(key)

    def clear_cache(self) -> int:
        """Clear every cache entry. Returns the number removed."""
        return self.cache.clear()
