import asyncio
from datetime import timedelta

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from helpers import FakeTransport, settle
from querycache.reactive import Cell
from querycache.services.cache import Cache
from querycache.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from querycache.services.deduplicator import RequestDeduplicator
from querycache.services.errors import CircuitOpenError, HttpStatusError, ServiceError
from querycache.services.fingerprint import RequestDescriptor, fingerprint
from querycache.services.network import NetworkStatus
from querycache.services.query import ManualQueryResource, QueryCacheOptions, QueryResource
from querycache.services.resource import ResourceStatus
from querycache.services.retry import RetryPolicy
from querycache.services.transport import Response


def items(page: int | None = None) -> RequestDescriptor:
    return RequestDescriptor(url="/items", params={"page": page} if page else None)


class TestLoading:
    @pytest.mark.asyncio
    async def test_loads_value(self, transport):
        query = QueryResource(items, transport)

        assert query.status.get() == ResourceStatus.LOADING
        assert query.is_loading
        assert not query.has_value()

        value = await query.settled()

        assert value == {"url": "/items", "params": None}
        assert query.status.get() == ResourceStatus.RESOLVED
        assert query.status_code.get() == 200
        assert query.disabled.get() is False
        assert len(transport.calls) == 1
        assert query.has_value()
        query.destroy()

    @pytest.mark.asyncio
    async def test_no_request_is_idle(self, transport):
        enabled = Cell(False)
        query = QueryResource(
            lambda: items() if enabled.get() else None, transport, depends_on=[enabled]
        )

        assert query.status.get() == ResourceStatus.IDLE
        assert query.disabled.get() is True

        enabled.set(True)
        await query.settled()

        assert query.status.get() == ResourceStatus.RESOLVED
        assert len(transport.calls) == 1
        query.destroy()

    @pytest.mark.asyncio
    async def test_parse_and_default_value(self):
        transport = FakeTransport(lambda request: {"n": 21})
        query = QueryResource(items, transport, parse=lambda body: body["n"] * 2, default_value=0)

        assert query.value.get() == 0
        assert await query.settled() == 42
        query.destroy()

    @pytest.mark.asyncio
    async def test_parse_error_falls_back_to_default(self):
        transport = FakeTransport(lambda request: {})
        query = QueryResource(items, transport, parse=lambda body: body["n"], default_value=-1)

        with pytest.raises(KeyError):
            await query.settled()

        assert query.status.get() == ResourceStatus.ERROR
        assert query.value.get() == -1
        query.destroy()

    @pytest.mark.asyncio
    async def test_http_error_exposes_status_code(self):
        transport = FakeTransport(lambda request: HttpStatusError(404, "missing"))
        errors = []
        query = QueryResource(items, transport, on_error=errors.append)

        with pytest.raises(HttpStatusError):
            await query.settled()

        assert query.status_code.get() == 404
        assert isinstance(query.error.get(), HttpStatusError)
        assert errors == [query.error.get()]
        query.destroy()

    @pytest.mark.asyncio
    async def test_broken_error_handler_is_contained(self):
        transport = FakeTransport(lambda request: ServiceError("down"))

        def on_error(err):
            raise RuntimeError("handler bug")

        query = QueryResource(items, transport, on_error=on_error)

        with pytest.raises(ServiceError):
            await query.settled()
        assert query.status.get() == ResourceStatus.ERROR
        query.destroy()

    @pytest.mark.asyncio
    async def test_retry_before_surfacing_error(self):
        failures = [ServiceError("blip")]

        def handler(request):
            return failures.pop() if failures else "ok"

        transport = FakeTransport(handler)
        query = QueryResource(items, transport, retry=RetryPolicy(max_retries=1, base_delay=0))

        assert await query.settled() == "ok"
        assert len(transport.calls) == 2
        query.destroy()


class TestRequestChanges:
    @pytest.mark.asyncio
    async def test_equal_request_fires_nothing(self, transport):
        page = Cell(1)
        noise = Cell(0)
        query = QueryResource(lambda: items(page.get()), transport, depends_on=[page, noise])
        await query.settled()

        noise.set(1)
        await settle()
        assert len(transport.calls) == 1

        page.set(2)
        await query.settled()
        assert len(transport.calls) == 2
        assert transport.calls[-1].params == {"page": 2}
        query.destroy()

    @pytest.mark.asyncio
    async def test_trigger_on_same_request(self, transport):
        noise = Cell(0)
        query = QueryResource(
            items, transport, depends_on=[noise], trigger_on_same_request=True
        )
        await query.settled()

        noise.set(1)
        await query.settled()

        assert len(transport.calls) == 2
        query.destroy()

    @pytest.mark.asyncio
    async def test_new_request_supersedes_in_flight_load(self, transport):
        page = Cell(1)
        gate = transport.hold()
        query = QueryResource(lambda: items(page.get()), transport, depends_on=[page])
        await settle()

        page.set(2)
        gate.set()
        value = await query.settled()

        assert value["params"] == {"page": 2}
        query.destroy()

    @pytest.mark.asyncio
    async def test_keep_previous_holds_value(self, transport):
        page = Cell(1)
        query = QueryResource(
            lambda: items(page.get()), transport, depends_on=[page], keep_previous=True
        )
        first = await query.settled()

        gate = transport.hold()
        page.set(2)

        assert query.status.get() == ResourceStatus.LOADING
        assert query.value.get() == first
        assert query.status_code.get() == 200

        gate.set()
        assert (await query.settled())["params"] == {"page": 2}
        query.destroy()

    @pytest.mark.asyncio
    async def test_without_keep_previous_value_resets(self, transport):
        page = Cell(1)
        query = QueryResource(lambda: items(page.get()), transport, depends_on=[page])
        await query.settled()

        transport.hold()
        page.set(2)

        assert query.value.get() is None
        assert query.status_code.get() is None
        query.destroy()


class TestCaching:
    @pytest.mark.asyncio
    async def test_fresh_hit_served_without_network(self, transport):
        cache = Cache()
        first = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await first.settled()

        second = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())

        assert await second.settled() == first.value.get()
        assert len(transport.calls) == 1
        first.destroy()
        second.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_stale_hit_served_then_revalidated(self, transport, clock):
        cache = Cache(clock=clock)
        key = fingerprint(items())
        cache.store(key, Response(body="old"))
        clock.advance(3601)

        gate = transport.hold()
        query = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await settle()

        assert query.value.get() == "old"
        assert query.status.get() == ResourceStatus.RELOADING

        gate.set()
        fresh = await query.settled()

        assert fresh == {"url": "/items", "params": None}
        assert cache.peek(key).value.body == fresh
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_cache_true_always_revalidates(self, transport):
        cache = Cache()
        first = QueryResource(items, transport, cache=cache, cache_options=True)
        await first.settled()
        second = QueryResource(items, transport, cache=cache, cache_options=True)
        await second.settled()

        assert len(transport.calls) == 2
        first.destroy()
        second.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_custom_hash_and_ttl(self, transport):
        cache = Cache()
        options = QueryCacheOptions(
            hash=lambda request: f"items:{request.url}",
            ttl=timedelta(seconds=30),
            stale_time=timedelta(seconds=10),
        )
        query = QueryResource(items, transport, cache=cache, cache_options=options)
        await query.settled()

        hit = cache.peek("items:/items")
        assert hit is not None
        assert hit.expires_at - hit.updated == timedelta(seconds=30)
        assert hit.stale - hit.updated == timedelta(seconds=10)
        assert query.cache_key == "items:/items"
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_cache_control_no_store(self):
        transport = FakeTransport(
            lambda request: Response(body=1, headers={"Cache-Control": ["no-store"]})
        )
        cache = Cache()
        query = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await query.settled()

        assert query.value.get() == 1
        assert cache.keys() == []
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_cache_control_max_age_and_no_cache(self):
        transport = FakeTransport(
            lambda request: Response(body=1, headers={"cache-control": ["no-cache, max-age=20"]})
        )
        cache = Cache()
        query = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await query.settled()

        hit = cache.peek(query.cache_key)
        assert hit.expires_at - hit.updated == timedelta(seconds=20)
        assert hit.is_stale is True
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_ignore_cache_control(self):
        transport = FakeTransport(
            lambda request: Response(body=1, headers={"cache-control": ["no-store"]})
        )
        cache = Cache()
        options = QueryCacheOptions(ignore_cache_control=True)
        query = QueryResource(items, transport, cache=cache, cache_options=options)
        await query.settled()

        assert cache.peek(query.cache_key) is not None
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_value_follows_cache_writes(self, transport):
        cache = Cache()
        query = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await query.settled()

        cache.store(query.cache_key, Response(body="from elsewhere", status=203))

        assert query.value.get() == "from elsewhere"
        assert query.status_code.get() == 203

        cache.invalidate(query.cache_key)
        assert query.value.get() == "from elsewhere"
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_error_keeps_cached_value(self, clock):
        responses = ["cached", ServiceError("down")]
        transport = FakeTransport(lambda request: responses.pop(0))
        cache = Cache(clock=clock)
        options = QueryCacheOptions(stale_time=timedelta(0))
        query = QueryResource(items, transport, cache=cache, cache_options=options)
        await query.settled()

        query.reload()
        with pytest.raises(ServiceError):
            await query.settled()

        assert query.value.get() == "cached"
        assert cache.peek(query.cache_key) is not None
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_set_and_update_write_through(self, transport):
        cache = Cache()
        query = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await query.settled()

        query.set({"n": 1})
        assert query.status.get() == ResourceStatus.LOCAL
        assert query.value.get() == {"n": 1}

        query.update(lambda value: {**value, "m": 2})
        hit = cache.peek(query.cache_key)
        assert hit.value.body == {"n": 1, "m": 2}
        assert hit.value.status == 200
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_prefetch_warms_cache_only(self, transport):
        cache = Cache()
        query = QueryResource(
            lambda: items(1), transport, cache=cache, cache_options=QueryCacheOptions()
        )
        first = await query.settled()

        await query.prefetch(params={"page": 2})

        assert cache.peek(fingerprint(items(2))) is not None
        assert query.value.get() == first
        assert len(transport.calls) == 2

        await query.prefetch(params={"page": 2})
        assert len(transport.calls) == 2
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_prefetch_skipped_on_slow_connection(self, transport):
        cache = Cache()
        network = NetworkStatus(effective_type="2g")
        query = QueryResource(
            items, transport, cache=cache, cache_options=QueryCacheOptions(), network=network
        )
        await query.settled()

        await query.prefetch(params={"page": 9})

        assert len(transport.calls) == 1
        query.destroy()
        cache.destroy()

    @pytest.mark.asyncio
    async def test_prefetch_without_cache_is_noop(self, transport):
        query = QueryResource(items, transport)
        await query.settled()

        await query.prefetch(params={"page": 2})

        assert len(transport.calls) == 1
        query.destroy()

    @pytest.mark.asyncio
    async def test_prefetch_failure_is_swallowed(self):
        transport = FakeTransport(
            lambda request: ServiceError("down") if request.params else "ok"
        )
        cache = Cache()
        query = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await query.settled()

        await query.prefetch(params={"page": 2})

        assert query.status.get() == ResourceStatus.RESOLVED
        assert query.error.get() is None
        query.destroy()
        cache.destroy()


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_concurrent_resources_share_one_call(self, transport):
        dedup = RequestDeduplicator()
        gate = transport.hold()
        a = QueryResource(items, transport, deduplicator=dedup)
        b = QueryResource(items, transport, deduplicator=dedup)
        await settle()

        gate.set()
        assert await a.settled() == await b.settled()
        assert len(transport.calls) == 1
        a.destroy()
        b.destroy()

    @pytest.mark.asyncio
    async def test_requests_differing_in_headers_do_not_share_a_call(self):
        transport = FakeTransport(lambda request: {"user": request.headers["Authorization"]})
        dedup = RequestDeduplicator()
        gate = transport.hold()
        alice = QueryResource(
            lambda: RequestDescriptor(url="/me", headers={"Authorization": "alice"}),
            transport,
            deduplicator=dedup,
        )
        bob = QueryResource(
            lambda: RequestDescriptor(url="/me", headers={"Authorization": "bob"}),
            transport,
            deduplicator=dedup,
        )
        await settle()

        gate.set()

        assert await alice.settled() == {"user": "alice"}
        assert await bob.settled() == {"user": "bob"}
        assert len(transport.calls) == 2
        alice.destroy()
        bob.destroy()

    @pytest.mark.asyncio
    async def test_requests_differing_in_context_do_not_share_a_call(self, transport):
        dedup = RequestDeduplicator()
        gate = transport.hold()
        a = QueryResource(
            lambda: RequestDescriptor(url="/items", context={"tenant": "a"}), transport, deduplicator=dedup
        )
        b = QueryResource(
            lambda: RequestDescriptor(url="/items", context={"tenant": "b"}), transport, deduplicator=dedup
        )
        await settle()

        gate.set()
        await a.settled()
        await b.settled()

        assert len(transport.calls) == 2
        a.destroy()
        b.destroy()


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_disables_and_recovers_on_reload(self):
        transport = FakeTransport(lambda request: ServiceError("down"))
        errors = []
        config = CircuitBreakerConfig(threshold=2, timeout=timedelta(seconds=60))
        query = QueryResource(items, transport, circuit_breaker=config, on_error=errors.append)

        with pytest.raises(ServiceError):
            await query.settled()
        assert query.breaker.is_closed
        assert query.disabled.get() is False

        query.reload()
        await query.settled()

        assert query.breaker.is_open
        assert query.disabled.get() is True
        assert query.status.get() == ResourceStatus.IDLE
        assert query.error.get() is None
        assert len(errors) == 2
        assert len(transport.calls) == 2

        transport.handler = lambda request: "back"
        assert query.reload() is True
        assert await query.settled() == "back"
        assert query.breaker.is_closed
        assert query.disabled.get() is False
        query.destroy()

    @pytest.mark.asyncio
    async def test_breaker_timeout_triggers_trial(self):
        transport = FakeTransport(lambda request: ServiceError("down"))
        config = CircuitBreakerConfig(threshold=1, timeout=timedelta(seconds=0.01))
        query = QueryResource(items, transport, circuit_breaker=config)
        assert await query.settled() is None
        assert query.disabled.get() is True

        transport.handler = lambda request: "recovered"
        await asyncio.sleep(0.05)

        assert await query.settled() == "recovered"
        assert query.breaker.is_closed
        assert len(transport.calls) == 2
        query.destroy()

    @pytest.mark.asyncio
    async def test_tripping_failure_reports_disabled_not_error(self):
        transport = FakeTransport(lambda request: "ok")
        errors = []
        config = CircuitBreakerConfig(threshold=1, timeout=timedelta(seconds=60))
        query = QueryResource(items, transport, circuit_breaker=config, on_error=errors.append)
        await query.settled()

        transport.handler = lambda request: ServiceError("down")
        query.reload()
        assert await query.settled() == "ok"

        assert query.breaker.is_open
        assert query.disabled.get() is True
        assert query.status.get() == ResourceStatus.IDLE
        assert query.error.get() is None
        assert [str(e) for e in errors] == ["down"]
        query.destroy()

    @pytest.mark.asyncio
    async def test_blocked_resource_drops_previous_error(self):
        breaker = CircuitBreaker("shared", CircuitBreakerConfig(threshold=5))
        query = QueryResource(
            items, FakeTransport(lambda request: ServiceError("down")), circuit_breaker=breaker
        )
        with pytest.raises(ServiceError):
            await query.settled()

        breaker.fail(ServiceError("fatal"))
        breaker.fail(ServiceError("fatal"))
        breaker.fail(ServiceError("fatal"))
        breaker.fail(ServiceError("fatal"))

        assert breaker.is_open
        assert query.disabled.get() is True
        assert query.status.get() == ResourceStatus.IDLE
        assert query.error.get() is None
        query.destroy()
        breaker.destroy()

    @pytest.mark.asyncio
    async def test_shared_breaker_blocks_all_resources(self, transport):
        breaker = CircuitBreaker("shared", CircuitBreakerConfig(threshold=1))
        a = QueryResource(items, transport, circuit_breaker=breaker)
        await a.settled()
        b = QueryResource(lambda: items(2), transport, circuit_breaker=breaker)
        await b.settled()

        breaker.fail(ServiceError("elsewhere"))

        assert a.disabled.get() is True
        assert b.disabled.get() is True
        # blocked resources keep their data
        assert a.value.get() is not None

        a.destroy()
        assert breaker.is_open
        b.destroy()
        breaker.destroy()


class TestNetwork:
    @pytest.mark.asyncio
    async def test_offline_blocks_until_online(self, transport):
        network = NetworkStatus(online=False)
        query = QueryResource(items, transport, network=network)
        await settle()

        assert query.disabled.get() is True
        assert transport.calls == []

        network.set_online(True)
        await query.settled()

        assert len(transport.calls) == 1
        assert query.disabled.get() is False
        query.destroy()

    @pytest.mark.asyncio
    async def test_going_offline_cancels_load(self, transport):
        network = NetworkStatus()
        transport.hold()
        query = QueryResource(items, transport, network=network)
        await settle()

        network.set_online(False)
        await settle()

        assert query.status.get() == ResourceStatus.IDLE
        assert query.disabled.get() is True
        query.destroy()


class TestRefreshAndDestroy:
    @pytest.mark.asyncio
    async def test_refresh_interval_refetches(self, transport):
        query = QueryResource(items, transport, refresh=timedelta(seconds=0.02))
        await query.settled()

        await asyncio.sleep(0.07)
        assert len(transport.calls) >= 2

        query.destroy()
        calls = len(transport.calls)
        await asyncio.sleep(0.05)
        assert len(transport.calls) == calls

    @pytest.mark.asyncio
    async def test_refresh_job_registered_with_scheduler(self, transport):
        scheduler = AsyncIOScheduler()
        query = QueryResource(
            items, transport, refresh=timedelta(minutes=5), scheduler=scheduler
        )
        await query.settled()

        assert len(scheduler.get_jobs()) == 1

        query.destroy()
        assert scheduler.get_jobs() == []

    @pytest.mark.asyncio
    async def test_refresh_keeps_value_while_reloading(self, transport):
        query = QueryResource(items, transport)
        value = await query.settled()

        transport.hold()
        await query._refresh_job()

        assert query.status.get() == ResourceStatus.RELOADING
        assert query.value.get() == value
        query.destroy()

    @pytest.mark.asyncio
    async def test_destroy_aborts_in_flight_fetch(self, transport):
        cache = Cache()
        gate = transport.hold()
        query = QueryResource(items, transport, cache=cache, cache_options=QueryCacheOptions())
        await settle()

        query.destroy()
        gate.set()
        await settle()

        assert query.destroyed
        assert query.value.get() is None
        assert cache.keys() == []
        cache.destroy()


class TestManualQuery:
    @pytest.mark.asyncio
    async def test_fires_only_on_trigger(self, transport):
        query = ManualQueryResource(lambda: RequestDescriptor(url="/search"), transport)
        await settle()

        assert transport.calls == []
        assert query.status.get() == ResourceStatus.IDLE

        assert (await query.trigger())["url"] == "/search"
        await query.trigger()
        assert len(transport.calls) == 2
        query.destroy()

    @pytest.mark.asyncio
    async def test_trigger_with_override(self, transport):
        query = ManualQueryResource(lambda: RequestDescriptor(url="/search"), transport)

        value = await query.trigger("/other")

        assert value["url"] == "/other"
        assert (await query.trigger())["url"] == "/search"
        query.destroy()

    @pytest.mark.asyncio
    async def test_trigger_raises_on_error(self):
        transport = FakeTransport(lambda request: ServiceError("down"))
        query = ManualQueryResource(lambda: RequestDescriptor(url="/search"), transport)

        with pytest.raises(ServiceError):
            await query.trigger()
        query.destroy()

    @pytest.mark.asyncio
    async def test_trigger_reports_open_circuit(self):
        transport = FakeTransport(lambda request: ServiceError("down"))
        query = ManualQueryResource(
            lambda: RequestDescriptor(url="/search"),
            transport,
            circuit_breaker=CircuitBreakerConfig(threshold=1, timeout=timedelta(seconds=60)),
        )

        with pytest.raises(CircuitOpenError) as tripped:
            await query.trigger()
        assert tripped.value.reset_after_seconds > 0

        with pytest.raises(CircuitOpenError):
            await query.trigger()
        assert len(transport.calls) == 1
        query.destroy()
