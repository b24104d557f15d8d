import pytest
from pydantic import ValidationError

from helpers import FakeTransport, settle
from querycache.services.broadcast import BroadcastHub
from querycache.services.client import QueryClient
from querycache.services.fingerprint import RequestDescriptor
from querycache.services.query import QueryCacheOptions
from querycache.settings import Settings


def items() -> RequestDescriptor:
    return RequestDescriptor(url="/items")


def make_settings(**overrides) -> Settings:
    overrides.setdefault("cache_persist", False)
    overrides.setdefault("cache_sync_tabs", False)
    return Settings(**overrides)


class TestSettings:
    def test_env_aliases(self):
        settings = Settings.model_validate(
            {"QUERY_CACHE_MAX_SIZE": "50", "QUERY_BREAKER_THRESHOLD": "2", "QUERY_DEBUG": "true"}
        )

        assert settings.cache_max_size == 50
        assert settings.breaker_threshold == 2
        assert settings.debug is True

    def test_unknown_cleanup_type_rejected(self):
        with pytest.raises(ValidationError):
            Settings.model_validate({"QUERY_CACHE_CLEANUP_TYPE": "lfu"})

        assert Settings(cache_cleanup_type="oldest").cache_cleanup_type == "oldest"

    def test_defaults(self):
        settings = Settings()

        assert settings.cache_ttl_seconds == 86400
        assert settings.cache_stale_time_seconds == 3600
        assert settings.cache_max_size == 1000
        assert settings.breaker_threshold == 5
        assert settings.breaker_timeout_seconds == 30


class TestQueryClient:
    @pytest.mark.asyncio
    async def test_query_uses_shared_cache(self):
        transport = FakeTransport()
        async with QueryClient(settings=make_settings(), transport=transport) as client:
            first = client.query(items)
            await first.settled()
            second = client.query(items)
            await second.settled()

            assert len(transport.calls) == 1
            assert len(client.cache) == 1

    @pytest.mark.asyncio
    async def test_cache_disabled_per_query(self):
        transport = FakeTransport()
        async with QueryClient(settings=make_settings(), transport=transport) as client:
            query = client.query(items, cache=False)
            await query.settled()

            assert len(client.cache) == 0

    @pytest.mark.asyncio
    async def test_named_breakers_are_shared(self):
        async with QueryClient(settings=make_settings(breaker_threshold=3), transport=FakeTransport()) as client:
            a = client.query(items, circuit_breaker="backend")
            b = client.mutation(lambda value: items(), circuit_breaker="backend")

            assert a.breaker is b.breaker
            assert a.breaker is client.breakers.get("backend")
            assert a.breaker.config.threshold == 3

    @pytest.mark.asyncio
    async def test_close_destroys_resources(self):
        client = QueryClient(settings=make_settings(), transport=FakeTransport())
        await client.start()
        query = client.query(items)
        mutation = client.mutation(lambda value: items())
        await query.settled()

        await client.close()

        assert query.destroyed
        assert mutation.destroyed
        assert not client.scheduler.running

    @pytest.mark.asyncio
    async def test_destroyed_resources_are_released(self):
        async with QueryClient(settings=make_settings(), transport=FakeTransport()) as client:
            query = client.query(items)
            mutation = client.mutation(lambda value: items())
            assert client.get_health_status()["resources"] == 2

            query.destroy()
            mutation.destroy()

            assert client.get_health_status()["resources"] == 0

    @pytest.mark.asyncio
    async def test_health_status(self):
        async with QueryClient(settings=make_settings(), transport=FakeTransport()) as client:
            query = client.query(items, circuit_breaker="api")
            await query.settled()

            health = client.get_health_status()

            assert health["online"] is True
            assert health["open_circuits"] == []
            assert health["cache"]["size"] == 1
            assert "api" in health["circuit_breakers"]

    @pytest.mark.asyncio
    async def test_invalidate_and_clear(self):
        async with QueryClient(settings=make_settings(), transport=FakeTransport()) as client:
            await client.query(items).settled()
            await client.query(lambda: RequestDescriptor(url="/other")).settled()

            client.invalidate(items())
            assert len(client.cache) == 1

            assert client.clear_cache() == 1
            assert len(client.cache) == 0

    @pytest.mark.asyncio
    async def test_manual_query(self):
        transport = FakeTransport()
        async with QueryClient(settings=make_settings(), transport=transport) as client:
            search = client.manual_query(items)
            await settle()
            assert transport.calls == []

            await search.trigger()
            assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_persisted_entries_restored_on_start(self, tmp_path):
        settings = make_settings(
            cache_persist=True,
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'client.db'}",
        )

        async with QueryClient(settings=settings, transport=FakeTransport()) as client:
            await client.query(items, cache=QueryCacheOptions(persist=True)).settled()

        transport = FakeTransport()
        async with QueryClient(settings=settings, transport=transport) as client:
            assert len(client.cache) == 1
            query = client.query(items)
            assert (await query.settled())["url"] == "/items"
            assert transport.calls == []

    @pytest.mark.asyncio
    async def test_sync_between_clients(self):
        hub = BroadcastHub()
        settings = make_settings(cache_sync_tabs=True)
        transport = FakeTransport()

        async with QueryClient(settings=settings, transport=transport, hub=hub) as a:
            async with QueryClient(settings=settings, transport=transport, hub=hub) as b:
                await a.query(items).settled()
                await settle()

                query = b.query(items)
                await query.settled()

                assert len(transport.calls) == 1
                assert query.value.get()["url"] == "/items"
