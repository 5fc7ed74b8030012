"""Tests for the durable tier."""

import pytest
from unittest.mock import AsyncMock, Mock

from tiercache.cache.durable import DurableCache
from tiercache.core.config import DurableCacheConfig
from tiercache.core.errors import ConfigurationError


class TestDurableCacheReads:
    """Read-through behaviour."""

    @pytest.mark.asyncio
    async def test_miss_fetches_and_persists(self, durable_cache, store):
        fetcher = AsyncMock(return_value={"id": "42"})

        assert await durable_cache.get("k", fetcher) == {"id": "42"}
        assert await durable_cache.get("k", fetcher) == {"id": "42"}
        assert fetcher.await_count == 1
        assert "k" in store

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self, durable_cache, clock):
        fetcher = AsyncMock(side_effect=["v1", "v2"])

        assert await durable_cache.get("k", fetcher, ttl=10) == "v1"
        clock.advance(11)
        assert await durable_cache.get("k", fetcher, ttl=10) == "v2"

    @pytest.mark.asyncio
    async def test_invalidate_key_forces_refetch(self, durable_cache):
        fetcher = AsyncMock(side_effect=["v1", "v2"])

        await durable_cache.get("k", fetcher)
        await durable_cache.invalidate_key("k")
        assert await durable_cache.get("k", fetcher) == "v2"

    @pytest.mark.asyncio
    async def test_invalidate_by_tags_is_idempotent(self, durable_cache, store):
        await durable_cache.get("a", AsyncMock(return_value=1), tags=["group"])
        await durable_cache.get("b", AsyncMock(return_value=2), tags=["other"])

        await durable_cache.invalidate_by_tags(["group"])
        await durable_cache.invalidate_by_tags(["group"])

        assert "a" not in store
        assert "b" in store

    @pytest.mark.asyncio
    async def test_invalidation_failure_propagates(self, durable_config, no_sleep):
        failing_store = Mock()
        failing_store.revalidate_tag = AsyncMock(side_effect=ConnectionError("down"))
        cache = DurableCache(durable_config, store=failing_store, sleep=no_sleep)

        with pytest.raises(ConnectionError):
            await cache.invalidate_by_tags(["tag"])

    @pytest.mark.asyncio
    async def test_failing_tag_does_not_skip_later_tags(self, durable_config, no_sleep):
        partial_store = Mock()
        partial_store.revalidate_tag = AsyncMock(
            side_effect=[ConnectionError("first"), None, TimeoutError("third")]
        )
        cache = DurableCache(durable_config, store=partial_store, sleep=no_sleep)

        with pytest.raises(ConnectionError, match="first"):
            await cache.invalidate_by_tags(["a", "b", "c"])

        assert [c.args[0] for c in partial_store.revalidate_tag.await_args_list] == ["a", "b", "c"]


class TestRetry:
    """Retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, durable_cache, flaky_fetcher, no_sleep):
        fetcher = flaky_fetcher(failures=2)

        assert await durable_cache.get("k", fetcher) == "fresh"
        assert fetcher.calls == 3
        assert [call.args[0] for call in no_sleep.await_args_list] == pytest.approx([0.01, 0.02])

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self, durable_cache, flaky_fetcher):
        fetcher = flaky_fetcher(failures=10)

        with pytest.raises(ConnectionError, match="transient failure 4"):
            await durable_cache.get("k", fetcher)
        assert fetcher.calls == 4

    @pytest.mark.asyncio
    async def test_retries_are_counted_in_metrics(self, durable_cache, flaky_fetcher, metrics):
        await durable_cache.get("k", flaky_fetcher(failures=2))
        assert metrics.get_sample_value("tiercache_retries_total") == 2.0

    @pytest.mark.asyncio
    async def test_zero_retries_tries_once(self, store, no_sleep, flaky_fetcher):
        cache = DurableCache(DurableCacheConfig(max_retries=0), store=store, sleep=no_sleep)
        fetcher = flaky_fetcher(failures=1)

        with pytest.raises(ConnectionError):
            await cache.get("k", fetcher)
        assert fetcher.calls == 1
        no_sleep.assert_not_awaited()


class TestFallback:
    """Fallback after retry exhaustion."""

    @pytest.mark.asyncio
    async def test_fallback_result_returned(self, durable_cache, flaky_fetcher, store):
        fallback = AsyncMock(return_value="stale")

        result = await durable_cache.get("k", flaky_fetcher(failures=10), fallback=fallback)

        assert result == "stale"
        fallback.assert_awaited_once()
        assert "k" not in store

    @pytest.mark.asyncio
    async def test_fallback_counts_as_success(self, durable_cache, flaky_fetcher):
        await durable_cache.get("k", flaky_fetcher(failures=10), fallback=AsyncMock(return_value="x"))

        health = durable_cache.get_health_metrics()
        assert health.total_requests == 1
        assert health.failed_requests == 1
        assert health.successful_requests == 1

    @pytest.mark.asyncio
    async def test_failing_fallback_raises_primary_error(self, durable_cache, flaky_fetcher):
        fallback = AsyncMock(side_effect=ValueError("fallback broke"))

        with pytest.raises(ConnectionError):
            await durable_cache.get("k", flaky_fetcher(failures=10), fallback=fallback)


class TestHealthMonitoring:
    """Health metrics and alert callbacks."""

    @pytest.mark.asyncio
    async def test_metrics_after_success(self, durable_cache):
        await durable_cache.get("k", AsyncMock(return_value=1))

        health = durable_cache.get_health_metrics()
        assert health.total_requests == 1
        assert health.successful_requests == 1
        assert health.failure_rate == 0.0
        assert health.is_healthy is True

    @pytest.mark.asyncio
    async def test_alert_fires_when_unhealthy(self, durable_cache, flaky_fetcher):
        alert = Mock()
        durable_cache.on_health_alert(alert)

        with pytest.raises(ConnectionError):
            await durable_cache.get("k", flaky_fetcher(failures=10))

        alert.assert_called_once()
        reported = alert.call_args.args[0]
        assert reported.is_healthy is False
        assert reported.failure_rate == 1.0

    @pytest.mark.asyncio
    async def test_alert_callback_errors_are_swallowed(self, durable_cache, flaky_fetcher):
        durable_cache.on_health_alert(Mock(side_effect=RuntimeError("pager down")))

        with pytest.raises(ConnectionError):
            await durable_cache.get("k", flaky_fetcher(failures=10))

    @pytest.mark.asyncio
    async def test_removed_alert_not_called(self, durable_cache, flaky_fetcher):
        alert = Mock()
        durable_cache.on_health_alert(alert)
        durable_cache.remove_health_alert(alert)

        with pytest.raises(ConnectionError):
            await durable_cache.get("k", flaky_fetcher(failures=10))
        alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_monitoring_disabled_never_alerts(self, store, no_sleep, flaky_fetcher):
        cache = DurableCache(
            DurableCacheConfig(enable_health_monitoring=False, retry_delay=0),
            store=store,
            sleep=no_sleep,
        )
        alert = Mock()
        cache.on_health_alert(alert)

        with pytest.raises(ConnectionError):
            await cache.get("k", flaky_fetcher(failures=10))
        alert.assert_not_called()
        assert cache.get_health_metrics().is_healthy is False

    @pytest.mark.asyncio
    async def test_reset_health_metrics(self, durable_cache, flaky_fetcher):
        with pytest.raises(ConnectionError):
            await durable_cache.get("k", flaky_fetcher(failures=10))

        durable_cache.reset_health_metrics()
        health = durable_cache.get_health_metrics()
        assert health.total_requests == 0
        assert health.is_healthy is True


class TestWarmAndDecorator:
    """Warm-up and the ``cached`` decorator."""

    @pytest.mark.asyncio
    async def test_warm_cache_never_raises(self, durable_cache, store, flaky_fetcher):
        await durable_cache.warm_cache([
            {"key": "good", "fetcher": AsyncMock(return_value=1), "tags": ["w"]},
            {"key": "bad", "fetcher": flaky_fetcher(failures=10)},
        ])

        assert "good" in store
        assert "bad" not in store

    @pytest.mark.asyncio
    async def test_cached_decorator(self, durable_cache):
        calls = []

        @durable_cache.cached(lambda property_id: f"property:{property_id}", tags=["properties"])
        async def load_property(property_id):
            calls.append(property_id)
            return {"id": property_id}

        assert await load_property("7") == {"id": "7"}
        assert await load_property("7") == {"id": "7"}
        assert calls == ["7"]

        await durable_cache.invalidate_by_tags(["properties"])
        await load_property("7")
        assert calls == ["7", "7"]

    @pytest.mark.asyncio
    async def test_cached_decorator_fallback(self, durable_cache):
        @durable_cache.cached(
            lambda name: f"user:{name}",
            fallback=AsyncMock(return_value={"name": "guest"}),
        )
        async def load_user(name):
            raise ConnectionError("down")

        assert await load_user("ana") == {"name": "guest"}


class TestDurableCacheConfig:

    def test_alert_threshold_bounds(self):
        with pytest.raises(ConfigurationError):
            DurableCacheConfig(alert_threshold=0)
        with pytest.raises(ConfigurationError):
            DurableCacheConfig(alert_threshold=1.5)

    def test_negative_retries_rejected(self):
        with pytest.raises(ConfigurationError):
            DurableCacheConfig(max_retries=-1)
