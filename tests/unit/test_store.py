"""Unit tests for the key-value store adapters."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from agent_pipeline.core.exceptions import StoreUnavailableError
from agent_pipeline.infra.cache.store import InMemoryKeyValueStore, RedisKeyValueStore
from tests.conftest import FakeClock


class TestInMemoryStore:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryKeyValueStore(clock=self.clock)

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        await self.store.set("a", "1")
        assert await self.store.get("a") == "1"
        assert await self.store.delete("a", "missing") == 1
        assert await self.store.get("a") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        await self.store.set("a", "1", ttl_seconds=10)
        self.clock.advance(9)
        assert await self.store.get("a") == "1"
        self.clock.advance(1)
        assert await self.store.get("a") is None

    @pytest.mark.asyncio
    async def test_set_without_ttl_clears_expiry(self):
        await self.store.set("a", "1", ttl_seconds=10)
        await self.store.set("a", "2")
        self.clock.advance(60)
        assert await self.store.get("a") == "2"

    @pytest.mark.asyncio
    async def test_increment_int_and_float(self):
        assert await self.store.increment("c") == 1
        assert await self.store.increment("c", 2) == 3
        assert await self.store.get("c") == "3"
        assert await self.store.increment("c", 0.5) == 3.5
        assert await self.store.get("c") == "3.5"

    @pytest.mark.asyncio
    async def test_increment_with_ttl(self):
        await self.store.increment("c", 1, 10)
        await self.store.increment("c", 1, 10)
        self.clock.advance(9)
        assert await self.store.get("c") == "2"
        self.clock.advance(1)
        assert await self.store.get("c") is None

    @pytest.mark.asyncio
    async def test_keys_matching(self):
        await self.store.set("agent_response:a1:x", "1")
        await self.store.set("agent_response:a2:y", "1")
        await self.store.set("agent_response_stats:hits", "1")
        await self.store.set("agent_response:a1:z", "1", ttl_seconds=1)
        self.clock.advance(2)

        assert await self.store.keys_matching("agent_response:a1:*") == ["agent_response:a1:x"]
        assert len(await self.store.keys_matching("agent_response:*")) == 2

    @pytest.mark.asyncio
    async def test_series(self):
        await self.store.append_to_series("s", 3.0, "c")
        await self.store.append_to_series("s", 1.0, "a")
        await self.store.append_to_series("s", 2.0, "b")

        assert await self.store.query_series("s", 0, 10) == ["a", "b", "c"]
        assert await self.store.query_series("s", 2, 3) == ["b", "c"]
        assert await self.store.prune_series_below("s", 2.0) == 2
        assert await self.store.query_series("s", 0, 10) == ["c"]
        assert await self.store.prune_series_below("missing", 5) == 0


class TestRedisStore:
    def setup_method(self):
        self.client = AsyncMock()
        self.store = RedisKeyValueStore(self.client)

    @pytest.mark.asyncio
    async def test_set_passes_ttl(self):
        await self.store.set("k", "v", 30)
        self.client.set.assert_awaited_once_with("k", "v", ex=30)

    @pytest.mark.asyncio
    async def test_increment_uses_incrbyfloat(self):
        self.client.incrbyfloat.return_value = "2.5"
        assert await self.store.increment("k", 2.5) == 2.5
        self.client.incrbyfloat.assert_awaited_once_with("k", 2.5)
        self.client.expire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_increment_with_ttl_sets_expiry(self):
        self.client.incrbyfloat.return_value = "1"
        assert await self.store.increment("k:hits", 1, 20) == 1.0
        self.client.expire.assert_awaited_once_with("k:hits", 20)

    @pytest.mark.asyncio
    async def test_delete_without_keys_skips_client(self):
        assert await self.store.delete() == 0
        self.client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_series_calls(self):
        self.client.zrangebyscore.return_value = ["m1"]
        self.client.zremrangebyscore.return_value = 4

        await self.store.append_to_series("s", 1.0, "m1")
        assert await self.store.query_series("s", 0, 2) == ["m1"]
        assert await self.store.prune_series_below("s", 0.5) == 4

        self.client.zadd.assert_awaited_once_with("s", {"m1": 1.0})
        self.client.zremrangebyscore.assert_awaited_once_with("s", "-inf", 0.5)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method, args",
        [
            ("get", ("k",)),
            ("set", ("k", "v")),
            ("delete", ("k",)),
            ("increment", ("k",)),
            ("append_to_series", ("s", 1.0, "m")),
            ("query_series", ("s", 0, 1)),
            ("prune_series_below", ("s", 1)),
        ],
    )
    async def test_redis_errors_mapped(self, method, args):
        error = RedisConnectionError("connection refused")
        for name in ("get", "set", "delete", "incrbyfloat", "zadd", "zrangebyscore", "zremrangebyscore"):
            getattr(self.client, name).side_effect = error

        with pytest.raises(StoreUnavailableError) as exc_info:
            await getattr(self.store, method)(*args)
        assert exc_info.value.original_error is error
        assert exc_info.value.status_code == 503
