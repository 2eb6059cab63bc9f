from unittest.mock import AsyncMock, MagicMock

import pytest

from hikariauth.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unit-test/0"
    cache.prefix = "hikari:"
    cache.client = AsyncMock()
    cache.client.connection_pool = MagicMock()
    cache.client.connection_pool.disconnect = AsyncMock()
    cache._increment = AsyncMock(return_value=3)
    return cache


async def test_set_with_expiry_prefixes_and_sets_ttl(cache):
    await cache.set_with_expiry("session:u1", "{}", 604800)
    cache.client.set.assert_awaited_once_with("hikari:session:u1", "{}", ex=604800)


async def test_ttl_is_never_zero(cache):
    await cache.set_with_expiry("k", "v", 0)
    cache.client.set.assert_awaited_once_with("hikari:k", "v", ex=1)


async def test_get_and_delete(cache):
    cache.client.get.return_value = "value"
    cache.client.delete.return_value = 0

    assert await cache.get("verification:abc") == "value"
    assert await cache.delete("verification:abc") is False
    cache.client.get.assert_awaited_once_with("hikari:verification:abc")


async def test_increment_runs_atomic_script(cache):
    assert await cache.increment("ratelimit:signup:1.2.3.4", 3600) == 3
    cache._increment.assert_awaited_once_with(
        keys=["hikari:ratelimit:signup:1.2.3.4"], args=[3600]
    )


async def test_expire_and_ttl(cache):
    cache.client.expire.return_value = 1
    cache.client.ttl.return_value = -2

    assert await cache.expire("session:u1", 60) is True
    assert await cache.ttl("session:u1") == -2
    cache.client.expire.assert_awaited_once_with("hikari:session:u1", 60)


async def test_close_releases_pool(cache):
    await cache.close()
    cache.client.aclose.assert_awaited_once()
    cache.client.connection_pool.disconnect.assert_awaited_once()


def test_increment_script_sets_ttl_on_first_hit():
    script = RedisCache._INCREMENT_SCRIPT
    assert "INCR" in script
    assert "if count == 1 then" in script
    assert "EXPIRE" in script
