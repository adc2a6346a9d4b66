"""Tests for the shared Redis pool used by the durable job store."""

from unittest.mock import patch

import pytest
from fakeredis import FakeAsyncRedis

import shopbuilder.db as db
from shopbuilder.db import close_redis, get_redis_or_none, init_redis

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
async def reset_pool():
    await close_redis()
    yield
    await close_redis()


async def test_unconfigured_redis_leaves_durable_store_disabled():
    assert await init_redis("") is False
    assert get_redis_or_none() is None


async def test_reachable_redis_is_shared():
    client = FakeAsyncRedis(decode_responses=True)
    with patch("shopbuilder.db.redis.redis.from_url", return_value=client) as from_url:
        assert await init_redis("redis://localhost:6379/0") is True
        assert await init_redis("redis://localhost:6379/0") is True

    from_url.assert_called_once()
    assert get_redis_or_none() is client


async def test_close_redis_disables_durable_store():
    with patch("shopbuilder.db.redis.redis.from_url", return_value=FakeAsyncRedis(decode_responses=True)):
        await init_redis("redis://localhost:6379/0")

    await close_redis()

    assert get_redis_or_none() is None


def test_package_exports_only_the_optional_accessor():
    assert sorted(db.__all__) == ["close_redis", "get_redis_or_none", "init_redis"]
    assert not hasattr(db, "get_redis")
