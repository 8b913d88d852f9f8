import json
from unittest.mock import MagicMock

import redis

from triage import cache


def test_cache_key_ignores_non_plain_arguments():
    assert cache.cache_key(object(), 3) == cache.cache_key(object(), 3)
    assert cache.cache_key(object(), 3) != cache.cache_key(object(), 4)


def test_cached_returns_stored_value_without_calling(mocker):
    fake = MagicMock()
    fake.get.return_value = json.dumps([{"id": 1}])
    mocker.patch.object(cache, "redis_client", fake)
    inner = MagicMock(return_value=[{"id": 2}])

    wrapped = cache.cached(expire=60, key_prefix="t")(inner)

    assert wrapped(5) == [{"id": 1}]
    inner.assert_not_called()


def test_redis_outage_falls_through(mocker):
    fake = MagicMock()
    fake.get.side_effect = redis.ConnectionError("down")
    fake.setex.side_effect = redis.ConnectionError("down")
    mocker.patch.object(cache, "redis_client", fake)

    wrapped = cache.cached(expire=60, key_prefix="t")(lambda limit: {"limit": limit})

    assert wrapped(2) == {"limit": 2}


def test_invalidate_deletes_prefixed_keys(mocker):
    fake = MagicMock()
    fake.scan_iter.return_value = ["summaries:a", "summaries:b"]
    fake.delete.return_value = 1
    mocker.patch.object(cache, "redis_client", fake)

    assert cache.invalidate("summaries") == 2
    fake.scan_iter.assert_called_once_with(match="summaries:*")
