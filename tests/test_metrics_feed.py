import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from kinship.progression.errors import UpstreamUnavailable
from kinship.progression.feed import InMemoryChangeFeed, RedisChangeFeed
from kinship.progression.metrics import ActivityMetrics, HttpMetricsSource

SINCE = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _source(handler) -> HttpMetricsSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMetricsSource("http://activity.local/", client=client)


def test_http_source_reads_counters_since_stage_start():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["since"] = request.url.params.get("since")
        return httpx.Response(200, json={"active_days": 5, "video_calls": 2, "unknown_counter": 9})

    metrics = asyncio.run(_source(handler).fetch("rel-1", since=SINCE))
    assert metrics == ActivityMetrics(active_days=5, video_calls=2)
    assert seen["path"] == "/relationships/rel-1/activity"
    assert seen["since"] == SINCE.isoformat()


@pytest.mark.parametrize("response", [
    httpx.Response(503, text="down"),
    httpx.Response(200, text="not json"),
    httpx.Response(200, json=["not", "a", "dict"]),
    httpx.Response(200, json={"active_days": "many"}),
])
def test_http_source_failures_become_upstream_unavailable(response):
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(_source(lambda request: response).fetch("rel-1"))


def test_http_source_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(_source(handler).fetch("rel-1"))


class _RecordingRedis:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish(self, channel, message):
        if self.fail:
            raise RedisConnectionError("redis went away")
        self.published.append((channel, json.loads(message)))
        return 1


def test_redis_feed_publishes_on_relationship_channel():
    redis = _RecordingRedis()

    async def factory():
        return redis

    feed = RedisChangeFeed(redis_factory=factory, prefix="relationship")
    asyncio.run(feed.publish("rel-1", "sign_off"))
    assert redis.published == [
        ("relationship:rel-1:changed", {"relationship_id": "rel-1", "reason": "sign_off"}),
    ]


def test_redis_feed_swallows_publish_failures():
    async def factory():
        return _RecordingRedis(fail=True)

    # the feed is only a trigger; a lost signal must not fail the write
    asyncio.run(RedisChangeFeed(redis_factory=factory).publish("rel-1"))


def test_in_memory_feed_delivers_to_subscribers():
    async def scenario():
        feed = InMemoryChangeFeed()
        updates = feed.subscribe("rel-1")
        first = asyncio.ensure_future(updates.__anext__())
        await asyncio.sleep(0)
        await feed.publish("rel-1", "withdrawal")
        await feed.publish("rel-2", "other")
        assert await asyncio.wait_for(first, timeout=1) == "rel-1"
        await updates.aclose()
        assert feed.published == [("rel-1", "withdrawal"), ("rel-2", "other")]

    asyncio.run(scenario())
