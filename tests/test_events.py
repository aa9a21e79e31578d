import importlib
import json
import sys
import types


def _reload_events(monkeypatch, *, url=None, redis_module=None):
    monkeypatch.delenv("REDIS_URL", raising=False)
    if url is not None:
        monkeypatch.setenv("REDIS_URL", url)
    if redis_module is None:
        redis_module = types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=lambda *args, **kwargs: None))
    monkeypatch.setitem(sys.modules, "redis", redis_module)
    monkeypatch.delitem(sys.modules, "src.spin.infrastructure.events", raising=False)
    return importlib.import_module("src.spin.infrastructure.events")


def test_publish_event_without_url_is_a_no_op(monkeypatch):
    module = _reload_events(monkeypatch)
    assert module._get_publisher() is None
    assert module.publish_event("generation.completed", {"conversationId": "c1"}) is False


class FakeRedisClient:
    attempt = 0
    published = []
    publish_should_fail = False

    def ping(self):
        if FakeRedisClient.attempt == 0:
            FakeRedisClient.attempt += 1
            raise Exception("connect failed")

    def publish(self, channel, payload):
        FakeRedisClient.published.append((channel, payload))
        if FakeRedisClient.publish_should_fail:
            FakeRedisClient.publish_should_fail = False
            raise Exception("publish failed")


def test_redis_publisher_recovers_after_connection_failure(monkeypatch):
    FakeRedisClient.attempt = 0
    FakeRedisClient.published = []
    FakeRedisClient.publish_should_fail = False

    def from_url(url, socket_timeout=0.5):
        return FakeRedisClient()

    redis_module = types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=from_url))

    module = _reload_events(monkeypatch, url="redis://localhost", redis_module=redis_module)
    publisher = module._get_publisher()
    assert publisher is not None

    assert module.publish_event("generation.completed", {"conversationId": "c1"}) is True
    assert FakeRedisClient.attempt == 1
    channel, payload = FakeRedisClient.published[-1]
    assert channel == "spin.events.generation.completed"
    assert json.loads(payload) == {"conversationId": "c1"}

    FakeRedisClient.publish_should_fail = True
    assert module.publish_event("generation.completed", {"conversationId": "c2"}) is False
    assert module._get_publisher() is publisher
    assert module.publish_event("generation.completed", {"conversationId": "c3"}) is True
