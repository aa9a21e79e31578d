from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import redis


LOG = logging.getLogger("spin.events")


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            LOG.warning("event_publisher_unavailable", extra={"err": str(exc)})
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> bool:
        if not self._client:
            self._connect()
        if not self._client:
            return False
        try:
            self._client.publish(channel, json.dumps(payload))
        except Exception as exc:
            LOG.warning("event_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None
            return False
        return True


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> bool:
    """Best-effort fan-out of a domain event; a no-op unless REDIS_URL is set."""
    publisher = _get_publisher()
    if not publisher:
        return False
    return publisher.publish(f"spin.events.{event_type}", payload)
