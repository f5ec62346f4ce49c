"""
Status event stream. Publishes status transitions to Redis Streams so that
tailers can follow an App without polling the API server.

Redis is optional: without REDIS_URL (or when it is unreachable) publishing
is a no-op.
"""
import json as _json
import logging
from typing import Optional

from appctrl.config import settings
from appctrl.models import AppStatus, StatusEvent, utcnow
from appctrl.status import status_transitions

logger = logging.getLogger("appctrl.events")

GLOBAL_CHANNEL = "appctrl:events"
# Per-app stream cap
STREAM_MAXLEN = 100

_redis_client = None


def _get_redis():
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        import redis
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        _redis_client.ping()
        logger.info(f"Redis connected: {settings.REDIS_URL}")
        return _redis_client
    except Exception as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        _redis_client = None
        return None


def stream_key(kind: str, namespace: str, name: str) -> str:
    return f"appctrl:events:{kind.lower()}:{namespace}/{name}"


class StatusEventPublisher:
    """Diffs consecutive status snapshots of one resource and publishes the transitions."""

    def __init__(self, kind: str, namespace: str, name: str, redis_client=None):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self._redis = redis_client
        self._last: Optional[AppStatus] = None

    def _client(self):
        return self._redis if self._redis is not None else _get_redis()

    def observe(self, status: AppStatus) -> list[StatusEvent]:
        """Record a new snapshot; returns (and publishes) the transitions since the last one."""
        events = status_transitions(self._last, status)
        self._last = status.model_copy(deep=True)
        for event in events:
            self.publish(event)
        return events

    def publish(self, event: StatusEvent):
        r = self._client()
        if not r:
            return
        payload = {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "message": event.message,
            "block": event.block,
            "error": "true" if event.error else "false",
            "timestamp": (event.at or utcnow()).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        try:
            r.xadd(stream_key(self.kind, self.namespace, self.name), payload, maxlen=STREAM_MAXLEN)
            r.publish(GLOBAL_CHANNEL, _json.dumps(payload))
        except Exception as e:
            logger.debug(f"Redis publish failed (non-fatal): {e}")


def read_events(kind: str, namespace: str, name: str, count: int = 50) -> list[dict]:
    """Most recent published events for one resource, oldest first."""
    r = _get_redis()
    if not r:
        return []
    try:
        entries = r.xrevrange(stream_key(kind, namespace, name), count=count)
    except Exception as e:
        logger.debug(f"Redis stream read failed: {e}")
        return []
    return [data for _, data in reversed(entries)]


def clear_events(kind: str, namespace: str, name: str):
    r = _get_redis()
    if not r:
        return
    try:
        r.delete(stream_key(kind, namespace, name))
    except Exception as e:
        logger.debug(f"Redis stream cleanup failed (non-fatal): {e}")
