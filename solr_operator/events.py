"""
Reconcile event publication to Redis Streams for dashboards.

Optional: with no REDIS_URL, or an unreachable Redis, publishing is a no-op.
"""

import json as _json
import logging
from datetime import datetime, timezone

import redis

from solr_operator.config import settings

logger = logging.getLogger("solr-operator.events")

STREAM_MAXLEN = 100

_redis_client = None


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _get_redis():
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        _redis_client.ping()
        logger.info(f"Redis connected: {settings.REDIS_URL}")
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        _redis_client = None
        return None


def publish_event(namespace: str, name: str, event_type: str, message: str):
    """Publish event to a per-cloud Redis Stream and the global channel."""
    r = _get_redis()
    if not r:
        return
    payload = {
        "type": event_type,
        "message": message,
        "timestamp": _now(),
        "cloud": f"{namespace}/{name}",
    }
    try:
        r.xadd(f"solrcloud:events:{namespace}/{name}", payload, maxlen=STREAM_MAXLEN)
        r.publish("solrcloud:events", _json.dumps(payload))
    except redis.RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


def clear_events(namespace: str, name: str):
    r = _get_redis()
    if not r:
        return
    try:
        r.delete(f"solrcloud:events:{namespace}/{name}")
    except redis.RedisError as e:
        logger.debug(f"Redis cleanup failed (non-fatal): {e}")
