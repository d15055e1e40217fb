"""Redis Streams bus: outbound channel to the chat transport.

The dispatcher hands every "processed" result to its injected sinks; the
sink built by ``make_processed_sink()`` publishes it here so the transport
layer can decide whether to push an auto-reply.  Storage alerts can be
mirrored the same way with ``make_alert_sink()``.

Messages are added via XADD with an auto-generated stream ID (*).  If Redis
is unreachable, publishes are dropped with a warning (fail-open): the
conversation never fails because the bus is down.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from typing import Any, Callable

import redis

from shopdesk.alerts import Alert

logger = logging.getLogger(__name__)

_REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6381/0")

# ---------------------------------------------------------------------------
# Stream names
# ---------------------------------------------------------------------------

STREAM_DISPATCH_PROCESSED = "shopdesk:dispatch:processed"
STREAM_STORAGE_ALERTS = "shopdesk:storage:alerts"

ALL_STREAMS = [
    STREAM_DISPATCH_PROCESSED,
    STREAM_STORAGE_ALERTS,
]

_TRIM_POLICIES: dict[str, int] = {
    STREAM_DISPATCH_PROCESSED: 5000,
    STREAM_STORAGE_ALERTS: 1000,
}

# Consumer group used by the chat transport
CONSUMER_GROUP = "shopdesk-transport"

_redis_client: redis.Redis | None = None


def _get_redis() -> redis.Redis:
    """Get or create the singleton Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(_REDIS_URL, decode_responses=True)
    return _redis_client


def configure(url: str) -> None:
    """Point the bus at ``url``; the client is rebuilt on next use."""
    global _REDIS_URL, _redis_client
    _REDIS_URL = url
    _redis_client = None


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

def publish(
    stream: str,
    msg_type: str,
    payload: dict[str, Any],
    *,
    source: str = "",
    msg_id: str | None = None,
) -> str | None:
    """Publish a message to a Redis Stream.

    Fire-and-forget: never raises. Returns the stream entry ID or None.
    """
    if msg_id is None:
        msg_id = uuid.uuid4().hex[:16]

    entry = {
        "msg_id": msg_id,
        "msg_type": msg_type,
        "source": source,
        "ts": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
        "payload": json.dumps(payload, default=str, ensure_ascii=False),
    }

    maxlen = _TRIM_POLICIES.get(stream, 5000)

    try:
        r = _get_redis()
        return r.xadd(stream, entry, maxlen=maxlen, approximate=True)
    except Exception:
        logger.warning(
            "Bus publish failed: stream=%s type=%s", stream, msg_type,
            exc_info=True,
        )
        return None


def make_processed_sink(stream: str = STREAM_DISPATCH_PROCESSED) -> Callable[[dict[str, Any]], None]:
    """Build a dispatcher sink that publishes ``business.processed`` events."""

    def _sink(event: dict[str, Any]) -> None:
        publish(stream, "business.processed", event, source="dispatcher")

    return _sink


def make_alert_sink(stream: str = STREAM_STORAGE_ALERTS) -> Callable[[Alert], None]:
    """Build an AlertLog sink that mirrors alerts onto the bus."""

    def _sink(alert: Alert) -> None:
        publish(stream, f"alert.{alert.level.value}", alert.to_dict(), source=alert.source)

    return _sink


# ---------------------------------------------------------------------------
# Consumer groups
# ---------------------------------------------------------------------------

def ensure_consumer_groups() -> None:
    """Create the transport consumer group on every stream (idempotent)."""
    r = _get_redis()
    for stream in ALL_STREAMS:
        try:
            r.xgroup_create(stream, CONSUMER_GROUP, id="0", mkstream=True)
            logger.info("Consumer group '%s' created on %s", CONSUMER_GROUP, stream)
        except redis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                logger.warning("Failed to create consumer group on %s: %s", stream, exc)
        except redis.ConnectionError:
            logger.warning("Redis unreachable, consumer groups not created")
            return

