from __future__ import annotations

import json
import logging
from time import monotonic
from urllib.parse import urlsplit, urlunsplit

import redis.asyncio as redis

from app.config import Settings
from app.schemas import DomainEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes domain events as JSON onto their pub/sub topic.

    Publishing is best effort: a failed publish reconnects and retries once, then reports False.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._redis: redis.Redis | None = None
        self._next_connect_attempt_at = 0.0
        self._connect_backoff_seconds = 2.0

    async def start(self) -> None:
        await self._ensure_redis(force=True)

    async def stop(self) -> None:
        await self._disconnect()

    async def is_healthy(self) -> bool:
        if not await self._ensure_redis():
            return False
        try:
            assert self._redis is not None
            await self._redis.ping()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("event publisher health check failed err_type=%s err=%s", type(exc).__name__, exc)
            await self._disconnect()
            return False

    async def publish(self, event: DomainEvent) -> bool:
        topic = event.topic
        body = json.dumps(event.to_wire())
        for attempt in (1, 2):
            if not await self._ensure_redis(force=True):
                logger.warning(
                    "event publisher redis unavailable topic=%s event_type=%s organization_id=%s",
                    topic,
                    event.type,
                    event.organization_id,
                )
                return False
            try:
                assert self._redis is not None
                await self._redis.publish(topic, body)
                return True
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "event publisher publish failed topic=%s event_type=%s attempt=%s err_type=%s err=%s",
                    topic,
                    event.type,
                    attempt,
                    type(exc).__name__,
                    exc,
                )
                await self._disconnect()
        return False

    async def _ensure_redis(self, *, force: bool = False) -> bool:
        if self._redis is not None:
            return True
        now = monotonic()
        if not force and now < self._next_connect_attempt_at:
            return False
        if await self._connect():
            self._next_connect_attempt_at = 0.0
            return True
        self._next_connect_attempt_at = monotonic() + self._connect_backoff_seconds
        return False

    async def _connect(self) -> bool:
        client = redis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "event publisher redis connect failed url=%s err_type=%s err=%s",
                redact_redis_url(self.settings.redis_url),
                type(exc).__name__,
                exc,
            )
            try:
                await client.close()
            except Exception:  # noqa: BLE001
                pass
            return False
        self._redis = client
        logger.info("event publisher connected to redis")
        return True

    async def _disconnect(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.close()
        except Exception:  # noqa: BLE001
            pass
        self._redis = None


def redact_redis_url(raw: str) -> str:
    if not raw:
        return "<empty>"
    try:
        parsed = urlsplit(raw)
        host = parsed.hostname or ""
        port = f":{parsed.port}" if parsed.port else ""
        auth = ""
        if parsed.username is not None:
            auth = f"{parsed.username}:***@"
        elif parsed.password:
            auth = ":***@"
        return urlunsplit((parsed.scheme, f"{auth}{host}{port}", parsed.path, parsed.query, parsed.fragment))
    except ValueError:
        return "<invalid>"
