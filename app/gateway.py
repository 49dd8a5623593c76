from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import defaultdict

import redis.asyncio as redis
from fastapi import WebSocket

from app.config import Settings
from app.routing import agent_room, org_room
from app.schemas import CHANNEL_SYNC, CHAT_EVENTS, MESSAGE_EVENTS, TENANT_PROVISIONING, TYPING_EVENTS

logger = logging.getLogger(__name__)

SUBSCRIBED_TOPICS = (CHAT_EVENTS, MESSAGE_EVENTS, TYPING_EVENTS, CHANNEL_SYNC, TENANT_PROVISIONING)


class RealtimeGateway:
    """Holds websocket rooms and re-emits bus events into them.

    Events naming a ``targetAgentId`` go to that agent's private room only; everything else is
    broadcast to the organization room.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self._redis: redis.Redis | None = None
        self._consume_task: asyncio.Task | None = None

    async def start(self) -> None:
        self._consume_task = asyncio.create_task(self._consume_supervisor())

    async def stop(self) -> None:
        if self._consume_task:
            self._consume_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consume_task
        await self._disconnect_redis()

    def join(self, room: str, websocket: WebSocket) -> None:
        self._rooms[room].add(websocket)

    def leave(self, room: str, websocket: WebSocket) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            self._rooms.pop(room, None)

    def leave_all(self, websocket: WebSocket) -> None:
        for room in list(self._rooms.keys()):
            self.leave(room, websocket)

    def rooms_of(self, websocket: WebSocket) -> set[str]:
        return {room for room, members in self._rooms.items() if websocket in members}

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def emit_to_room(self, room: str, event: str, data: dict) -> int:
        message = {"event": event, "data": data}
        delivered = 0
        stale: list[WebSocket] = []
        for ws in list(self._rooms.get(room, ())):
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception:  # noqa: BLE001
                stale.append(ws)
        for ws in stale:
            self.leave_all(ws)
        return delivered

    async def dispatch(self, topic: str, raw: str) -> int:
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("gateway dropped malformed event topic=%s", topic)
            return 0
        if not isinstance(event, dict):
            return 0
        organization_id = event.get("organizationId")
        event_type = event.get("type")
        if not organization_id or not event_type:
            logger.warning("gateway dropped event without organization or type topic=%s", topic)
            return 0
        target_agent_id = event.get("targetAgentId")
        room = agent_room(target_agent_id) if target_agent_id else org_room(organization_id)
        return await self.emit_to_room(room, str(event_type), event)

    async def _consume_supervisor(self) -> None:
        backoff = 1.0
        while True:
            try:
                if not await self._connect_redis():
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2.0, 30.0)
                    continue
                await self._consume_once()
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("gateway redis consume loop error err_type=%s err=%s", type(exc).__name__, exc)
                await self._disconnect_redis()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 30.0)

    async def _consume_once(self) -> None:
        if self._redis is None:
            return

        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(*SUBSCRIBED_TOPICS)
            logger.info("gateway redis subscription established topics=%s", ",".join(SUBSCRIBED_TOPICS))
            while True:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not msg:
                    await asyncio.sleep(0.05)
                    continue
                data = msg.get("data")
                if not data:
                    continue
                await self.dispatch(str(msg.get("channel", "")), data)
        finally:
            await pubsub.close()

    async def _connect_redis(self) -> bool:
        if self._redis is not None:
            try:
                await self._redis.ping()
                return True
            except Exception as exc:  # noqa: BLE001
                logger.warning("gateway redis ping failed err_type=%s err=%s", type(exc).__name__, exc)
                await self._disconnect_redis()

        client = redis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception as exc:  # noqa: BLE001
            logger.warning("gateway redis connect failed err_type=%s err=%s", type(exc).__name__, exc)
            await client.close()
            return False
        self._redis = client
        logger.info("gateway redis connected")
        return True

    async def _disconnect_redis(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.close()
        except Exception:  # noqa: BLE001
            pass
        self._redis = None
