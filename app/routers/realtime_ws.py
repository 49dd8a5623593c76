from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from jose import JWTError

from app.deps import Principal, principal_from_claims
from app.errors import TenantError
from app.gateway import RealtimeGateway
from app.routing import SignalRouter, agent_room, org_room
from app.security import decode_access_token


router = APIRouter(prefix="/v1/realtime", tags=["realtime"])
logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 45
SIGNAL_EVENTS = {"typing:start", "typing:stop", "recording:start", "recording:stop"}


class RealtimeSession:
    """State of one authenticated socket: the organizations it joined and the agent it acts as in each."""

    def __init__(
        self, websocket: WebSocket, principal: Principal, gateway: RealtimeGateway, signals: SignalRouter
    ) -> None:
        self.websocket = websocket
        self.principal = principal
        self.gateway = gateway
        self.signals = signals
        self.joined: dict[str, str | None] = {}

    async def send(self, event: str, data: dict) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def error(self, code: str, message: str) -> None:
        await self.send("error", {"error": code, "message": message})

    async def handle(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.error("invalid_message", "Messages must be JSON objects")
            return
        if not isinstance(message, dict):
            await self.error("invalid_message", "Messages must be JSON objects")
            return
        event = str(message.get("event") or "")
        data = message.get("data") if isinstance(message.get("data"), dict) else {}

        if event == "join:organization":
            await self.join(str(data.get("organizationId") or ""))
        elif event == "leave:organization":
            await self.leave(str(data.get("organizationId") or ""))
        elif event in SIGNAL_EVENTS:
            await self.relay(event, data)
        else:
            await self.error("unknown_event", f"Unsupported event {event!r}")

    async def join(self, organization_id: str) -> None:
        if not organization_id or not self.principal.can_access(organization_id):
            await self.error("organization_forbidden", "Organization not accessible")
            return
        try:
            agent_id = await self.signals.find_agent_id(organization_id, self.principal.user_id)
        except TenantError as exc:
            # The org room still works without the private agent room.
            logger.warning(
                "realtime agent lookup failed organization_id=%s user_id=%s err_type=%s err=%s",
                organization_id,
                self.principal.user_id,
                type(exc).__name__,
                exc,
            )
            agent_id = None
        self.gateway.join(org_room(organization_id), self.websocket)
        if agent_id:
            self.gateway.join(agent_room(agent_id), self.websocket)
        self.joined[organization_id] = agent_id
        await self.send("joined", {"organizationId": organization_id, "agentId": agent_id})

    async def leave(self, organization_id: str) -> None:
        if organization_id not in self.joined:
            return
        agent_id = self.joined.pop(organization_id)
        self.gateway.leave(org_room(organization_id), self.websocket)
        if agent_id and agent_id not in self.joined.values():
            self.gateway.leave(agent_room(agent_id), self.websocket)
        await self.send("left", {"organizationId": organization_id})

    async def relay(self, event: str, data: dict) -> None:
        chat_id = data.get("chatId")
        organization_id = data.get("organizationId")
        if organization_id is None and len(self.joined) == 1:
            organization_id = next(iter(self.joined))
        if not chat_id or organization_id not in self.joined:
            # Signals are ephemeral; malformed ones are dropped without a reply.
            return
        signal, action = event.split(":", 1)
        await self.signals.relay_signal(
            organization_id,
            self.principal.user_id,
            str(chat_id),
            signal,
            action,
            agent_name=data.get("agentName"),
        )


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket) -> None:
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=1008)
        return
    try:
        claims = decode_access_token(token)
    except JWTError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    gateway: RealtimeGateway = websocket.app.state.gateway
    session = RealtimeSession(websocket, principal_from_claims(claims), gateway, websocket.app.state.signals)
    await session.send("ready", {"userId": session.principal.user_id})
    try:
        while True:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                await session.send("keepalive", {})
                continue
            await session.handle(raw)
    except WebSocketDisconnect:
        pass
    finally:
        gateway.leave_all(websocket)
        logger.debug("realtime socket closed user_id=%s rooms=%s", session.principal.user_id, len(session.joined))
