from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.connections import TenantConnectionManager
from app.errors import TenantError
from app.schemas import RecordingEvent, TypingEvent
from app.tenant_models import Agent, Chat, Contact

logger = logging.getLogger(__name__)

Emit = Callable[[str, str, dict], Awaitable[int]]


@dataclass(frozen=True)
class WhatsappLink:
    pass


@dataclass(frozen=True)
class ManualInternalLink:
    agent_id: str | None


@dataclass(frozen=True)
class CrossOrgLink:
    target_organization_id: str
    target_instance_code: str | None = None


ContactLink = WhatsappLink | ManualInternalLink | CrossOrgLink


def parse_contact_link(metadata: dict | None) -> ContactLink:
    metadata = metadata or {}
    target = metadata.get("targetOrganizationId")
    if target:
        return CrossOrgLink(str(target), metadata.get("targetOrganizationInstanceCode"))
    if metadata.get("source") == "internal" or metadata.get("agentId"):
        agent_id = metadata.get("agentId")
        return ManualInternalLink(str(agent_id) if agent_id else None)
    return WhatsappLink()


@dataclass(frozen=True)
class SignalTarget:
    kind: Literal["whatsapp-broadcast", "cross-org", "intra-org"]
    organization_id: str
    chat_id: str
    agent_id: str | None = None
    target_agent_id: str | None = None

    @property
    def room(self) -> str:
        return agent_room(self.target_agent_id) if self.target_agent_id else org_room(self.organization_id)


@dataclass(frozen=True)
class MirroredChat:
    organization_id: str
    chat_id: str
    contact_id: str


class MirrorResolutionError(RuntimeError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


def org_room(organization_id: str) -> str:
    return f"org:{organization_id}"


def agent_room(agent_id: str) -> str:
    return f"agent:{agent_id}"


class SignalRouter:
    """Finds where a chat's realtime signals belong, translating chat ids across organizations.

    Ephemeral signals (typing, recording) are dropped on any lookup miss. Durable callers use
    ``resolve_durable_target`` and get a ``MirrorResolutionError`` instead.
    """

    def __init__(self, connections: TenantConnectionManager, emit: Emit) -> None:
        self.connections = connections
        self._emit = emit

    async def find_agent_id(self, organization_id: str, user_id: str) -> str | None:
        handle = await self.connections.get(organization_id)
        async with handle.session() as session:
            return await _agent_id_for_user(session, user_id)

    async def relay_signal(
        self,
        organization_id: str,
        user_id: str,
        chat_id: str,
        signal: Literal["typing", "recording"],
        action: Literal["start", "stop"],
        *,
        agent_name: str | None = None,
    ) -> bool:
        event = f"{signal}:{action}"
        try:
            target = await self.resolve_signal_target(organization_id, user_id, chat_id)
        except MirrorResolutionError as exc:
            logger.debug(
                "signal dropped event=%s organization_id=%s chat_id=%s reason=%s",
                event,
                organization_id,
                chat_id,
                exc.reason,
            )
            return False
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "signal dropped event=%s organization_id=%s chat_id=%s err_type=%s err=%s",
                event,
                organization_id,
                chat_id,
                type(exc).__name__,
                exc,
            )
            return False
        if target is None:
            logger.debug("signal dropped event=%s organization_id=%s chat_id=%s reason=no_target", event, organization_id, chat_id)
            return False

        event_model = (TypingEvent if signal == "typing" else RecordingEvent)(
            type=event,
            organization_id=target.organization_id,
            target_agent_id=target.target_agent_id,
            chat_id=target.chat_id,
            agent_id=target.agent_id or user_id,
            data={"agentName": agent_name or "Agent"} if action == "start" else {},
        )
        await self._emit(target.room, event, event_model.to_wire())
        return True

    async def resolve_signal_target(self, organization_id: str, user_id: str, chat_id: str) -> SignalTarget | None:
        handle = await self.connections.get(organization_id)
        async with handle.session() as session:
            chat = await session.get(Chat, chat_id)
            if chat is None:
                return None
            acting_agent_id = await _agent_id_for_user(session, user_id)
            if chat.message_source == "whatsapp":
                return SignalTarget("whatsapp-broadcast", organization_id, chat.id, acting_agent_id)
            contact = await session.get(Contact, chat.contact_id)
            if contact is None:
                return None

        match parse_contact_link(contact.metadata_json):
            case CrossOrgLink(target_organization_id=target_organization_id):
                mirrored = await self.resolve_mirrored_chat(organization_id, target_organization_id)
                return SignalTarget("cross-org", target_organization_id, mirrored.chat_id, acting_agent_id)
            case ManualInternalLink(agent_id=contact_agent_id):
                return _intra_org_target(organization_id, chat, acting_agent_id, contact_agent_id)
            case WhatsappLink():
                return _intra_org_target(organization_id, chat, acting_agent_id, None)

    async def resolve_durable_target(self, organization_id: str, chat_id: str) -> MirroredChat:
        try:
            handle = await self.connections.get(organization_id)
        except TenantError as exc:
            raise MirrorResolutionError("source_tenant_unavailable", str(exc)) from exc
        async with handle.session() as session:
            chat = await session.get(Chat, chat_id)
            if chat is None:
                raise MirrorResolutionError("chat_not_found", f"chat {chat_id} not found in {organization_id}")
            contact = await session.get(Contact, chat.contact_id)
            if contact is None:
                raise MirrorResolutionError("contact_not_found", f"contact {chat.contact_id} not found")

        match parse_contact_link(contact.metadata_json):
            case CrossOrgLink(target_organization_id=target_organization_id):
                return await self.resolve_mirrored_chat(organization_id, target_organization_id)
            case ManualInternalLink() | WhatsappLink():
                raise MirrorResolutionError("not_cross_org", f"chat {chat_id} is not a cross-organization chat")

    async def resolve_mirrored_chat(self, source_organization_id: str, target_organization_id: str) -> MirroredChat:
        try:
            handle = await self.connections.get(target_organization_id)
        except TenantError as exc:
            raise MirrorResolutionError("target_tenant_unavailable", str(exc)) from exc

        async with handle.session() as session:
            contact = await session.scalar(
                select(Contact)
                .where(
                    Contact.metadata_json["targetOrganizationId"].as_string() == source_organization_id,
                    Contact.metadata_json["source"].as_string() == "internal",
                )
                .order_by(Contact.created_at)
                .limit(1)
            )
            if contact is None:
                raise MirrorResolutionError(
                    "mirrored_contact_not_found",
                    f"{target_organization_id} has no contact targeting {source_organization_id}",
                )
            chat = await session.scalar(
                select(Chat)
                .where(
                    Chat.contact_id == contact.id,
                    Chat.message_source == "internal",
                    Chat.status.in_(("open", "pending")),
                )
                .order_by(Chat.created_at.desc())
                .limit(1)
            )
            if chat is None:
                raise MirrorResolutionError(
                    "mirrored_chat_not_open",
                    f"{target_organization_id} has no open chat with {source_organization_id}",
                )
        return MirroredChat(target_organization_id, chat.id, contact.id)


def _intra_org_target(
    organization_id: str, chat: Chat, acting_agent_id: str | None, contact_agent_id: str | None
) -> SignalTarget | None:
    if acting_agent_id is None:
        return None
    # The initiator signals the agent named on the contact; anyone else signals the initiator.
    is_initiator = acting_agent_id == chat.initiator_agent_id
    other_agent_id = contact_agent_id if is_initiator else chat.initiator_agent_id
    if not other_agent_id or other_agent_id == acting_agent_id:
        return None
    return SignalTarget("intra-org", organization_id, chat.id, acting_agent_id, other_agent_id)


async def _agent_id_for_user(session: AsyncSession, user_id: str) -> str | None:
    return await session.scalar(select(Agent.id).where(Agent.user_id == user_id, Agent.is_active.is_(True)))
