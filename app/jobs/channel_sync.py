from __future__ import annotations

import logging
from datetime import UTC, datetime

from app.circuit_breaker import CircuitBreakerError
from app.connections import TenantConnectionManager, TenantHandle
from app.events import EventPublisher
from app.schemas import ChannelSyncEvent, ChannelSyncPayload
from app.tenant_models import Channel
from app.whatsapp_client import EvolutionClient
from app.worker_runtime import JobContext

logger = logging.getLogger(__name__)

INSTANCE_STATE_TO_STATUS = {
    "open": "connected",
    "close": "disconnected",
    "connecting": "pending",
}


class ChannelSyncJob:
    def __init__(
        self,
        connections: TenantConnectionManager,
        evolution: EvolutionClient,
        publisher: EventPublisher,
    ) -> None:
        self.connections = connections
        self.evolution = evolution
        self.publisher = publisher

    async def __call__(self, job: JobContext) -> dict:
        payload: ChannelSyncPayload = job.payload
        handle = await self.connections.get(payload.organization_id)

        instance_name = await self._mark(handle, payload.channel_id, sync_status="syncing", sync_error=None)
        if instance_name is None:
            logger.warning(
                "channel sync skipped organization_id=%s channel_id=%s reason=channel_not_found",
                payload.organization_id,
                payload.channel_id,
            )
            return {"channelId": payload.channel_id, "skipped": True}
        await self._publish(payload, "channel:sync:start", {"attempt": job.attempt})

        try:
            state = await self.evolution.connection_state(instance_name)
        except Exception as exc:
            message = "WhatsApp gateway unavailable" if isinstance(exc, CircuitBreakerError) else str(exc)
            await self._mark(handle, payload.channel_id, sync_status="failed", sync_error=message[:500])
            await self._publish(payload, "channel:sync:error", {"error": message, "attempt": job.attempt})
            raise

        status = INSTANCE_STATE_TO_STATUS.get(state, "disconnected")
        await self._mark(
            handle,
            payload.channel_id,
            sync_status="completed",
            sync_error=None,
            status=status,
            last_sync_at=datetime.now(UTC),
        )
        await self._publish(payload, "channel:sync:complete", {"status": status, "instanceState": state})
        logger.info(
            "channel sync completed organization_id=%s channel_id=%s state=%s status=%s",
            payload.organization_id,
            payload.channel_id,
            state,
            status,
        )
        return {"channelId": payload.channel_id, "status": status}

    async def _mark(self, handle: TenantHandle, channel_id: str, **values) -> str | None:
        async with handle.session() as session:
            channel = await session.get(Channel, channel_id)
            if channel is None:
                return None
            for field, value in values.items():
                setattr(channel, field, value)
            await session.commit()
            return channel.evolution_instance_name

    async def _publish(self, payload: ChannelSyncPayload, event_type: str, data: dict) -> None:
        await self.publisher.publish(
            ChannelSyncEvent(
                type=event_type,
                organization_id=payload.organization_id,
                channel_id=payload.channel_id,
                data=data,
            )
        )
