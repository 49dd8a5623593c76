from __future__ import annotations

import logging
from dataclasses import dataclass

from app.activity import ActivityLogger
from app.catalog import CatalogStore
from app.circuit_breaker import BreakerRegistry
from app.config import Settings
from app.connections import TenantConnectionManager
from app.crypto import SecretCipher
from app.events import EventPublisher
from app.provisioning import ProvisioningPipeline
from app.queue import JobQueue
from app.whatsapp_client import WHATSAPP_GATEWAY, EvolutionClient

logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    """Process-wide singletons shared by the API and the workers."""

    settings: Settings
    catalog: CatalogStore
    cipher: SecretCipher
    activity: ActivityLogger
    connections: TenantConnectionManager
    breakers: BreakerRegistry
    evolution: EvolutionClient
    publisher: EventPublisher
    pipeline: ProvisioningPipeline
    queue: JobQueue

    @classmethod
    async def create(cls, settings: Settings) -> CoreServices:
        catalog = CatalogStore.from_settings(settings)
        if settings.catalog_auto_create_schema:
            # Test/local fallback only. Production/staging should run Alembic migrations.
            await catalog.create_schema()
        cipher = SecretCipher(settings)
        activity = ActivityLogger(catalog)
        connections = TenantConnectionManager(catalog, cipher, settings)
        breakers = BreakerRegistry(settings)
        publisher = EventPublisher(settings)
        await publisher.start()
        services = cls(
            settings=settings,
            catalog=catalog,
            cipher=cipher,
            activity=activity,
            connections=connections,
            breakers=breakers,
            evolution=EvolutionClient(settings, breakers.get(WHATSAPP_GATEWAY)),
            publisher=publisher,
            pipeline=ProvisioningPipeline(catalog, activity, cipher, settings, connections=connections),
            queue=JobQueue(settings),
        )
        logger.info("core services started")
        return services

    async def close(self) -> None:
        await self.queue.close()
        await self.publisher.stop()
        await self.connections.close_all()
        await self.catalog.close()
        logger.info("core services stopped")
