from __future__ import annotations

from datetime import UTC, datetime
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CHAT_EVENTS = "chat:events"
MESSAGE_EVENTS = "message:events"
TYPING_EVENTS = "typing:events"
CHANNEL_SYNC = "channel:sync"
TENANT_PROVISIONING = "tenant:provisioning"

SYSTEM_SCOPE = "system"


class WireModel(BaseModel):
    # Payloads cross process boundaries in camelCase.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# Job payloads


class ProvisioningParams(WireModel):
    organization_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    tier: str = "shared"
    owner_user_id: str | None = None
    owner_name: str | None = None


class AttachmentCleanupPayload(WireModel):
    # SYSTEM_SCOPE sweeps every active tenant; anything else names one organization.
    organization_id: str = Field(min_length=1, max_length=64)

    @property
    def is_system(self) -> bool:
        return self.organization_id == SYSTEM_SCOPE


class ChannelSyncPayload(WireModel):
    channel_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1, max_length=64)


class LogoSyncPayload(WireModel):
    organization_id: str = Field(min_length=1, max_length=64)
    logo_url: str | None = None



class TenantMigrationPayload(WireModel):
    # SYSTEM_SCOPE rolls pending migrations out to every active tenant.
    organization_id: str = Field(min_length=1, max_length=64)
    continue_on_error: bool = True
    max_concurrency: int = Field(default=5, ge=1, le=50)

    @property
    def is_system(self) -> bool:
        return self.organization_id == SYSTEM_SCOPE


# Domain events published on the pub/sub bus


class DomainEvent(WireModel):
    topic: ClassVar[str] = CHAT_EVENTS

    type: str
    organization_id: str
    target_agent_id: str | None = None
    data: dict = Field(default_factory=dict)
    created_at: str = Field(default_factory=_now_iso)


class ChatEvent(DomainEvent):
    topic: ClassVar[str] = CHAT_EVENTS

    type: Literal["chat:created", "chat:updated", "chat:deleted", "contact:logo:updated"]
    chat_id: str | None = None


class MessageEvent(DomainEvent):
    topic: ClassVar[str] = MESSAGE_EVENTS

    type: Literal["message:new", "message:updated", "message:deleted"]
    chat_id: str
    message_id: str


class TypingEvent(DomainEvent):
    topic: ClassVar[str] = TYPING_EVENTS

    type: Literal["typing:start", "typing:stop"]
    chat_id: str
    agent_id: str | None = None


class RecordingEvent(DomainEvent):
    topic: ClassVar[str] = TYPING_EVENTS

    type: Literal["recording:start", "recording:stop"]
    chat_id: str
    agent_id: str | None = None


class ChannelSyncEvent(DomainEvent):
    topic: ClassVar[str] = CHANNEL_SYNC

    type: Literal["channel:sync:start", "channel:sync:complete", "channel:sync:error"]
    channel_id: str


class ProvisioningEvent(DomainEvent):
    topic: ClassVar[str] = TENANT_PROVISIONING

    type: Literal["provisioning:progress", "provisioning:complete", "provisioning:error"]
    step: str
    progress: int = Field(ge=0, le=100)
    message: str


# HTTP surface


class EnqueueResponse(BaseModel):
    queue: str
    job_id: str
    accepted: bool


class JobStateOut(BaseModel):
    job_id: str
    state: Literal["waiting", "active", "completed", "failed"]
    attempts: int


class TenantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    slug: str
    name: str
    database_name: str
    database_host_id: str
    status: str
    tier: str
    provisioned_at: datetime | None
    created_at: datetime


class ProvisioningStatusOut(BaseModel):
    organization_id: str
    tenant: TenantOut | None
    job: JobStateOut | None


class TenantStatusUpdate(BaseModel):
    status: Literal["active", "suspended", "error"]


class HealthCheckResult(BaseModel):
    status: Literal["healthy", "unhealthy"]
    can_connect: bool
    database_exists: bool
    schema_version: str | None = None


class MigrationRolloutResult(BaseModel):
    applied: dict[str, list[str]] = Field(default_factory=dict)
    failed: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)
