from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import in_progress_key_prefix, job_key_prefix, result_key_prefix
from arq.jobs import Job, JobStatus
from pydantic import BaseModel, Field

from app.config import Settings
from app.schemas import (
    AttachmentCleanupPayload,
    ChannelSyncPayload,
    LogoSyncPayload,
    ProvisioningParams,
    TenantMigrationPayload,
    WireModel,
)

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR

# Upper bound on per-job attempts; arq refuses to run a job past its function's max_tries.
MAX_ATTEMPTS = 10

TENANT_PROVISIONING_QUEUE = "tenant-provisioning"
ATTACHMENT_CLEANUP_QUEUE = "attachment-cleanup"
CHANNEL_SYNC_QUEUE = "channel-sync"
LOGO_SYNC_QUEUE = "cross-org-logo-sync"
TENANT_MIGRATION_QUEUE = "tenant-migration"

JobState = Literal["waiting", "active", "completed", "failed"]


@dataclass(frozen=True)
class Retention:
    count: int | None = None
    age_seconds: int | None = None


@dataclass(frozen=True)
class QueuePreset:
    attempts: int
    backoff_seconds: float
    keep_completed: Retention
    keep_failed: Retention

    def result_ttl(self) -> tuple[int, bool]:
        """arq keeps one result TTL per worker: the longest age, or forever when a policy is count-only."""
        ages = [self.keep_completed.age_seconds, self.keep_failed.age_seconds]
        if any(age is None for age in ages):
            return 0, True
        return max(ages), False


QUEUE_PRESETS: dict[str, QueuePreset] = {
    "default": QueuePreset(3, 2.0, Retention(100, DAY), Retention(500)),
    "high-priority": QueuePreset(5, 1.0, Retention(100, HOUR), Retention(200)),
    "media-download": QueuePreset(3, 5.0, Retention(1000, DAY), Retention(age_seconds=7 * DAY)),
    "cleanup": QueuePreset(2, 10.0, Retention(500, 7 * DAY), Retention(age_seconds=30 * DAY)),
    "low-priority": QueuePreset(3, 5.0, Retention(1000, 7 * DAY), Retention(age_seconds=14 * DAY)),
}


@dataclass(frozen=True)
class JobKind:
    queue: str
    preset: str
    payload_model: type[WireModel]
    key: Callable[[WireModel], str]
    timeout_seconds: int = 300

    @property
    def policy(self) -> QueuePreset:
        return QUEUE_PRESETS[self.preset]


JOB_KINDS: dict[str, JobKind] = {
    TENANT_PROVISIONING_QUEUE: JobKind(
        TENANT_PROVISIONING_QUEUE, "default", ProvisioningParams, lambda p: p.organization_id, timeout_seconds=900
    ),
    ATTACHMENT_CLEANUP_QUEUE: JobKind(
        ATTACHMENT_CLEANUP_QUEUE, "cleanup", AttachmentCleanupPayload, lambda p: p.organization_id, timeout_seconds=1800
    ),
    CHANNEL_SYNC_QUEUE: JobKind(CHANNEL_SYNC_QUEUE, "default", ChannelSyncPayload, lambda p: p.channel_id),
    LOGO_SYNC_QUEUE: JobKind(LOGO_SYNC_QUEUE, "low-priority", LogoSyncPayload, lambda p: p.organization_id),
    TENANT_MIGRATION_QUEUE: JobKind(
        TENANT_MIGRATION_QUEUE, "default", TenantMigrationPayload, lambda p: p.organization_id, timeout_seconds=3600
    ),
}


class JobEnvelope(BaseModel):
    payload: dict
    attempts: int = Field(ge=1, le=MAX_ATTEMPTS)
    backoff_seconds: float = Field(ge=0)


@dataclass(frozen=True)
class EnqueueOptions:
    attempts: int | None = None
    backoff_seconds: float | None = None
    defer_seconds: float | None = None


@dataclass(frozen=True)
class EnqueueResult:
    queue: str
    job_id: str
    accepted: bool


@dataclass(frozen=True)
class JobInfo:
    job_id: str
    state: JobState
    attempts: int


def job_id_for(queue_name: str, key: str) -> str:
    # arq job ids are global across queues.
    return f"{queue_name}:{key}"


def backoff_delay(base_seconds: float, attempt: int) -> float:
    return base_seconds * (2 ** (attempt - 1))


def job_kind(queue_name: str) -> JobKind:
    try:
        return JOB_KINDS[queue_name]
    except KeyError:
        raise ValueError(f"unknown queue: {queue_name}") from None


class JobQueue:
    """Producer side of the named queues. The Redis pool is opened on first use."""

    def __init__(self, settings: Settings, *, pool: ArqRedis | None = None) -> None:
        self.settings = settings
        self._pool = pool
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        if self._pool is not None:
            return self._pool
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(RedisSettings.from_dsn(self.settings.redis_url))
        return self._pool

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None

    async def enqueue(
        self,
        queue_name: str,
        payload: WireModel | dict,
        opts: EnqueueOptions | None = None,
    ) -> EnqueueResult:
        kind = job_kind(queue_name)
        opts = opts or EnqueueOptions()
        model = payload if isinstance(payload, kind.payload_model) else kind.payload_model.model_validate(payload)
        envelope = JobEnvelope(
            payload=model.to_wire(),
            attempts=opts.attempts or kind.policy.attempts,
            backoff_seconds=opts.backoff_seconds if opts.backoff_seconds is not None else kind.policy.backoff_seconds,
        )
        job_id = job_id_for(queue_name, kind.key(model))
        pool = await self._get_pool()
        await self._clear_finished(pool, queue_name, job_id)
        job = await pool.enqueue_job(
            queue_name,
            envelope.model_dump(),
            _job_id=job_id,
            _queue_name=queue_name,
            _defer_by=opts.defer_seconds,
        )
        # arq returns None while a job with this id is queued or running.
        accepted = job is not None
        logger.info("job enqueue queue=%s job_id=%s accepted=%s", queue_name, job_id, accepted)
        return EnqueueResult(queue=queue_name, job_id=job_id, accepted=accepted)

    async def _clear_finished(self, pool: ArqRedis, queue_name: str, job_id: str) -> bool:
        """Drop the retained result of a finished run so the key only coalesces in-flight work."""
        if not await pool.exists(result_key_prefix + job_id):
            return False
        if await pool.exists(in_progress_key_prefix + job_id):
            return False
        await pool.delete(result_key_prefix + job_id, job_key_prefix + job_id)
        logger.info("job finished result cleared queue=%s job_id=%s", queue_name, job_id)
        return True

    async def get_job(self, queue_name: str, key: str) -> JobInfo | None:
        job_kind(queue_name)
        job_id = job_id_for(queue_name, key)
        job = Job(job_id, await self._get_pool(), _queue_name=queue_name)
        status = await job.status()
        if status == JobStatus.not_found:
            return None
        info = await job.info()
        attempts = int(getattr(info, "job_try", None) or 0)
        if status in (JobStatus.deferred, JobStatus.queued):
            state: JobState = "waiting"
        elif status == JobStatus.in_progress:
            state = "active"
        else:
            result = await job.result_info()
            state = "completed" if result is not None and result.success else "failed"
        return JobInfo(job_id=job_id, state=state, attempts=attempts)

    async def remove(self, queue_name: str, key: str) -> bool:
        """Discard a finished job and its retained result, e.g. after an operator has inspected a failure."""
        job_kind(queue_name)
        return await self._clear_finished(await self._get_pool(), queue_name, job_id_for(queue_name, key))


class RetentionPruner:
    """Tracks finished job ids per queue and outcome, deleting results past the preset count or age."""

    def __init__(self, redis, *, clock: Callable[[], float] = time.time) -> None:
        self.redis = redis
        self._clock = clock

    @staticmethod
    def index_key(queue_name: str, outcome: str) -> str:
        return f"crm:jobs:{queue_name}:{outcome}"

    async def record(self, queue_name: str, job_id: str, outcome: str, retention: Retention) -> list[str]:
        key = self.index_key(queue_name, outcome)
        now = self._clock()
        await self.redis.zadd(key, {job_id: now})

        expired: list = []
        if retention.age_seconds is not None:
            expired.extend(await self.redis.zrangebyscore(key, "-inf", now - retention.age_seconds))
        if retention.count is not None:
            expired.extend(await self.redis.zrange(key, 0, -(retention.count + 1)))
        pruned = list(dict.fromkeys(m.decode() if isinstance(m, bytes) else str(m) for m in expired))
        if not pruned:
            return []
        await self.redis.delete(*(result_key_prefix + member for member in pruned))
        await self.redis.zrem(key, *pruned)
        logger.info("job retention pruned queue=%s outcome=%s count=%s", queue_name, outcome, len(pruned))
        return pruned
