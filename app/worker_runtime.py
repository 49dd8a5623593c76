from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from arq import Retry
from arq.connections import RedisSettings
from arq.cron import CronJob
from arq.worker import Function, Worker, func

from app.config import Settings
from app.queue import MAX_ATTEMPTS, JobEnvelope, JobKind, RetentionPruner, backoff_delay, job_kind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobContext:
    job_id: str
    queue: str
    attempt: int
    max_attempts: int
    payload: Any


Handler = Callable[[JobContext], Awaitable[Any]]


def wrap_handler(kind: JobKind, handler: Handler) -> Callable[[dict, dict], Awaitable[Any]]:
    """Adapt a typed handler to arq, applying the queue's attempts, exponential backoff and retention."""

    async def run(ctx: dict, envelope: dict) -> Any:
        env = JobEnvelope.model_validate(envelope)
        job = JobContext(
            job_id=str(ctx.get("job_id", "")),
            queue=kind.queue,
            attempt=int(ctx.get("job_try") or 1),
            max_attempts=env.attempts,
            payload=kind.payload_model.model_validate(env.payload),
        )
        pruner: RetentionPruner | None = ctx.get("retention")
        try:
            result = await handler(job)
        except Exception as exc:
            if job.attempt < job.max_attempts:
                delay = backoff_delay(env.backoff_seconds, job.attempt)
                logger.warning(
                    "job failed queue=%s job_id=%s attempt=%s/%s retry_in_seconds=%s err_type=%s err=%s",
                    kind.queue,
                    job.job_id,
                    job.attempt,
                    job.max_attempts,
                    delay,
                    type(exc).__name__,
                    exc,
                )
                raise Retry(defer=delay) from exc
            logger.error(
                "job failed permanently queue=%s job_id=%s attempts=%s err_type=%s err=%s",
                kind.queue,
                job.job_id,
                job.attempt,
                type(exc).__name__,
                exc,
            )
            if pruner is not None:
                await pruner.record(kind.queue, job.job_id, "failed", kind.policy.keep_failed)
            raise
        if pruner is not None:
            await pruner.record(kind.queue, job.job_id, "completed", kind.policy.keep_completed)
        return result

    run.__qualname__ = run.__name__ = f"run_{kind.queue.replace('-', '_')}"
    return run


@dataclass(frozen=True)
class QueueBinding:
    queue: str
    handler: Handler
    concurrency: int
    cron_jobs: tuple[CronJob, ...] = ()

    def function(self) -> Function:
        kind = job_kind(self.queue)
        return func(
            wrap_handler(kind, self.handler),
            name=self.queue,
            max_tries=MAX_ATTEMPTS,
            timeout=kind.timeout_seconds,
        )


class WorkerRuntime:
    """Runs one bounded-concurrency arq worker per queue inside a single event loop."""

    def __init__(self, settings: Settings, bindings: list[QueueBinding], *, ctx: dict | None = None) -> None:
        self.settings = settings
        self.bindings = bindings
        self.ctx = ctx or {}
        self._workers: list[Worker] = []

    def build_workers(self) -> list[Worker]:
        redis_settings = RedisSettings.from_dsn(self.settings.redis_url)
        workers = []
        for binding in self.bindings:
            keep_result, keep_forever = job_kind(binding.queue).policy.result_ttl()
            workers.append(
                Worker(
                    functions=[binding.function()],
                    queue_name=binding.queue,
                    cron_jobs=list(binding.cron_jobs) or None,
                    redis_settings=redis_settings,
                    max_jobs=binding.concurrency,
                    keep_result=keep_result,
                    keep_result_forever=keep_forever,
                    handle_signals=False,
                    ctx=dict(self.ctx),
                    on_startup=self._on_startup,
                )
            )
        return workers

    async def _on_startup(self, ctx: dict) -> None:
        ctx["retention"] = RetentionPruner(ctx["redis"])

    async def run(self) -> None:
        self._workers = self.build_workers()
        logger.info("worker runtime starting queues=%s", ",".join(b.queue for b in self.bindings))
        try:
            await asyncio.gather(*(worker.main() for worker in self._workers))
        finally:
            for worker in self._workers:
                try:
                    await worker.close()
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "worker close failed queue=%s err_type=%s err=%s",
                        worker.queue_name,
                        type(exc).__name__,
                        exc,
                    )
            self._workers = []

