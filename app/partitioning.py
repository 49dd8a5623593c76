from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.config import Settings

logger = logging.getLogger(__name__)

PARTITION_COUNT_SQL = """
SELECT count(*)
FROM pg_inherits i
JOIN pg_class parent ON parent.oid = i.inhparent
WHERE parent.relname = :table
"""


class PartitioningError(RuntimeError):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


class PartitionStep(Protocol):
    name: str

    async def apply(self, conn: AsyncConnection) -> None: ...


@dataclass(frozen=True)
class PartmanPolicy:
    interval: str = "1 month"
    premake: int = 4
    retention: str = "24 months"

    @classmethod
    def from_settings(cls, settings: Settings) -> PartmanPolicy:
        return cls(
            interval=settings.partition_interval,
            premake=settings.partition_premake,
            retention=settings.partition_retention,
        )


@dataclass(frozen=True)
class PartitionPlan:
    table: str
    control_column: str
    primary_key: tuple[str, ...]
    # DDL on the new parent once its primary key exists.
    constraints: tuple[str, ...] = ()
    # Statements that fill the new parent from "<table>_old"; defaults to a straight column copy.
    copy_statements: tuple[str, ...] = ()
    # Foreign keys and indexes; these run after the original is dropped so names are free again.
    restore_statements: tuple[str, ...] = ()

    @property
    def original(self) -> str:
        return f"{self.table}_old"


@dataclass(frozen=True)
class SqlStep:
    name: str
    statements: tuple[str, ...]

    async def apply(self, conn: AsyncConnection) -> None:
        for statement in self.statements:
            await conn.execute(text(statement))


@dataclass(frozen=True)
class RegisterPartmanStep:
    name: str
    plan: PartitionPlan
    policy: PartmanPolicy

    async def apply(self, conn: AsyncConnection) -> None:
        parent = f"public.{self.plan.table}"
        # Start at the oldest existing row so copied data lands in real partitions, not the default one.
        start = await conn.scalar(
            text(
                f"SELECT to_char(min({self.plan.control_column}), 'YYYY-MM-DD HH24:MI:SS') "
                f"FROM {self.plan.original}"
            )
        )
        params = {
            "parent": parent,
            "control": self.plan.control_column,
            "interval": self.policy.interval,
            "premake": self.policy.premake,
        }
        if start is None:
            await conn.execute(
                text(
                    "SELECT partman.create_parent(p_parent_table := :parent, p_control := :control, "
                    "p_interval := :interval, p_premake := :premake)"
                ),
                params,
            )
        else:
            await conn.execute(
                text(
                    "SELECT partman.create_parent(p_parent_table := :parent, p_control := :control, "
                    "p_interval := :interval, p_premake := :premake, p_start_partition := :start)"
                ),
                {**params, "start": start},
            )
        await conn.execute(
            text(
                "UPDATE partman.part_config SET infinite_time_partitions = true, retention = :retention, "
                "retention_keep_table = false, retention_keep_index = false, premake = :premake "
                "WHERE parent_table = :parent"
            ),
            {"retention": self.policy.retention, "premake": self.policy.premake, "parent": parent},
        )


@dataclass(frozen=True)
class CopyRowsStep:
    name: str
    source: str
    target: str
    statements: tuple[str, ...]

    async def apply(self, conn: AsyncConnection) -> None:
        expected = await _row_count(conn, self.source)
        for statement in self.statements:
            await conn.execute(text(statement))
        copied = await _row_count(conn, self.target)
        if copied != expected:
            raise PartitioningError(self.name, f"copied {copied} rows into {self.target}, expected {expected}")
        logger.info("partitioning rows copied table=%s rows=%s", self.target, copied)


@dataclass(frozen=True)
class VerifyPartitionsStep:
    name: str
    table: str

    async def apply(self, conn: AsyncConnection) -> None:
        count = await conn.scalar(text(PARTITION_COUNT_SQL), {"table": self.table})
        if not count:
            raise PartitioningError(self.name, f"{self.table} has no partitions after maintenance")
        logger.info("partitioning verified table=%s partitions=%s", self.table, count)


def conversion_steps(plan: PartitionPlan, policy: PartmanPolicy) -> list[PartitionStep]:
    table, old = plan.table, plan.original
    copy_statements = plan.copy_statements or (f"INSERT INTO {table} SELECT * FROM {old}",)
    return [
        SqlStep(f"{table}.rename_original", (f"ALTER TABLE {table} RENAME TO {old}",)),
        SqlStep(
            f"{table}.create_partitioned_parent",
            (f"CREATE TABLE {table} (LIKE {old} INCLUDING DEFAULTS) PARTITION BY RANGE ({plan.control_column})",),
        ),
        SqlStep(
            f"{table}.add_primary_key",
            (f"ALTER TABLE {table} ADD PRIMARY KEY ({', '.join(plan.primary_key)})", *plan.constraints),
        ),
        RegisterPartmanStep(f"{table}.register_partman", plan, policy),
        CopyRowsStep(f"{table}.copy_rows", old, table, copy_statements),
        SqlStep(f"{table}.drop_original", (f"DROP TABLE {old} CASCADE",)),
        SqlStep(f"{table}.restore_foreign_keys", plan.restore_statements),
    ]


def finalize_steps(plans: tuple[PartitionPlan, ...]) -> list[PartitionStep]:
    steps: list[PartitionStep] = [
        SqlStep("partman.run_maintenance", ("SELECT partman.run_maintenance(p_analyze := true)",)),
    ]
    steps.extend(VerifyPartitionsStep(f"{plan.table}.verify_partitions", plan.table) for plan in plans)
    return steps


async def run_steps(conn: AsyncConnection, steps: list[PartitionStep]) -> None:
    for step in steps:
        logger.info("partitioning step started step=%s", step.name)
        await step.apply(conn)


async def convert_to_partitioned(
    engine: AsyncEngine,
    plans: tuple[PartitionPlan, ...],
    policy: PartmanPolicy,
) -> None:
    if not plans:
        return
    for plan in plans:
        async with engine.begin() as conn:
            await run_steps(conn, conversion_steps(plan, policy))
    async with engine.begin() as conn:
        await run_steps(conn, finalize_steps(plans))


async def _row_count(conn: AsyncConnection, table: str) -> int:
    return int(await conn.scalar(text(f"SELECT count(*) FROM {table}")) or 0)


CHAT_PLAN = PartitionPlan(
    table="chat",
    control_column="created_at",
    primary_key=("id", "created_at"),
    constraints=(
        "ALTER TABLE chat ADD CONSTRAINT chat_channel_contact_unique UNIQUE (channel_id, contact_id, created_at)",
    ),
    restore_statements=(
        "ALTER TABLE chat ADD CONSTRAINT chat_channel_id_fk FOREIGN KEY (channel_id) REFERENCES channel (id)",
        "ALTER TABLE chat ADD CONSTRAINT chat_contact_id_fk FOREIGN KEY (contact_id) REFERENCES contact (id)",
        "CREATE INDEX IF NOT EXISTS chat_contact_status_idx ON chat (contact_id, status)",
        "CREATE INDEX IF NOT EXISTS chat_organization_id_idx ON chat (organization_id)",
    ),
)

MESSAGE_PLAN = PartitionPlan(
    table="message",
    control_column="timestamp",
    primary_key=("id", "timestamp"),
    constraints=(
        "CREATE UNIQUE INDEX IF NOT EXISTS message_whatsapp_id_unique "
        "ON message (whatsapp_message_id, timestamp) WHERE whatsapp_message_id IS NOT NULL",
    ),
    copy_statements=(
        "INSERT INTO message SELECT * FROM message_old",
        "UPDATE message m SET chat_created_at = c.created_at FROM chat c "
        "WHERE c.id = m.chat_id AND m.chat_created_at IS NULL",
    ),
    restore_statements=(
        "ALTER TABLE message ADD CONSTRAINT message_chat_fk FOREIGN KEY (chat_id, chat_created_at) "
        "REFERENCES chat (id, created_at)",
        "CREATE INDEX IF NOT EXISTS message_chat_timestamp_idx ON message (chat_id, timestamp)",
    ),
)

# chat before message: the message foreign key needs chat's composite key to exist.
DEFAULT_PLANS: tuple[PartitionPlan, ...] = (CHAT_PLAN, MESSAGE_PLAN)
