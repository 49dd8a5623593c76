from __future__ import annotations

import asyncio

import pytest

from app.partitioning import (
    CHAT_PLAN,
    DEFAULT_PLANS,
    MESSAGE_PLAN,
    CopyRowsStep,
    PartitioningError,
    PartmanPolicy,
    RegisterPartmanStep,
    VerifyPartitionsStep,
    conversion_steps,
    convert_to_partitioned,
    finalize_steps,
    run_steps,
)


class RecordingConnection:
    """Records every statement; scalar queries answer from an exact-SQL lookup table."""

    def __init__(self, answers: dict[str, object] | None = None) -> None:
        self.answers = answers or {}
        self.statements: list[tuple[str, dict | None]] = []

    async def execute(self, clause, params: dict | None = None) -> None:
        self.statements.append((str(clause), params))

    async def scalar(self, clause, params: dict | None = None):
        sql = str(clause)
        self.statements.append((sql, params))
        return self.answers.get(" ".join(sql.split()))

    def sql(self) -> list[str]:
        return [" ".join(sql.split()) for sql, _ in self.statements]


POLICY = PartmanPolicy(interval="1 month", premake=4, retention="24 months")
CHAT_START_SQL = "SELECT to_char(min(created_at), 'YYYY-MM-DD HH24:MI:SS') FROM chat_old"


def test_conversion_steps_run_in_a_fixed_order() -> None:
    names = [step.name for step in conversion_steps(CHAT_PLAN, POLICY)]
    assert names == [
        "chat.rename_original",
        "chat.create_partitioned_parent",
        "chat.add_primary_key",
        "chat.register_partman",
        "chat.copy_rows",
        "chat.drop_original",
        "chat.restore_foreign_keys",
    ]


def test_chat_conversion_registers_partman_before_copying_rows() -> None:
    conn = RecordingConnection(
        {
            CHAT_START_SQL: "2026-01-15 08:00:00",
            "SELECT count(*) FROM chat_old": 3,
            "SELECT count(*) FROM chat": 3,
        }
    )

    asyncio.run(run_steps(conn, conversion_steps(CHAT_PLAN, POLICY)))

    sql = conn.sql()
    assert sql[0] == "ALTER TABLE chat RENAME TO chat_old"
    assert sql[1] == "CREATE TABLE chat (LIKE chat_old INCLUDING DEFAULTS) PARTITION BY RANGE (created_at)"
    assert sql[2] == "ALTER TABLE chat ADD PRIMARY KEY (id, created_at)"
    create_parent = next(i for i, s in enumerate(sql) if "partman.create_parent" in s)
    copy = sql.index("INSERT INTO chat SELECT * FROM chat_old")
    drop = sql.index("DROP TABLE chat_old CASCADE")
    restore = next(i for i, s in enumerate(sql) if "chat_contact_id_fk" in s)
    assert create_parent < copy < drop < restore

    create_parent_sql, params = conn.statements[create_parent]
    assert "p_start_partition" in create_parent_sql
    assert params["start"] == "2026-01-15 08:00:00"
    assert params["parent"] == "public.chat"
    assert params["interval"] == "1 month"

    config_sql, config_params = next(
        (s, p) for s, p in conn.statements if "UPDATE partman.part_config" in s
    )
    assert "infinite_time_partitions = true" in config_sql
    assert config_params == {"retention": "24 months", "premake": 4, "parent": "public.chat"}


def test_register_without_rows_uses_partman_default_start() -> None:
    conn = RecordingConnection()
    step = RegisterPartmanStep("chat.register_partman", CHAT_PLAN, POLICY)

    asyncio.run(step.apply(conn))

    create_parent_sql, params = conn.statements[1]
    assert "partman.create_parent" in create_parent_sql
    assert "p_start_partition" not in create_parent_sql
    assert "start" not in params


def test_message_copy_backfills_chat_created_at() -> None:
    steps = conversion_steps(MESSAGE_PLAN, POLICY)
    copy = next(step for step in steps if step.name == "message.copy_rows")
    assert copy.statements[0] == "INSERT INTO message SELECT * FROM message_old"
    assert "chat_created_at = c.created_at" in copy.statements[1]
    restore = next(step for step in steps if step.name == "message.restore_foreign_keys")
    assert any("FOREIGN KEY (chat_id, chat_created_at)" in stmt for stmt in restore.statements)


def test_row_count_mismatch_aborts_before_drop() -> None:
    conn = RecordingConnection({"SELECT count(*) FROM message_old": 10, "SELECT count(*) FROM message": 9})
    step = CopyRowsStep("message.copy_rows", "message_old", "message", ("INSERT INTO message SELECT * FROM message_old",))

    with pytest.raises(PartitioningError) as excinfo:
        asyncio.run(step.apply(conn))

    assert excinfo.value.step == "message.copy_rows"
    assert "expected 10" in str(excinfo.value)


def test_verify_requires_at_least_one_partition() -> None:
    with pytest.raises(PartitioningError, match="chat has no partitions"):
        asyncio.run(VerifyPartitionsStep("chat.verify_partitions", "chat").apply(RecordingConnection()))


def test_finalize_runs_maintenance_then_verifies_every_table() -> None:
    names = [step.name for step in finalize_steps(DEFAULT_PLANS)]
    assert names == ["partman.run_maintenance", "chat.verify_partitions", "message.verify_partitions"]


def test_no_plans_is_a_no_op() -> None:
    asyncio.run(convert_to_partitioned(None, (), POLICY))
