from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import aiosqlite

from server.models.status import InvalidTransitionError, RunStatus, transition

TITLE_FORMAT = "%B %d, %Y at %I:%M %p"


def _decode(row, *json_fields: str) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    for field in json_fields:
        if isinstance(data.get(field), str):
            try:
                data[field] = json.loads(data[field])
            except (json.JSONDecodeError, TypeError):
                pass
    return data


def default_title(created_at: datetime | None = None) -> str:
    return (created_at or datetime.now(timezone.utc)).strftime(TITLE_FORMAT)


# ── Workflows ──

async def create_workflow(
    db: aiosqlite.Connection, name: str, steps: list[dict], description: str | None = None
) -> dict:
    workflow_id = str(uuid.uuid4())
    await db.execute(
        "INSERT INTO workflows (id, name, description, steps) VALUES (?, ?, ?, ?)",
        (workflow_id, name, description, json.dumps(steps)),
    )
    await db.commit()
    return await get_workflow(db, workflow_id)


async def get_workflow(db: aiosqlite.Connection, workflow_id: str) -> dict | None:
    async with db.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)) as cursor:
        return _decode(await cursor.fetchone(), "steps")


async def list_workflows(db: aiosqlite.Connection) -> list[dict]:
    async with db.execute("SELECT * FROM workflows ORDER BY name") as cursor:
        return [_decode(r, "steps") for r in await cursor.fetchall()]


async def update_workflow(db: aiosqlite.Connection, workflow_id: str, changes: dict) -> dict | None:
    fields = {k: v for k, v in changes.items() if k in ("name", "description", "steps") and v is not None}
    if fields:
        if "steps" in fields:
            fields["steps"] = json.dumps(fields["steps"])
        assignments = ", ".join(f"{k} = ?" for k in fields)
        await db.execute(
            f"UPDATE workflows SET {assignments}, updated_at = datetime('now') WHERE id = ?",
            (*fields.values(), workflow_id),
        )
        await db.commit()
    return await get_workflow(db, workflow_id)


async def delete_workflow(db: aiosqlite.Connection, workflow_id: str) -> None:
    await db.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
    await db.commit()


# ── Workflow runs ──

async def create_workflow_run(
    db: aiosqlite.Connection,
    workflow_id: str,
    initial_input: str,
    input_variables: dict,
    title: str | None = None,
) -> str:
    run_id = str(uuid.uuid4())
    await db.execute(
        """INSERT INTO workflow_runs (id, workflow_id, title, initial_input, input_variables, status)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (run_id, workflow_id, title or default_title(), initial_input,
         json.dumps(input_variables), RunStatus.PENDING.value),
    )
    await db.commit()
    return run_id


async def transition_workflow_run(
    db: aiosqlite.Connection,
    run_id: str,
    target: RunStatus,
    results: dict | None = None,
    final_output: str | None = None,
    execution_time: float | None = None,
    error_message: str | None = None,
) -> dict:
    """Move a run to ``target``; terminal runs are never written again.

    Raises:
        InvalidTransitionError: illegal move or a concurrent writer won.
        LookupError: unknown run.
    """
    run = await get_workflow_run(db, run_id)
    if not run:
        raise LookupError(f"Workflow run not found: {run_id}")
    transition(run["status"], target)

    fields: dict = {"status": RunStatus(target).value}
    if results is not None:
        fields["results"] = json.dumps(results)
    if final_output is not None:
        fields["final_output"] = final_output
    if execution_time is not None:
        fields["execution_time"] = execution_time
    if error_message is not None:
        fields["error_message"] = error_message

    assignments = ", ".join(f"{k} = ?" for k in fields)
    cursor = await db.execute(
        f"UPDATE workflow_runs SET {assignments} WHERE id = ? AND status = ?",
        (*fields.values(), run_id, run["status"]),
    )
    if cursor.rowcount == 0:
        await db.rollback()
        raise InvalidTransitionError(run["status"], RunStatus(target).value)
    await db.commit()
    return await get_workflow_run(db, run_id)


async def get_workflow_run(db: aiosqlite.Connection, run_id: str) -> dict | None:
    async with db.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,)) as cursor:
        return _decode(await cursor.fetchone(), "input_variables", "results")


async def list_workflow_runs(
    db: aiosqlite.Connection, workflow_id: str, limit: int = 20
) -> list[dict]:
    async with db.execute(
        "SELECT * FROM workflow_runs WHERE workflow_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
        (workflow_id, limit),
    ) as cursor:
        return [_decode(r, "input_variables", "results") for r in await cursor.fetchall()]
