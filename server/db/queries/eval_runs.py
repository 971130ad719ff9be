from __future__ import annotations

import uuid

import aiosqlite

from server.models.status import InvalidTransitionError, RunStatus, transition

_MUTABLE_FIELDS = {
    "openai_run_id", "openai_file_id", "report_url", "total_count", "passed_count",
    "failed_count", "error_message", "started_at", "completed_at",
}


async def create_eval_run(
    db: aiosqlite.Connection,
    eval_set_id: str,
    prompt_version_id: str,
) -> str:
    run_id = str(uuid.uuid4())
    await db.execute(
        "INSERT INTO eval_runs (id, eval_set_id, prompt_version_id, status) VALUES (?, ?, ?, ?)",
        (run_id, eval_set_id, prompt_version_id, RunStatus.PENDING.value),
    )
    await db.commit()
    return run_id


async def update_eval_run(db: aiosqlite.Connection, run_id: str, **fields) -> None:
    """Set non-status columns (remote ids, report URL, counts)."""
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown eval run fields: {', '.join(sorted(unknown))}")
    if not fields:
        return
    assignments = ", ".join(f"{k} = ?" for k in fields)
    await db.execute(f"UPDATE eval_runs SET {assignments} WHERE id = ?", (*fields.values(), run_id))
    await db.commit()


async def transition_eval_run(
    db: aiosqlite.Connection, run_id: str, target: RunStatus, **fields
) -> dict:
    """Move a run to ``target``, guarded on the status it was read with.

    Raises:
        InvalidTransitionError: if the move is illegal or another writer
            changed the status first.
        LookupError: if the run does not exist.
    """
    run = await get_eval_run(db, run_id)
    if not run:
        raise LookupError(f"Eval run not found: {run_id}")
    transition(run["status"], target)

    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown eval run fields: {', '.join(sorted(unknown))}")

    assignments = ", ".join(["status = ?", *(f"{k} = ?" for k in fields)])
    cursor = await db.execute(
        f"UPDATE eval_runs SET {assignments} WHERE id = ? AND status = ?",
        (RunStatus(target).value, *fields.values(), run_id, run["status"]),
    )
    if cursor.rowcount == 0:
        await db.rollback()
        raise InvalidTransitionError(run["status"], RunStatus(target).value)
    await db.commit()
    return await get_eval_run(db, run_id)


async def get_eval_run(db: aiosqlite.Connection, run_id: str) -> dict | None:
    async with db.execute("SELECT * FROM eval_runs WHERE id = ?", (run_id,)) as cursor:
        row = await cursor.fetchone()
        return dict(row) if row else None


async def list_eval_runs(
    db: aiosqlite.Connection, eval_set_id: str, limit: int = 20
) -> list[dict]:
    async with db.execute(
        "SELECT * FROM eval_runs WHERE eval_set_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
        (eval_set_id, limit),
    ) as cursor:
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]


async def delete_eval_run(db: aiosqlite.Connection, run_id: str) -> None:
    await db.execute("DELETE FROM eval_runs WHERE id = ?", (run_id,))
    await db.commit()


# ── Results ──

async def create_eval_result(
    db: aiosqlite.Connection,
    eval_run_id: str,
    test_case_id: str,
    passed: bool,
    actual_output: str | None = None,
    execution_time_ms: int | None = None,
    error_message: str | None = None,
) -> str:
    result_id = str(uuid.uuid4())
    await db.execute(
        """INSERT INTO eval_results
           (id, eval_run_id, test_case_id, passed, actual_output, execution_time_ms, error_message)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (result_id, eval_run_id, test_case_id, 1 if passed else 0,
         actual_output, execution_time_ms, error_message),
    )
    await db.commit()
    return result_id


async def list_eval_results(db: aiosqlite.Connection, eval_run_id: str) -> list[dict]:
    async with db.execute(
        "SELECT * FROM eval_results WHERE eval_run_id = ? ORDER BY created_at, rowid",
        (eval_run_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    results = []
    for r in rows:
        item = dict(r)
        item["passed"] = bool(item["passed"])
        item["status"] = "passed" if item["passed"] else "failed"
        results.append(item)
    return results
