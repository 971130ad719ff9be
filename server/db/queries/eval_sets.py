from __future__ import annotations

import json
import uuid

import aiosqlite

from server.models.eval import success_rate


def _decode(row, *json_fields: str) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    for field in json_fields:
        if isinstance(data.get(field), str):
            try:
                data[field] = json.loads(data[field])
            except (json.JSONDecodeError, TypeError):
                data[field] = {}
    return data


# ── Eval sets ──

async def create_eval_set(
    db: aiosqlite.Connection,
    prompt_id: str,
    name: str,
    description: str | None = None,
    grader_type: str = "exact_match",
    grader_config: dict | None = None,
) -> dict:
    eval_set_id = str(uuid.uuid4())
    await db.execute(
        """INSERT INTO eval_sets (id, prompt_id, name, description, grader_type, grader_config)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (eval_set_id, prompt_id, name, description, grader_type, json.dumps(grader_config or {})),
    )
    await db.commit()
    return await get_eval_set(db, eval_set_id)


async def get_eval_set(db: aiosqlite.Connection, eval_set_id: str) -> dict | None:
    async with db.execute("SELECT * FROM eval_sets WHERE id = ?", (eval_set_id,)) as cursor:
        return _decode(await cursor.fetchone(), "grader_config")


async def list_eval_sets(db: aiosqlite.Connection, prompt_id: str) -> list[dict]:
    async with db.execute(
        """SELECT s.*, (SELECT COUNT(*) FROM test_cases t WHERE t.eval_set_id = s.id) AS test_case_count
           FROM eval_sets s WHERE s.prompt_id = ? ORDER BY s.name""",
        (prompt_id,),
    ) as cursor:
        return [_decode(r, "grader_config") for r in await cursor.fetchall()]


async def update_eval_set(db: aiosqlite.Connection, eval_set_id: str, changes: dict) -> dict | None:
    allowed = ("name", "description", "grader_type", "grader_config")
    fields = {k: v for k, v in changes.items() if k in allowed and v is not None}
    if fields:
        if "grader_config" in fields:
            fields["grader_config"] = json.dumps(fields["grader_config"])
        assignments = ", ".join(f"{k} = ?" for k in fields)
        await db.execute(
            f"UPDATE eval_sets SET {assignments}, updated_at = datetime('now') WHERE id = ?",
            (*fields.values(), eval_set_id),
        )
        await db.commit()
    return await get_eval_set(db, eval_set_id)


async def set_openai_eval_id(db: aiosqlite.Connection, eval_set_id: str, openai_eval_id: str | None) -> None:
    await db.execute(
        "UPDATE eval_sets SET openai_eval_id = ?, updated_at = datetime('now') WHERE id = ?",
        (openai_eval_id, eval_set_id),
    )
    await db.commit()


async def delete_eval_set(db: aiosqlite.Connection, eval_set_id: str) -> None:
    await db.execute("DELETE FROM eval_sets WHERE id = ?", (eval_set_id,))
    await db.commit()


async def average_success_rate(db: aiosqlite.Connection, eval_set_id: str) -> float:
    """Pass rate across completed runs that produced results."""
    async with db.execute(
        """SELECT COALESCE(SUM(passed_count), 0), COALESCE(SUM(total_count), 0)
           FROM eval_runs WHERE eval_set_id = ? AND status = 'completed' AND total_count > 0""",
        (eval_set_id,),
    ) as cursor:
        passed, total = await cursor.fetchone()
    return success_rate({"passed_count": passed, "total_count": total})


# ── Test cases ──

async def create_test_case(
    db: aiosqlite.Connection,
    eval_set_id: str,
    input_variables: dict,
    expected_output: str,
    description: str | None = None,
    commit: bool = True,
) -> dict:
    test_case_id = str(uuid.uuid4())
    await db.execute(
        """INSERT INTO test_cases (id, eval_set_id, input_variables, expected_output, description)
           VALUES (?, ?, ?, ?, ?)""",
        (test_case_id, eval_set_id, json.dumps(input_variables), expected_output, description),
    )
    if commit:
        await db.commit()
    return await get_test_case(db, test_case_id)


async def get_test_case(db: aiosqlite.Connection, test_case_id: str) -> dict | None:
    async with db.execute("SELECT * FROM test_cases WHERE id = ?", (test_case_id,)) as cursor:
        return _decode(await cursor.fetchone(), "input_variables")


async def list_test_cases(db: aiosqlite.Connection, eval_set_id: str) -> list[dict]:
    async with db.execute(
        "SELECT * FROM test_cases WHERE eval_set_id = ? ORDER BY created_at, rowid",
        (eval_set_id,),
    ) as cursor:
        return [_decode(r, "input_variables") for r in await cursor.fetchall()]


async def delete_test_case(db: aiosqlite.Connection, test_case_id: str) -> None:
    await db.execute("DELETE FROM test_cases WHERE id = ?", (test_case_id,))
    await db.commit()
