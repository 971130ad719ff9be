from __future__ import annotations

import json
import uuid

import aiosqlite


def _decode(row) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    data["required"] = bool(data["required"])
    try:
        data["validation_rules"] = json.loads(data.get("validation_rules") or "{}")
    except (json.JSONDecodeError, TypeError):
        data["validation_rules"] = {}
    return data


async def list_parameters(db: aiosqlite.Connection, prompt_id: str) -> list[dict]:
    async with db.execute(
        "SELECT * FROM prompt_parameters WHERE prompt_id = ? ORDER BY position, created_at, rowid",
        (prompt_id,),
    ) as cursor:
        return [_decode(r) for r in await cursor.fetchall()]


async def get_parameter(db: aiosqlite.Connection, prompt_id: str, name: str) -> dict | None:
    async with db.execute(
        "SELECT * FROM prompt_parameters WHERE prompt_id = ? AND name = ?",
        (prompt_id, name),
    ) as cursor:
        return _decode(await cursor.fetchone())


async def upsert_parameter(db: aiosqlite.Connection, prompt_id: str, name: str, data: dict) -> dict:
    """Create or replace the definition of ``name``; new ones go after the last position."""
    existing = await get_parameter(db, prompt_id, name)
    position = data.get("position")
    if position is None:
        if existing:
            position = existing["position"]
        else:
            async with db.execute(
                "SELECT COALESCE(MAX(position), 0) FROM prompt_parameters WHERE prompt_id = ?",
                (prompt_id,),
            ) as cursor:
                position = (await cursor.fetchone())[0] + 1

    values = (
        data.get("description"),
        data.get("parameter_type", "string"),
        1 if data.get("required", True) else 0,
        data.get("default_value"),
        json.dumps(data.get("validation_rules") or {}),
        position,
    )
    if existing:
        await db.execute(
            """UPDATE prompt_parameters
               SET description = ?, parameter_type = ?, required = ?, default_value = ?,
                   validation_rules = ?, position = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (*values, existing["id"]),
        )
    else:
        await db.execute(
            """INSERT INTO prompt_parameters
               (id, prompt_id, name, description, parameter_type, required, default_value,
                validation_rules, position)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (str(uuid.uuid4()), prompt_id, name, *values),
        )
    await db.commit()
    return await get_parameter(db, prompt_id, name)


async def delete_parameter(db: aiosqlite.Connection, prompt_id: str, name: str) -> None:
    await db.execute(
        "DELETE FROM prompt_parameters WHERE prompt_id = ? AND name = ?",
        (prompt_id, name),
    )
    await db.commit()


async def delete_orphaned_parameters(db: aiosqlite.Connection, prompt_id: str, keep: list[str]) -> int:
    """Drop definitions whose placeholder is no longer in the template."""
    placeholders = ", ".join("?" for _ in keep)
    sql = "DELETE FROM prompt_parameters WHERE prompt_id = ?"
    if keep:
        sql += f" AND name NOT IN ({placeholders})"
    cursor = await db.execute(sql, (prompt_id, *keep))
    await db.commit()
    return cursor.rowcount
