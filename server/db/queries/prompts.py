from __future__ import annotations

import json
import uuid

import aiosqlite

from server.models.prompt import VERSIONED_ATTRIBUTES
from server.utils.validators import slugify


def _decode(row) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    if isinstance(data.get("metadata"), str):
        try:
            data["metadata"] = json.loads(data["metadata"])
        except (json.JSONDecodeError, TypeError):
            data["metadata"] = {}
    return data


async def get_prompt(db: aiosqlite.Connection, prompt_id: str) -> dict | None:
    async with db.execute("SELECT * FROM prompts WHERE id = ?", (prompt_id,)) as cursor:
        return _decode(await cursor.fetchone())


async def get_prompt_by_slug(db: aiosqlite.Connection, slug: str) -> dict | None:
    async with db.execute("SELECT * FROM prompts WHERE slug = ?", (slug,)) as cursor:
        return _decode(await cursor.fetchone())


async def list_prompts(
    db: aiosqlite.Connection,
    status: str | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    conditions = ["1 = 1"]
    params: list = []

    if status:
        conditions.append("status = ?")
        params.append(status)
    if search:
        conditions.append("(name LIKE ? OR description LIKE ?)")
        params.extend([f"%{search}%", f"%{search}%"])

    where = " AND ".join(conditions)

    async with db.execute(f"SELECT COUNT(*) FROM prompts WHERE {where}", params) as cursor:
        total = (await cursor.fetchone())[0]

    sql = f"SELECT * FROM prompts WHERE {where} ORDER BY name LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    async with db.execute(sql, params) as cursor:
        rows = await cursor.fetchall()
        return [_decode(r) for r in rows], total


async def create_prompt(db: aiosqlite.Connection, data: dict) -> dict:
    """Insert a prompt together with its initial version."""
    prompt_id = str(uuid.uuid4())
    slug = data.get("slug") or slugify(data["name"])
    await db.execute(
        """INSERT INTO prompts
           (id, name, slug, description, content, system_message, model,
            temperature, max_tokens, metadata, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            prompt_id, data["name"], slug, data.get("description"), data["content"],
            data.get("system_message"), data.get("model"), data.get("temperature"),
            data.get("max_tokens"), json.dumps(data.get("metadata") or {}),
            data.get("status", "draft"),
        ),
    )
    await _insert_version(db, prompt_id, data, "Initial version")
    await db.commit()
    return await get_prompt(db, prompt_id)


async def update_prompt(db: aiosqlite.Connection, prompt_id: str, changes: dict) -> dict | None:
    """Apply ``changes`` and snapshot a new version if a versioned attribute moved."""
    prompt = await get_prompt(db, prompt_id)
    if not prompt:
        return None

    allowed = {"name", "description", "status", *VERSIONED_ATTRIBUTES}
    changes = {k: v for k, v in changes.items() if k in allowed}
    changed = [k for k, v in changes.items() if prompt.get(k) != v]
    if not changed:
        return prompt

    assignments = ", ".join(f"{k} = ?" for k in changed)
    values = [json.dumps(changes[k] or {}) if k == "metadata" else changes[k] for k in changed]
    await db.execute(
        f"UPDATE prompts SET {assignments}, updated_at = datetime('now') WHERE id = ?",
        (*values, prompt_id),
    )

    versioned = [k for k in VERSIONED_ATTRIBUTES if k in changed]
    if versioned:
        await _insert_version(db, prompt_id, {**prompt, **changes}, f"Updated: {', '.join(versioned)}")
    await db.commit()
    return await get_prompt(db, prompt_id)


async def delete_prompt(db: aiosqlite.Connection, prompt_id: str) -> None:
    await db.execute("DELETE FROM prompts WHERE id = ?", (prompt_id,))
    await db.commit()


# ── Versions ──

async def _insert_version(db: aiosqlite.Connection, prompt_id: str, data: dict, description: str) -> str:
    async with db.execute(
        "SELECT COALESCE(MAX(version_number), 0) FROM prompt_versions WHERE prompt_id = ?",
        (prompt_id,),
    ) as cursor:
        next_number = (await cursor.fetchone())[0] + 1

    version_id = str(uuid.uuid4())
    await db.execute(
        """INSERT INTO prompt_versions
           (id, prompt_id, version_number, content, system_message, model,
            temperature, max_tokens, metadata, change_description)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            version_id, prompt_id, next_number, data["content"], data.get("system_message"),
            data.get("model"), data.get("temperature"), data.get("max_tokens"),
            json.dumps(data.get("metadata") or {}), description,
        ),
    )
    return version_id


async def list_versions(db: aiosqlite.Connection, prompt_id: str) -> list[dict]:
    async with db.execute(
        "SELECT * FROM prompt_versions WHERE prompt_id = ? ORDER BY version_number DESC",
        (prompt_id,),
    ) as cursor:
        return [_decode(r) for r in await cursor.fetchall()]


async def get_version(db: aiosqlite.Connection, version_id: str) -> dict | None:
    async with db.execute("SELECT * FROM prompt_versions WHERE id = ?", (version_id,)) as cursor:
        return _decode(await cursor.fetchone())


async def get_version_by_number(
    db: aiosqlite.Connection, prompt_id: str, version_number: int
) -> dict | None:
    async with db.execute(
        "SELECT * FROM prompt_versions WHERE prompt_id = ? AND version_number = ?",
        (prompt_id, version_number),
    ) as cursor:
        return _decode(await cursor.fetchone())


async def get_current_version(db: aiosqlite.Connection, prompt_id: str) -> dict | None:
    async with db.execute(
        "SELECT * FROM prompt_versions WHERE prompt_id = ? ORDER BY version_number DESC LIMIT 1",
        (prompt_id,),
    ) as cursor:
        return _decode(await cursor.fetchone())


async def restore_version(db: aiosqlite.Connection, prompt_id: str, version_number: int) -> dict | None:
    """Copy a version's attributes back onto the prompt, recording the restore as a new version."""
    version = await get_version_by_number(db, prompt_id, version_number)
    if not version:
        return None

    before = await get_current_version(db, prompt_id)
    attrs = {k: version[k] for k in VERSIONED_ATTRIBUTES}
    prompt = await update_prompt(db, prompt_id, attrs)
    after = await get_current_version(db, prompt_id)

    description = f"Restored from version {version_number}"
    if before and after and after["id"] != before["id"]:
        await db.execute(
            "UPDATE prompt_versions SET change_description = ? WHERE id = ?",
            (description, after["id"]),
        )
    else:
        await _insert_version(db, prompt_id, {**prompt, **attrs}, description)
    await db.commit()
    return await get_prompt(db, prompt_id)
