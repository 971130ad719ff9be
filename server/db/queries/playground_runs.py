from __future__ import annotations

import json
import uuid

import aiosqlite


def _decode(row) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    try:
        data["parameters"] = json.loads(data.get("parameters") or "{}")
    except (json.JSONDecodeError, TypeError):
        data["parameters"] = {}
    return data


async def create_playground_run(db: aiosqlite.Connection, prompt_version_id: str, data: dict) -> dict:
    run_id = str(uuid.uuid4())
    await db.execute(
        """INSERT INTO playground_runs
           (id, prompt_version_id, provider, model, rendered_prompt, system_message, parameters,
            response, execution_time, token_count, temperature, max_tokens)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            run_id, prompt_version_id, data["provider"], data["model"], data["rendered_prompt"],
            data.get("system_message"), json.dumps(data.get("parameters") or {}),
            data["response"], data["execution_time"], data.get("token_count"),
            data.get("temperature"), data.get("max_tokens"),
        ),
    )
    await db.commit()
    return await get_playground_run(db, run_id)


async def get_playground_run(db: aiosqlite.Connection, run_id: str) -> dict | None:
    async with db.execute(
        """SELECT r.*, v.prompt_id, v.version_number
           FROM playground_runs r JOIN prompt_versions v ON v.id = r.prompt_version_id
           WHERE r.id = ?""",
        (run_id,),
    ) as cursor:
        return _decode(await cursor.fetchone())


async def list_playground_runs(
    db: aiosqlite.Connection,
    prompt_id: str,
    version_number: int | None = None,
    provider: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """Runs across every version of a prompt, most recent first."""
    conditions = ["v.prompt_id = ?"]
    params: list = [prompt_id]
    if version_number is not None:
        conditions.append("v.version_number = ?")
        params.append(version_number)
    if provider:
        conditions.append("r.provider = ?")
        params.append(provider)
    params.append(limit)

    async with db.execute(
        f"""SELECT r.*, v.prompt_id, v.version_number
            FROM playground_runs r JOIN prompt_versions v ON v.id = r.prompt_version_id
            WHERE {' AND '.join(conditions)}
            ORDER BY r.created_at DESC, r.rowid DESC LIMIT ?""",
        params,
    ) as cursor:
        return [_decode(r) for r in await cursor.fetchall()]
