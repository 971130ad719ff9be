from __future__ import annotations

import aiosqlite

from server.utils.crypto import decrypt, encrypt

PROVIDERS = ("openai", "anthropic")


async def get_settings(db: aiosqlite.Connection) -> dict:
    """Return the singleton settings row, creating it on first access."""
    await db.execute("INSERT OR IGNORE INTO settings (id) VALUES (1)")
    await db.commit()
    async with db.execute("SELECT * FROM settings WHERE id = 1") as cursor:
        row = await cursor.fetchone()
        return dict(row)


async def get_api_key(db: aiosqlite.Connection, provider: str) -> str | None:
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown provider: {provider}")
    row = await get_settings(db)
    ciphertext = row.get(f"{provider}_api_key_encrypted")
    return decrypt(ciphertext) if ciphertext else None


async def set_api_key(db: aiosqlite.Connection, provider: str, api_key: str | None) -> None:
    """Store (or clear, when blank) the encrypted key for ``provider``."""
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown provider: {provider}")
    await get_settings(db)
    value = encrypt(api_key.strip()) if api_key and api_key.strip() else None
    await db.execute(
        f"UPDATE settings SET {provider}_api_key_encrypted = ?, updated_at = datetime('now') WHERE id = 1",
        (value,),
    )
    await db.commit()
