"""API key resolution: an ordered chain of resolvers, first non-blank value wins."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

import aiosqlite

from server.config import settings
from server.db.queries import settings as settings_queries

logger = logging.getLogger(__name__)

KeyResolver = Callable[[], "str | None"]


def resolve_api_key(resolvers: Iterable[KeyResolver]) -> str | None:
    """Try each resolver in order and return the first non-blank key (stripped)."""
    for resolver in resolvers:
        value = resolver()
        if value and value.strip():
            return value.strip()
    return None


def explicit(value: str | None) -> KeyResolver:
    return lambda: value


def secret_store(provider: str = "openai") -> KeyResolver:
    """Environment / ``.env`` lookup through the settings object."""
    return lambda: getattr(settings, f"{provider}_api_key", None)


async def key_resolvers(
    db: aiosqlite.Connection | None,
    provider: str = "openai",
    api_key: str | None = None,
) -> list[KeyResolver]:
    """Build the standard chain: explicit argument, stored setting, secret store.

    The stored setting is read up front because the database is async while
    resolution itself is a plain function.
    """
    stored = None
    if db is not None:
        try:
            stored = await settings_queries.get_api_key(db, provider)
        except (aiosqlite.Error, ValueError) as e:
            logger.warning("Could not read stored %s API key: %s", provider, e)
    return [explicit(api_key), explicit(stored), secret_store(provider)]
