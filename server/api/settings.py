"""Admin API routes for stored provider API keys."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from server.api.common import parse_body
from server.db.database import get_db
from server.db.queries import settings as settings_queries
from server.utils.validators import mask_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["settings"])


class SettingsUpdate(BaseModel):
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None


async def _masked(db) -> dict:
    data = {}
    for provider in settings_queries.PROVIDERS:
        try:
            key = await settings_queries.get_api_key(db, provider)
        except ValueError:
            logger.warning("Stored %s API key could not be decrypted", provider)
            key = None
        data[f"{provider}_api_key"] = mask_api_key(key)
        data[f"{provider}_configured"] = bool(key)
    return data


@router.get("/settings")
async def get_settings():
    db = await get_db()
    return await _masked(db)


@router.put("/settings")
async def update_settings(request: Request):
    """Keys present in the body are replaced; an empty string clears one."""
    db = await get_db()
    body = await parse_body(request, SettingsUpdate)
    for provider, value in body.model_dump(exclude_unset=True).items():
        await settings_queries.set_api_key(db, provider.removesuffix("_api_key"), value)
        logger.info("Updated stored %s", provider)
    return await _masked(db)
