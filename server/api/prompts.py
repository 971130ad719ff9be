"""Admin API routes for prompts, versions, rendering and the playground."""

from __future__ import annotations

import logging

import aiosqlite
from fastapi import APIRouter, Request

from server.api.common import api_error, not_found, paginate, parse_body
from server.config import settings
from server.db.database import get_db
from server.db.queries import parameters as parameter_queries
from server.db.queries import playground_runs as playground_queries
from server.db.queries import prompts as prompt_queries
from server.models.prompt import (
    ParameterDefinitionUpdate,
    PlaygroundRequest,
    PromptCreate,
    PromptUpdate,
    RenderRequest,
)
from server.services import parameter_parser, prompt_renderer
from server.services.credentials import key_resolvers, resolve_api_key
from server.services.llm_executor import LLMExecutionError, ProviderExecutor
from server.utils.validators import VALID_PROMPT_STATUSES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["prompts"])


async def _get_prompt_or_404(db, prompt_id: str) -> dict:
    prompt = await prompt_queries.get_prompt(db, prompt_id)
    if not prompt:
        raise not_found("Prompt", prompt_id)
    return prompt


# ── Prompts ──

@router.get("/prompts")
async def list_prompts(
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    per_page: int = 50,
):
    if status and status not in VALID_PROMPT_STATUSES:
        raise api_error(400, "VALIDATION_ERROR", f"status must be one of: {', '.join(sorted(VALID_PROMPT_STATUSES))}")
    db = await get_db()
    items, total = await prompt_queries.list_prompts(
        db, status=status, search=search, limit=per_page, offset=(page - 1) * per_page,
    )
    return paginate(items, total, page, per_page)


@router.post("/prompts")
async def create_prompt(request: Request):
    db = await get_db()
    body = await parse_body(request, PromptCreate)
    try:
        return await prompt_queries.create_prompt(db, body.model_dump(mode="json"))
    except aiosqlite.IntegrityError:
        raise api_error(409, "CONFLICT", f"A {body.status.value} prompt named '{body.name}' or with the same slug already exists")


@router.get("/prompts/{prompt_id}")
async def get_prompt_detail(prompt_id: str):
    db = await get_db()
    prompt = await _get_prompt_or_404(db, prompt_id)
    current = await prompt_queries.get_current_version(db, prompt_id)
    prompt["current_version"] = current["version_number"] if current else None
    prompt["parameters"] = prompt_renderer.describe_parameters(prompt["content"], await _definitions(db, prompt_id))
    return prompt


@router.put("/prompts/{prompt_id}")
async def update_prompt(prompt_id: str, request: Request):
    db = await get_db()
    await _get_prompt_or_404(db, prompt_id)
    body = await parse_body(request, PromptUpdate)
    changes = body.model_dump(mode="json", exclude_unset=True)
    # Required columns cannot be cleared; the rest accept null.
    changes = {k: v for k, v in changes.items() if v is not None or k not in ("name", "content", "status")}
    try:
        prompt = await prompt_queries.update_prompt(db, prompt_id, changes)
    except aiosqlite.IntegrityError:
        raise api_error(409, "CONFLICT", "Another prompt with this name and status already exists")
    await _drop_orphaned_parameters(db, prompt)
    return prompt


@router.delete("/prompts/{prompt_id}")
async def delete_prompt(prompt_id: str):
    db = await get_db()
    await _get_prompt_or_404(db, prompt_id)
    await prompt_queries.delete_prompt(db, prompt_id)
    return {"ok": True}


# ── Versions ──

@router.get("/prompts/{prompt_id}/versions")
async def list_versions(prompt_id: str):
    db = await get_db()
    await _get_prompt_or_404(db, prompt_id)
    return {"items": await prompt_queries.list_versions(db, prompt_id)}


@router.get("/prompts/{prompt_id}/versions/{version_number}")
async def get_version(prompt_id: str, version_number: int):
    db = await get_db()
    version = await prompt_queries.get_version_by_number(db, prompt_id, version_number)
    if not version:
        raise not_found("Prompt version", str(version_number))
    return version


@router.post("/prompts/{prompt_id}/versions/{version_number}/restore")
async def restore_version(prompt_id: str, version_number: int):
    db = await get_db()
    await _get_prompt_or_404(db, prompt_id)
    prompt = await prompt_queries.restore_version(db, prompt_id, version_number)
    if not prompt:
        raise not_found("Prompt version", str(version_number))
    await _drop_orphaned_parameters(db, prompt)
    return prompt


# ── Parameters & rendering ──

async def _definitions(db, prompt_id: str) -> list[dict]:
    return await parameter_queries.list_parameters(db, prompt_id)


async def _drop_orphaned_parameters(db, prompt: dict) -> None:
    removed = await parameter_queries.delete_orphaned_parameters(
        db, prompt["id"], parameter_parser.parameter_names(prompt["content"]),
    )
    if removed:
        logger.info("Dropped %d parameter definitions no longer used by prompt %s", removed, prompt["id"])


@router.get("/prompts/{prompt_id}/parameters")
async def list_parameters(prompt_id: str):
    db = await get_db()
    prompt = await _get_prompt_or_404(db, prompt_id)
    return {"items": prompt_renderer.describe_parameters(prompt["content"], await _definitions(db, prompt_id))}


@router.put("/prompts/{prompt_id}/parameters/{name}")
async def define_parameter(prompt_id: str, name: str, request: Request):
    """Type a placeholder of the prompt's current content."""
    db = await get_db()
    prompt = await _get_prompt_or_404(db, prompt_id)
    if not prompt_renderer.is_valid_parameter_name(name):
        raise api_error(
            400, "VALIDATION_ERROR",
            "name must start with a letter or underscore and contain only letters, numbers, and underscores",
        )
    if name not in parameter_parser.parameter_names(prompt["content"]):
        raise api_error(400, "VALIDATION_ERROR", f"Prompt content has no {{{{{name}}}}} placeholder")

    body = await parse_body(request, ParameterDefinitionUpdate)
    errors = prompt_renderer.validate_rules(body.parameter_type.value, body.validation_rules, body.default_value)
    if errors:
        raise api_error(400, "VALIDATION_ERROR", "; ".join(errors), errors=errors)
    return await parameter_queries.upsert_parameter(db, prompt_id, name, body.model_dump(mode="json"))


@router.delete("/prompts/{prompt_id}/parameters/{name}")
async def delete_parameter(prompt_id: str, name: str):
    db = await get_db()
    await _get_prompt_or_404(db, prompt_id)
    if not await parameter_queries.get_parameter(db, prompt_id, name):
        raise not_found("Parameter", name)
    await parameter_queries.delete_parameter(db, prompt_id, name)
    return {"ok": True}


@router.post("/prompts/{prompt_id}/render")
async def render_prompt(prompt_id: str, request: Request):
    db = await get_db()
    prompt = await _get_prompt_or_404(db, prompt_id)
    body = await parse_body(request, RenderRequest)

    if body.version_number is not None:
        source = await prompt_queries.get_version_by_number(db, prompt_id, body.version_number)
        if not source:
            raise not_found("Prompt version", str(body.version_number))
    else:
        current = await prompt_queries.get_current_version(db, prompt_id)
        source = {**prompt, "version_number": current["version_number"] if current else None}

    try:
        return prompt_renderer.render(
            source, await _definitions(db, prompt_id), body.parameters,
            body.model_dump(include={"model", "temperature", "max_tokens"}),
        )
    except prompt_renderer.RenderError as e:
        raise api_error(400, "RENDER_ERROR", str(e), errors=e.errors)


# ── Playground ──

@router.post("/prompts/{prompt_id}/playground")
async def run_playground(prompt_id: str, request: Request):
    """Render the prompt, execute it once against the chosen provider and save the result."""
    db = await get_db()
    prompt = await _get_prompt_or_404(db, prompt_id)
    body = await parse_body(request, PlaygroundRequest)

    if body.provider not in ("openai", "anthropic"):
        raise api_error(400, "VALIDATION_ERROR", "Invalid provider")
    api_key = resolve_api_key(await key_resolvers(db, body.provider, body.api_key))
    try:
        executor = ProviderExecutor(body.provider, api_key, timeout=settings.llm_timeout)
    except ValueError as e:
        raise api_error(400, "VALIDATION_ERROR", str(e))

    try:
        rendered = prompt_renderer.render(
            prompt, await _definitions(db, prompt_id), body.parameters,
            body.model_dump(include={"model", "temperature", "max_tokens"}),
        )
    except prompt_renderer.RenderError as e:
        raise api_error(400, "RENDER_ERROR", str(e), errors=e.errors)

    try:
        result = await executor.execute(
            rendered["content"],
            system_message=rendered["system_message"],
            model=rendered["model"],
            temperature=rendered["temperature"],
            max_tokens=rendered["max_tokens"],
        )
    except LLMExecutionError as e:
        logger.warning("Playground run for prompt %s failed: %s", prompt_id, e)
        raise api_error(502, "LLM_ERROR", str(e))

    version = await prompt_queries.get_current_version(db, prompt_id)
    saved = await playground_queries.create_playground_run(db, version["id"], {
        "provider": result.provider,
        "model": result.model,
        "rendered_prompt": rendered["content"],
        "system_message": rendered["system_message"],
        "parameters": rendered["parameters_used"],
        "response": result.response,
        "execution_time": result.execution_time,
        "token_count": result.token_count,
        "temperature": rendered["temperature"],
        "max_tokens": rendered["max_tokens"],
    })
    logger.info("Playground run %s saved for prompt %s version %s", saved["id"], prompt_id, version["version_number"])

    return {
        "id": saved["id"],
        "prompt_version_id": version["id"],
        "version_number": version["version_number"],
        "rendered_prompt": rendered["content"],
        "response": result.response,
        "execution_time": result.execution_time,
        "token_count": result.token_count,
        "model": result.model,
        "provider": result.provider,
    }


@router.get("/prompts/{prompt_id}/playground-runs")
async def list_playground_runs(
    prompt_id: str,
    version_number: int | None = None,
    provider: str | None = None,
    limit: int = 50,
):
    db = await get_db()
    await _get_prompt_or_404(db, prompt_id)
    runs = await playground_queries.list_playground_runs(
        db, prompt_id, version_number=version_number, provider=provider, limit=limit,
    )
    return {"items": runs}


@router.get("/playground-runs/{run_id}")
async def get_playground_run(run_id: str):
    db = await get_db()
    run = await playground_queries.get_playground_run(db, run_id)
    if not run:
        raise not_found("Playground run", run_id)
    return run
