"""Evaluation API endpoints for eval sets, test cases and eval runs."""

from __future__ import annotations

import asyncio
import logging

import aiosqlite
from fastapi import APIRouter, Request
from pydantic import BaseModel

from server.api.common import api_error, not_found, parse_body
from server.clients.exceptions import AuthenticationError
from server.config import settings
from server.db.database import get_db
from server.db.queries import eval_runs as eval_queries
from server.db.queries import eval_sets as eval_set_queries
from server.db.queries import prompts as prompt_queries
from server.models.eval import (
    GRADER_TYPE_LABELS,
    EvalRunCreate,
    EvalSetCreate,
    EvalSetUpdate,
    TestCaseCreate,
    success_rate,
)
from server.services.eval_service import EvaluationRunner, EvalPollConfig, build_evals_client, run_evaluation
from server.services.test_case_import import CaseImportError, import_test_cases
from server.utils.validators import validate_grader_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["eval"])

# Strong references so background runs are not garbage-collected mid-flight.
_background_runs: set[asyncio.Task] = set()


class CaseImportRequest(BaseModel):
    format: str = "json"
    content: str


async def _get_eval_set_or_404(db, eval_set_id: str) -> dict:
    eval_set = await eval_set_queries.get_eval_set(db, eval_set_id)
    if not eval_set:
        raise not_found("Eval set", eval_set_id)
    return eval_set


async def _get_run_or_404(db, run_id: str) -> dict:
    run = await eval_queries.get_eval_run(db, run_id)
    if not run:
        raise not_found("Eval run", run_id)
    return run


def _with_rate(run: dict) -> dict:
    run["success_rate"] = success_rate(run)
    return run


# ── Eval sets ──

@router.get("/prompts/{prompt_id}/eval-sets")
async def list_eval_sets(prompt_id: str):
    db = await get_db()
    if not await prompt_queries.get_prompt(db, prompt_id):
        raise not_found("Prompt", prompt_id)
    return {"items": await eval_set_queries.list_eval_sets(db, prompt_id)}


@router.post("/prompts/{prompt_id}/eval-sets")
async def create_eval_set(prompt_id: str, request: Request):
    db = await get_db()
    if not await prompt_queries.get_prompt(db, prompt_id):
        raise not_found("Prompt", prompt_id)
    body = await parse_body(request, EvalSetCreate)
    try:
        return await eval_set_queries.create_eval_set(
            db, prompt_id, body.name, body.description, body.grader_type.value, body.grader_config,
        )
    except aiosqlite.IntegrityError:
        raise api_error(409, "CONFLICT", f"An eval set named '{body.name}' already exists for this prompt")


@router.get("/eval-sets/{eval_set_id}")
async def get_eval_set(eval_set_id: str):
    db = await get_db()
    eval_set = await _get_eval_set_or_404(db, eval_set_id)
    eval_set["grader_label"] = GRADER_TYPE_LABELS.get(eval_set["grader_type"], eval_set["grader_type"])
    eval_set["average_success_rate"] = await eval_set_queries.average_success_rate(db, eval_set_id)
    eval_set["test_case_count"] = len(await eval_set_queries.list_test_cases(db, eval_set_id))
    return eval_set


@router.put("/eval-sets/{eval_set_id}")
async def update_eval_set(eval_set_id: str, request: Request):
    db = await get_db()
    eval_set = await _get_eval_set_or_404(db, eval_set_id)
    body = await parse_body(request, EvalSetUpdate)
    changes = body.model_dump(mode="json", exclude_unset=True)

    grader_type = changes.get("grader_type") or eval_set["grader_type"]
    grader_config = changes.get("grader_config")
    if grader_config is None:
        grader_config = eval_set.get("grader_config") or {}
    errors = validate_grader_config(grader_type, grader_config)
    if errors:
        raise api_error(400, "VALIDATION_ERROR", "; ".join(errors))

    try:
        updated = await eval_set_queries.update_eval_set(db, eval_set_id, changes)
    except aiosqlite.IntegrityError:
        raise api_error(409, "CONFLICT", "An eval set with this name already exists for this prompt")

    # The remote eval carries the old testing criteria; the next run registers a new one.
    grader_changed = (
        updated["grader_type"] != eval_set["grader_type"]
        or updated.get("grader_config") != eval_set.get("grader_config")
    )
    if grader_changed and updated.get("openai_eval_id"):
        logger.info("Grader changed for eval set %s; dropping remote eval %s", eval_set_id, updated["openai_eval_id"])
        await eval_set_queries.set_openai_eval_id(db, eval_set_id, None)
        updated["openai_eval_id"] = None
    return updated


@router.delete("/eval-sets/{eval_set_id}")
async def delete_eval_set(eval_set_id: str):
    db = await get_db()
    await _get_eval_set_or_404(db, eval_set_id)
    await eval_set_queries.delete_eval_set(db, eval_set_id)
    return {"ok": True}


# ── Test cases ──

@router.get("/eval-sets/{eval_set_id}/test-cases")
async def list_test_cases(eval_set_id: str):
    db = await get_db()
    await _get_eval_set_or_404(db, eval_set_id)
    return {"items": await eval_set_queries.list_test_cases(db, eval_set_id)}


@router.post("/eval-sets/{eval_set_id}/test-cases")
async def create_test_case(eval_set_id: str, request: Request):
    db = await get_db()
    await _get_eval_set_or_404(db, eval_set_id)
    body = await parse_body(request, TestCaseCreate)
    return await eval_set_queries.create_test_case(
        db, eval_set_id, body.input_variables, body.expected_output, body.description,
    )


@router.post("/eval-sets/{eval_set_id}/test-cases/import")
async def import_cases(eval_set_id: str, request: Request):
    db = await get_db()
    await _get_eval_set_or_404(db, eval_set_id)
    body = await parse_body(request, CaseImportRequest)
    try:
        created = await import_test_cases(db, eval_set_id, body.content, body.format)
    except CaseImportError as e:
        raise api_error(422, "IMPORT_ERROR", str(e), errors=e.errors)
    return {"imported": len(created), "items": created}


@router.delete("/test-cases/{test_case_id}")
async def delete_test_case(test_case_id: str):
    db = await get_db()
    if not await eval_set_queries.get_test_case(db, test_case_id):
        raise not_found("Test case", test_case_id)
    await eval_set_queries.delete_test_case(db, test_case_id)
    return {"ok": True}


# ── Eval runs ──

@router.get("/eval-sets/{eval_set_id}/runs")
async def list_eval_runs(eval_set_id: str, limit: int = 20):
    db = await get_db()
    await _get_eval_set_or_404(db, eval_set_id)
    runs = await eval_queries.list_eval_runs(db, eval_set_id, limit=limit)
    return {"items": [_with_rate(r) for r in runs]}


@router.post("/eval-sets/{eval_set_id}/runs")
async def create_eval_run(eval_set_id: str, request: Request):
    """Create a run for a prompt version and execute it.

    By default the run executes in the background and the pending run is
    returned immediately; poll ``GET /eval-runs/{id}`` for progress. With
    ``wait`` set the request blocks until the run is terminal.
    """
    db = await get_db()
    eval_set = await _get_eval_set_or_404(db, eval_set_id)
    body = await parse_body(request, EvalRunCreate)

    if body.prompt_version_id:
        version = await prompt_queries.get_version(db, body.prompt_version_id)
        if not version or version["prompt_id"] != eval_set["prompt_id"]:
            raise not_found("Prompt version", body.prompt_version_id)
    else:
        version = await prompt_queries.get_current_version(db, eval_set["prompt_id"])
        if not version:
            raise api_error(400, "VALIDATION_ERROR", "Prompt has no versions to evaluate")

    if not await eval_set_queries.list_test_cases(db, eval_set_id):
        raise api_error(400, "VALIDATION_ERROR", "Eval set has no test cases")

    try:
        client = await build_evals_client(db)
    except AuthenticationError as e:
        raise api_error(422, "API_KEY_MISSING", e.message)

    run_id = await eval_queries.create_eval_run(db, eval_set_id, version["id"])
    logger.info("Created eval run %s for eval set %s", run_id, eval_set_id)

    if body.wait:
        return _with_rate(await run_evaluation(db, run_id, client, wait=True))

    task = asyncio.create_task(run_evaluation(db, run_id, client, wait=True))
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)
    return _with_rate(await eval_queries.get_eval_run(db, run_id))


@router.get("/eval-runs/{run_id}")
async def get_eval_run(run_id: str):
    db = await get_db()
    return _with_rate(await _get_run_or_404(db, run_id))


@router.post("/eval-runs/{run_id}/poll")
async def poll_eval_run(run_id: str):
    """Check the remote run once and record any terminal outcome."""
    db = await get_db()
    await _get_run_or_404(db, run_id)
    try:
        client = await build_evals_client(db)
    except AuthenticationError as e:
        raise api_error(422, "API_KEY_MISSING", e.message)
    try:
        runner = EvaluationRunner(db, client, EvalPollConfig.from_settings(settings))
        run = await runner.poll(run_id)
    finally:
        client.close()
    return _with_rate(run)


@router.get("/eval-runs/{run_id}/results")
async def list_eval_results(run_id: str):
    db = await get_db()
    await _get_run_or_404(db, run_id)
    return {"items": await eval_queries.list_eval_results(db, run_id)}


@router.delete("/eval-runs/{run_id}")
async def delete_eval_run(run_id: str):
    db = await get_db()
    await _get_run_or_404(db, run_id)
    await eval_queries.delete_eval_run(db, run_id)
    return {"ok": True}
