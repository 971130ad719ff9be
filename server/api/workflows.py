"""Admin API routes for workflows and workflow runs."""

from __future__ import annotations

from fastapi import APIRouter, Request

from server.api.common import api_error, not_found, parse_body
from server.config import settings
from server.db.database import get_db
from server.db.queries import workflows as workflow_queries
from server.models.workflow import WorkflowCreate, WorkflowRunRequest, WorkflowUpdate
from server.services.credentials import key_resolvers, resolve_api_key
from server.services.llm_executor import ProviderExecutor
from server.services.workflow_engine import WorkflowEngine, validate_workflow

router = APIRouter(prefix="/api/v1/admin", tags=["workflows"])


async def _get_workflow_or_404(db, workflow_id: str) -> dict:
    workflow = await workflow_queries.get_workflow(db, workflow_id)
    if not workflow:
        raise not_found("Workflow", workflow_id)
    return workflow


async def _check_definition(db, definition: WorkflowCreate) -> None:
    errors = await validate_workflow(db, definition)
    if errors:
        raise api_error(400, "VALIDATION_ERROR", "; ".join(errors), errors=errors)


@router.get("/workflows")
async def list_workflows():
    db = await get_db()
    return {"items": await workflow_queries.list_workflows(db)}


@router.post("/workflows")
async def create_workflow(request: Request):
    db = await get_db()
    body = await parse_body(request, WorkflowCreate)
    await _check_definition(db, body)
    steps = [step.model_dump(exclude_none=True) for step in body.steps]
    return await workflow_queries.create_workflow(db, body.name, steps, body.description)


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str):
    db = await get_db()
    return await _get_workflow_or_404(db, workflow_id)


@router.put("/workflows/{workflow_id}")
async def update_workflow(workflow_id: str, request: Request):
    db = await get_db()
    workflow = await _get_workflow_or_404(db, workflow_id)
    body = await parse_body(request, WorkflowUpdate)

    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if body.steps is not None:
        definition = WorkflowCreate(
            name=body.name or workflow["name"], description=body.description, steps=body.steps,
        )
        await _check_definition(db, definition)
        changes["steps"] = [step.model_dump(exclude_none=True) for step in body.steps]
    return await workflow_queries.update_workflow(db, workflow_id, changes)


@router.delete("/workflows/{workflow_id}")
async def delete_workflow(workflow_id: str):
    db = await get_db()
    await _get_workflow_or_404(db, workflow_id)
    await workflow_queries.delete_workflow(db, workflow_id)
    return {"ok": True}


@router.post("/workflows/{workflow_id}/runs")
async def run_workflow(workflow_id: str, request: Request):
    """Execute the workflow synchronously and return the finished run."""
    db = await get_db()
    await _get_workflow_or_404(db, workflow_id)
    body = await parse_body(request, WorkflowRunRequest)

    if body.provider not in ("openai", "anthropic"):
        raise api_error(400, "VALIDATION_ERROR", "Invalid provider")
    api_key = resolve_api_key(await key_resolvers(db, body.provider, body.api_key))
    try:
        executor = ProviderExecutor(body.provider, api_key, timeout=settings.llm_timeout)
    except ValueError as e:
        raise api_error(400, "VALIDATION_ERROR", str(e))

    engine = WorkflowEngine(db, executor)
    return await engine.run(workflow_id, body.initial_input, body.variables, title=body.title)


@router.get("/workflows/{workflow_id}/runs")
async def list_workflow_runs(workflow_id: str, limit: int = 20):
    db = await get_db()
    await _get_workflow_or_404(db, workflow_id)
    return {"items": await workflow_queries.list_workflow_runs(db, workflow_id, limit=limit)}


@router.get("/workflow-runs/{run_id}")
async def get_workflow_run(run_id: str):
    db = await get_db()
    run = await workflow_queries.get_workflow_run(db, run_id)
    if not run:
        raise not_found("Workflow run", run_id)
    return run
