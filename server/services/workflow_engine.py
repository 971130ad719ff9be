"""Workflow execution: run declarative prompt steps in order, threading outputs forward."""

from __future__ import annotations

import logging
import re
import time

import aiosqlite
from pydantic import ValidationError

from server.db.queries import prompts as prompt_queries
from server.db.queries import workflows as workflow_queries
from server.models.status import RunStatus
from server.models.workflow import InputBinding, StepCondition, WorkflowCreate, WorkflowStep
from server.services import parameter_parser
from server.services.llm_executor import LLMExecutionError, LLMExecutor

logger = logging.getLogger(__name__)

SKIPPED = {"status": "skipped"}


class WorkflowError(Exception):
    """A step could not be resolved (bad reference, missing prompt, bad definition)."""


def load_steps(raw_steps: list[dict]) -> list[WorkflowStep]:
    try:
        return [WorkflowStep.model_validate(step) for step in raw_steps]
    except ValidationError as e:
        raise WorkflowError(f"Invalid workflow step definition: {e}")


async def validate_workflow(db: aiosqlite.Connection, workflow: WorkflowCreate) -> list[str]:
    """Return errors for step prompts that do not exist and for forward step references."""
    errors = []
    seen: set[str] = set()
    for step in workflow.steps:
        if not await prompt_queries.get_prompt_by_slug(db, step.prompt):
            errors.append(f"Referenced prompt '{step.prompt}' does not exist")
        for var, binding in step.inputs.items():
            if binding.source == "step" and binding.key not in seen:
                errors.append(f"Step '{step.key}' input '{var}' references unknown or later step '{binding.key}'")
        seen.add(step.key)
    return errors


def evaluate_condition(condition: StepCondition | None, state: dict) -> bool:
    """True when the step should run. A missing condition always passes."""
    if condition is None:
        return True

    present = condition.ref in state and state[condition.ref] is not None
    actual = "" if not present else str(state[condition.ref])
    expected = condition.value or ""

    if condition.operator == "exists":
        return present and actual != ""
    if condition.operator == "not_exists":
        return not present or actual == ""
    if condition.operator == "equals":
        return present and actual == expected
    if condition.operator == "not_equals":
        return not present or actual != expected
    if condition.operator == "contains":
        return present and expected in actual
    if condition.operator == "not_contains":
        return not present or expected not in actual
    if condition.operator == "matches":
        try:
            return present and re.search(expected, actual) is not None
        except re.error as e:
            raise WorkflowError(f"Invalid pattern in condition on '{condition.ref}': {e}")
    raise WorkflowError(f"Unknown condition operator: {condition.operator}")


def resolve_inputs(step: WorkflowStep, state: dict, initial: dict, outputs: dict, previous: str) -> dict:
    """Bind the step's variables. Without explicit inputs the whole state is offered."""
    if not step.inputs:
        return dict(state)

    bindings = {}
    for var, binding in step.inputs.items():
        bindings[var] = _resolve_binding(step.key, var, binding, initial, outputs, previous)
    return bindings


def _resolve_binding(
    step_key: str, var: str, binding: InputBinding, initial: dict, outputs: dict, previous: str
) -> str:
    if binding.source == "literal":
        return binding.value
    if binding.source == "previous":
        return previous
    if binding.source == "input":
        key = binding.key or var
        if key not in initial:
            raise WorkflowError(f"Step '{step_key}' input '{var}' references missing initial variable '{key}'")
        return initial[key]
    if binding.key not in outputs:
        raise WorkflowError(f"Step '{step_key}' input '{var}' references step '{binding.key}' which produced no output")
    return outputs[binding.key]


class WorkflowEngine:
    """Executes a stored workflow and persists a workflow run for it."""

    def __init__(self, db: aiosqlite.Connection, executor: LLMExecutor):
        self._db = db
        self._executor = executor

    async def run(
        self,
        workflow_id: str,
        initial_input: str = "",
        variables: dict | None = None,
        title: str | None = None,
    ) -> dict:
        """Run every step and return the persisted workflow run.

        Step failures are recorded on the run (``failed`` + error message +
        partial results) rather than raised.
        """
        workflow = await workflow_queries.get_workflow(self._db, workflow_id)
        if not workflow:
            raise LookupError(f"Workflow not found: {workflow_id}")

        variables = {str(k): "" if v is None else str(v) for k, v in (variables or {}).items()}
        run_id = await workflow_queries.create_workflow_run(
            self._db, workflow_id, initial_input, variables, title=title
        )
        await workflow_queries.transition_workflow_run(self._db, run_id, RunStatus.RUNNING)
        logger.info("Workflow run %s started for workflow '%s'", run_id, workflow["name"])

        start_time = time.monotonic()
        initial = {**variables, "input": initial_input}
        state = dict(initial)
        outputs: dict[str, str] = {}
        results: dict[str, dict] = {}
        previous = initial_input

        try:
            for step in load_steps(workflow["steps"]):
                if not evaluate_condition(step.condition, state):
                    logger.debug("Workflow run %s: step '%s' skipped", run_id, step.key)
                    results[step.key] = dict(SKIPPED)
                    continue

                result = await self._execute_step(step, state, initial, outputs, previous)
                results[step.key] = result
                previous = result["output"]
                outputs[step.key] = previous
                state[step.key] = previous
                state["input"] = previous
                state["output"] = previous
        except (WorkflowError, LLMExecutionError, ValueError) as e:
            return await self._finish_failed(run_id, results, start_time, str(e))
        except Exception as e:
            logger.exception("Workflow run %s failed", run_id)
            return await self._finish_failed(run_id, results, start_time, str(e))

        execution_time = round(time.monotonic() - start_time, 3)
        logger.info("Workflow run %s completed in %.3fs", run_id, execution_time)
        return await workflow_queries.transition_workflow_run(
            self._db, run_id, RunStatus.COMPLETED,
            results=results,
            final_output=previous,
            execution_time=execution_time,
        )

    async def _execute_step(
        self, step: WorkflowStep, state: dict, initial: dict, outputs: dict, previous: str
    ) -> dict:
        prompt = await prompt_queries.get_prompt_by_slug(self._db, step.prompt)
        if not prompt:
            raise WorkflowError(f"Prompt '{step.prompt}' not found")

        bindings = resolve_inputs(step, state, initial, outputs, previous)
        rendered = parameter_parser.substitute(prompt["content"], bindings)

        response = await self._executor.execute(
            rendered,
            system_message=parameter_parser.substitute(prompt.get("system_message"), bindings),
            model=prompt.get("model"),
            temperature=prompt.get("temperature"),
            max_tokens=prompt.get("max_tokens"),
        )
        return {
            "status": "completed",
            "prompt": step.prompt,
            "output": response.response,
            "token_count": response.token_count,
            "model": response.model,
        }

    async def _finish_failed(self, run_id: str, results: dict, start_time: float, message: str) -> dict:
        logger.warning("Workflow run %s failed: %s", run_id, message)
        return await workflow_queries.transition_workflow_run(
            self._db, run_id, RunStatus.FAILED,
            results=results,
            execution_time=round(time.monotonic() - start_time, 3),
            error_message=message[:2000] or "Workflow step failed",
        )
