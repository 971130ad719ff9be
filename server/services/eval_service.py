"""Eval run orchestration against the OpenAI Evals API.

A run moves ``pending -> running -> completed | failed``. ``execute`` submits
the run (registering the eval definition on first use and uploading the test
cases as JSONL); ``poll`` performs one caller-driven status check;
``wait_for_completion`` polls on a bounded schedule.
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import aiosqlite

from server.clients.evals_client import EvalsClient, EvalsClientConfig
from server.clients.exceptions import APIError, RateLimitError
from server.config import settings
from server.db.queries import eval_runs as eval_queries
from server.db.queries import eval_sets as eval_set_queries
from server.db.queries import prompts as prompt_queries
from server.models.status import InvalidTransitionError, RunStatus
from server.services import parameter_parser
from server.services.credentials import key_resolvers

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4"
SAMPLE_OUTPUT = "{{ sample.output_text }}"
EXPECTED_OUTPUT = "{{ item.expected_output }}"


class EvalRunError(Exception):
    """The run cannot be executed or polled in its current state."""


class EvalSetNotReadyError(EvalRunError):
    """The eval set has nothing to evaluate."""


@dataclass(frozen=True)
class EvalPollConfig:
    interval: float = 5.0
    max_attempts: int = 60

    @classmethod
    def from_settings(cls, settings) -> EvalPollConfig:
        return cls(
            interval=settings.eval_poll_interval_seconds,
            max_attempts=settings.eval_poll_max_attempts,
        )


def _now() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------


def build_data_source_config(template: str) -> dict:
    """Item schema: one required string per template parameter plus ``expected_output``."""
    properties = {name: {"type": "string"} for name in parameter_parser.parameter_names(template)}
    properties["expected_output"] = {"type": "string"}
    return {
        "type": "custom",
        "item_schema": {
            "type": "object",
            "properties": properties,
            "required": list(properties),
        },
        "include_sample_schema": True,
    }


def build_testing_criteria(grader_type: str, grader_config: dict | None = None) -> list[dict]:
    """Map an eval set grader to Evals API ``string_check`` criteria."""
    grader_config = grader_config or {}
    if grader_type == "regex":
        return [{
            "type": "string_check",
            "name": "Regex match",
            "input": SAMPLE_OUTPUT,
            "operation": "regex",
            "reference": grader_config.get("pattern", ""),
        }]
    if grader_type == "contains":
        return [{
            "type": "string_check",
            "name": "Contains text",
            "input": SAMPLE_OUTPUT,
            "operation": "contains",
            "reference": EXPECTED_OUTPUT,
        }]
    if grader_type == "json_schema":
        # No JSON schema grader upstream; structured output is compared verbatim.
        return [{
            "type": "string_check",
            "name": "JSON format validation",
            "input": SAMPLE_OUTPUT,
            "operation": "eq",
            "reference": EXPECTED_OUTPUT,
        }]
    return [{
        "type": "string_check",
        "name": "Exact match",
        "input": SAMPLE_OUTPUT,
        "operation": "eq",
        "reference": EXPECTED_OUTPUT,
    }]


def build_test_data_lines(test_cases: list[dict]) -> list[str]:
    """One JSONL line per test case: inputs flattened onto the item."""
    lines = []
    for test_case in test_cases:
        item = dict(test_case["input_variables"])
        item["expected_output"] = test_case["expected_output"]
        lines.append(json.dumps({"item": item}))
    return lines


def build_data_source(version: dict, file_id: str) -> dict:
    """Completions data source rendering the version template per item."""
    return {
        "type": "completions",
        "model": version.get("model") or DEFAULT_MODEL,
        "input_messages": {
            "type": "template",
            "template": [
                {"role": "system", "content": version.get("system_message") or ""},
                {"role": "user", "content": parameter_parser.to_item_template(version["content"])},
            ],
        },
        "source": {"type": "file_id", "id": file_id},
    }


def _required_id(record: dict, what: str) -> str:
    value = record.get("id") if isinstance(record, dict) else None
    if not value:
        raise APIError(f"{what} response did not include an id")
    return value


def output_item_passed(item: dict) -> bool:
    """An item passes when every grader passed; without grader results, by its status."""
    results = item.get("results") or []
    if results:
        return all(bool(r.get("passed")) for r in results)
    return item.get("status") == "pass"


def output_item_text(item: dict) -> str | None:
    for message in (item.get("sample") or {}).get("output") or []:
        if message.get("content"):
            return message["content"]
    return None


def output_item_error(item: dict) -> str | None:
    error = (item.get("sample") or {}).get("error")
    if isinstance(error, dict):
        return error.get("message") or None
    return error or None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class EvaluationRunner:
    """Drives one eval run through its lifecycle.

    The Evals client is synchronous; calls run in a worker thread so the
    awaiting coroutine blocks on them without stalling the event loop.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        client: EvalsClient,
        poll_config: EvalPollConfig | None = None,
    ):
        self._db = db
        self._client = client
        self._poll_config = poll_config or EvalPollConfig()

    async def execute(self, run_id: str) -> dict:
        """Submit the run. Any failure after ``running`` leaves it ``failed`` and re-raises."""
        run = await self._get_run(run_id)
        eval_set = await eval_set_queries.get_eval_set(self._db, run["eval_set_id"])
        version = await prompt_queries.get_version(self._db, run["prompt_version_id"])
        if not eval_set or not version:
            raise EvalRunError("Eval run references a missing eval set or prompt version")
        prompt = await prompt_queries.get_prompt(self._db, version["prompt_id"])

        await eval_queries.transition_eval_run(
            self._db, run_id, RunStatus.RUNNING, started_at=_now()
        )
        logger.info("Eval run %s started (eval set %s, version %s)", run_id, eval_set["id"], version["version_number"])

        try:
            test_cases = await eval_set_queries.list_test_cases(self._db, eval_set["id"])
            if not test_cases:
                raise EvalSetNotReadyError("Eval set has no test cases")

            eval_id = await self._ensure_remote_eval(prompt, eval_set, version)

            file_id = await self._upload_test_data(run_id, test_cases)
            await eval_queries.update_eval_run(self._db, run_id, openai_file_id=file_id)

            remote_run = await asyncio.to_thread(
                self._client.create_run,
                eval_id=eval_id,
                name=f"Run at {_now()}",
                data_source=build_data_source(version, file_id),
            )
            await eval_queries.update_eval_run(
                self._db, run_id,
                openai_run_id=_required_id(remote_run, "Eval run"),
                report_url=remote_run.get("report_url"),
            )
        except (APIError, EvalRunError) as e:
            logger.warning("Eval run %s failed: %s", run_id, e)
            await eval_queries.transition_eval_run(
                self._db, run_id, RunStatus.FAILED, error_message=str(e)[:2000]
            )
            raise
        except Exception as e:
            logger.exception("Eval run %s failed", run_id)
            await eval_queries.transition_eval_run(
                self._db, run_id, RunStatus.FAILED, error_message=str(e)[:2000]
            )
            raise

        return await eval_queries.get_eval_run(self._db, run_id)

    async def poll(self, run_id: str) -> dict:
        """Check the remote run once and apply any terminal outcome.

        Several pollers may watch the same run. Only the first terminal write
        lands; the others return the run as that writer left it.
        """
        run = await self._get_run(run_id)
        if RunStatus(run["status"]).is_terminal or not run.get("openai_run_id"):
            return run

        eval_set = await eval_set_queries.get_eval_set(self._db, run["eval_set_id"])
        eval_id = eval_set["openai_eval_id"]
        try:
            remote = await asyncio.to_thread(
                self._client.get_run,
                eval_id=eval_id,
                run_id=run["openai_run_id"],
            )
        except RateLimitError as e:
            logger.warning("Eval run %s poll throttled: %s", run_id, e)
            return run
        except APIError as e:
            logger.warning("Eval run %s poll failed: %s", run_id, e)
            return await self._finish(run_id, RunStatus.FAILED, error_message=str(e)[:2000])

        report_url = remote.get("report_url")
        if report_url and report_url != run.get("report_url"):
            await eval_queries.update_eval_run(self._db, run_id, report_url=report_url)

        remote_status = remote.get("status")
        if remote_status == "completed":
            counts = remote.get("result_counts") or {}
            try:
                run = await eval_queries.transition_eval_run(
                    self._db, run_id, RunStatus.COMPLETED,
                    completed_at=_now(),
                    total_count=counts.get("total") or 0,
                    passed_count=counts.get("passed") or 0,
                    failed_count=counts.get("failed") or 0,
                )
            except InvalidTransitionError:
                logger.info("Eval run %s was settled by another poller", run_id)
                return await self._get_run(run_id)
            logger.info("Eval run %s completed: %s", run_id, counts)
            await self._record_results(run_id, eval_set["id"], eval_id, run["openai_run_id"])
            return run
        if remote_status in ("failed", "canceled"):
            error = remote.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            return await self._finish(
                run_id, RunStatus.FAILED, error_message=error or f"Eval run {remote_status}"
            )

        return await eval_queries.get_eval_run(self._db, run_id)

    async def wait_for_completion(self, run_id: str) -> dict:
        """Poll every ``interval`` seconds, at most ``max_attempts`` times."""
        run = await self._get_run(run_id)
        if run["status"] == RunStatus.PENDING.value:
            raise EvalRunError("Eval run has not been started")

        for attempt in range(1, self._poll_config.max_attempts + 1):
            run = await self.poll(run_id)
            if RunStatus(run["status"]).is_terminal:
                return run
            if attempt < self._poll_config.max_attempts:
                await asyncio.sleep(self._poll_config.interval)

        logger.warning("Eval run %s timed out after %d polls", run_id, self._poll_config.max_attempts)
        return await self._finish(run_id, RunStatus.FAILED, error_message="Timeout waiting for eval results")

    async def _finish(self, run_id: str, target: RunStatus, **fields) -> dict:
        try:
            return await eval_queries.transition_eval_run(self._db, run_id, target, **fields)
        except InvalidTransitionError:
            logger.info("Eval run %s was settled by another poller", run_id)
            return await self._get_run(run_id)

    async def _record_results(self, run_id: str, eval_set_id: str, eval_id: str, remote_run_id: str) -> None:
        """Store one result per graded item. Listing failures leave the aggregate counts alone."""
        try:
            items = await asyncio.to_thread(
                self._client.list_output_items, eval_id=eval_id, run_id=remote_run_id
            )
        except APIError as e:
            logger.warning("Eval run %s: per-case results unavailable: %s", run_id, e)
            return

        # Items are numbered by their line in the uploaded file, which follows list order.
        test_cases = await eval_set_queries.list_test_cases(self._db, eval_set_id)
        for item in items:
            index = item.get("datasource_item_id")
            if not isinstance(index, int) or not 0 <= index < len(test_cases):
                continue
            await eval_queries.create_eval_result(
                self._db, run_id, test_cases[index]["id"],
                passed=output_item_passed(item),
                actual_output=output_item_text(item),
                error_message=output_item_error(item),
            )

    async def _get_run(self, run_id: str) -> dict:
        run = await eval_queries.get_eval_run(self._db, run_id)
        if not run:
            raise LookupError(f"Eval run not found: {run_id}")
        return run

    async def _ensure_remote_eval(self, prompt: dict, eval_set: dict, version: dict) -> str:
        if eval_set.get("openai_eval_id"):
            return eval_set["openai_eval_id"]

        record = await asyncio.to_thread(
            self._client.create_eval,
            name=f"{prompt['name']} - {eval_set['name']}",
            data_source_config=build_data_source_config(version["content"]),
            testing_criteria=build_testing_criteria(eval_set["grader_type"], eval_set.get("grader_config")),
        )
        eval_id = _required_id(record, "Eval")
        await eval_set_queries.set_openai_eval_id(self._db, eval_set["id"], eval_id)
        logger.info("Registered eval %s for eval set %s", eval_id, eval_set["id"])
        return eval_id

    async def _upload_test_data(self, run_id: str, test_cases: list[dict]) -> str:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / f"eval_{run_id}.jsonl"
            path.write_text("\n".join(build_test_data_lines(test_cases)) + "\n")
            record = await asyncio.to_thread(self._client.upload_file, path)
        return _required_id(record, "File upload")


async def build_evals_client(db: aiosqlite.Connection, api_key: str | None = None) -> EvalsClient:
    """Client keyed from the explicit key, the stored setting, then the environment."""
    return EvalsClient(
        key_resolvers=await key_resolvers(db, "openai", api_key),
        config=EvalsClientConfig.from_settings(settings),
    )


async def run_evaluation(
    db: aiosqlite.Connection,
    run_id: str,
    client: EvalsClient,
    wait: bool = True,
) -> dict:
    """Execute a run and, when ``wait`` is set, poll it to a terminal state.

    Errors are already persisted on the run, so they are logged, not raised.
    """
    runner = EvaluationRunner(db, client, EvalPollConfig.from_settings(settings))
    try:
        run = await runner.execute(run_id)
        if wait:
            run = await runner.wait_for_completion(run_id)
        return run
    except (APIError, EvalRunError) as e:
        logger.info("Eval run %s ended with error: %s", run_id, e)
        return await eval_queries.get_eval_run(db, run_id)
    finally:
        client.close()
