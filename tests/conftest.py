"""Shared test fixtures for Promptworks."""

from __future__ import annotations

import json
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

_migrations_dir = Path(__file__).resolve().parent.parent / "server" / "db" / "migrations"
MIGRATION_SQL = "\n".join(
    f.read_text() for f in sorted(_migrations_dir.glob("*.sql"))
)

# Stable IDs for seed data
PROMPT_ID = "prompt-test-001"
PROMPT_SLUG = "greeting"
VERSION_ID = "version-test-001"
EVAL_SET_ID = "evalset-test-001"
TEST_CASE_IDS = ("case-test-001", "case-test-002")

PROMPT_CONTENT = "Say hello to {{name}} in {{language}}."


@pytest_asyncio.fixture
async def db():
    """In-memory SQLite database with schema + seed data."""
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.executescript(MIGRATION_SQL)
    await conn.commit()

    # Seed data
    await conn.execute(
        "INSERT INTO prompts (id, name, slug, description, content, system_message, model, status) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (PROMPT_ID, "Greeting", PROMPT_SLUG, "A greeting prompt", PROMPT_CONTENT,
         "You are friendly.", "gpt-4o", "active"),
    )
    await conn.execute(
        "INSERT INTO prompt_versions (id, prompt_id, version_number, content, system_message, model, change_description) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (VERSION_ID, PROMPT_ID, 1, PROMPT_CONTENT, "You are friendly.", "gpt-4o", "Initial version"),
    )
    await conn.execute(
        "INSERT INTO eval_sets (id, prompt_id, name, grader_type, grader_config) VALUES (?, ?, ?, ?, ?)",
        (EVAL_SET_ID, PROMPT_ID, "smoke", "exact_match", "{}"),
    )
    cases = [
        (TEST_CASE_IDS[0], {"name": "Ada", "language": "French"}, "Bonjour Ada"),
        (TEST_CASE_IDS[1], {"name": "Linus", "language": "Finnish"}, "Hei Linus"),
    ]
    for case_id, inputs, expected in cases:
        await conn.execute(
            "INSERT INTO test_cases (id, eval_set_id, input_variables, expected_output) VALUES (?, ?, ?, ?)",
            (case_id, EVAL_SET_ID, json.dumps(inputs), expected),
        )
    await conn.commit()
    yield conn
    await conn.close()


# ---------------------------------------------------------------------------
# App / client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db):
    """FastAPI app with test DB injected."""
    # Patch database module to return our test DB
    from server.db import database as db_module
    original_db = db_module._db
    db_module._db = db

    from server.main import app as fastapi_app

    yield fastapi_app

    db_module._db = original_db


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def no_env_keys(monkeypatch):
    """Blank out provider keys that may be set in the developer's environment."""
    from server.config import settings
    monkeypatch.setattr(settings, "openai_api_key", "")
    monkeypatch.setattr(settings, "anthropic_api_key", "")
