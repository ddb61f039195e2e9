import contextlib
from pathlib import Path

import pytest
import pytest_asyncio

from agent_inbox.config import clear_settings_cache
from agent_inbox.db import ensure_schema, reset_database_state
from agent_inbox.directory import RecordingActivityLog, SqlAgentDirectory, SqlTicketStore
from agent_inbox.service import MessagingService

ROSTER = ("Max", "Sam", "Leo", "Son")


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8766")
    monkeypatch.setenv("HTTP_PATH", "/mcp/")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("MENTION_ROSTER", "max,sam,leo,son")
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        clear_settings_cache()
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


@pytest_asyncio.fixture
async def seeded(isolated_env):
    """Schema plus the four roster agents and ticket AGT-9 (storage id 1)."""
    await ensure_schema()
    directory = SqlAgentDirectory()
    agents = {}
    for name in ROSTER:
        agents[name.lower()] = await directory.register(name, avatar=f"{name[0]}!")
    ticket = await SqlTicketStore().create("AGT-9", title="Ship the inbox", status="in_progress")
    return {"agents": agents, "ticket": ticket}


@pytest.fixture
def activity_log():
    return RecordingActivityLog()


@pytest.fixture
def service(seeded, activity_log):
    return MessagingService(SqlAgentDirectory(), SqlTicketStore(), activity_log)


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state across tests, even for tests without ``isolated_env``."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()
