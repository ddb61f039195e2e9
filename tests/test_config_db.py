from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from agent_inbox import db
from agent_inbox.config import DEFAULT_MENTION_ROSTER, clear_settings_cache, get_settings
from agent_inbox.db import CircuitBreakerOpenError, CircuitState, get_circuit_state, get_db_health_status, retry_on_db_lock
from agent_inbox.utils import iso, preview, ticket_label


def test_settings_defaults(isolated_env, monkeypatch):
    monkeypatch.delenv("MENTION_ROSTER", raising=False)
    clear_settings_cache()
    settings = get_settings()
    assert settings.environment == "test"
    assert settings.messaging.mention_roster == DEFAULT_MENTION_ROSTER
    assert settings.messaging.mention_wildcard == "all"
    assert settings.messaging.comment_preview_chars == 100
    assert settings.messaging.dm_preview_chars == 150
    assert settings.messaging.unread_detail_limit == 10
    assert settings.notifications.cleanup_hours == 24
    assert settings.notifications.clear_read_days == 7
    assert settings.database.pool_size is None


def test_settings_overrides_and_bad_values(isolated_env, monkeypatch):
    monkeypatch.setenv("MENTION_ROSTER", " Ada , GRACE ,, ")
    monkeypatch.setenv("DM_PREVIEW_CHARS", "not-a-number")
    monkeypatch.setenv("ACTIVITY_LOG_ENABLED", "no")
    monkeypatch.setenv("DATABASE_POOL_SIZE", "12")
    clear_settings_cache()
    settings = get_settings()
    assert settings.messaging.mention_roster == ("ada", "grace")
    assert settings.messaging.dm_preview_chars == 150
    assert settings.messaging.activity_log_enabled is False
    assert settings.database.pool_size == 12


def test_preview_and_labels():
    assert preview("short", 10) == "short"
    assert preview("abcdef", 3) == "abc..."
    assert ticket_label("AGT-9", 1) == "AGT-9"
    assert ticket_label(None, 4) == "task-4"
    assert iso(None) is None


class TestRetryOnDbLock:
    @pytest.mark.asyncio
    async def test_retries_lock_errors(self, isolated_env):
        calls = {"value": 0}

        @retry_on_db_lock(max_retries=3, base_delay=0.01)
        async def flaky() -> str:
            calls["value"] += 1
            if calls["value"] < 3:
                raise OperationalError("statement", {}, Exception("database is locked"))
            return "ok"

        assert await flaky() == "ok"
        assert calls["value"] == 3

    @pytest.mark.asyncio
    async def test_non_lock_errors_are_not_retried(self, isolated_env):
        calls = {"value": 0}

        @retry_on_db_lock(max_retries=3, base_delay=0.01)
        async def broken() -> None:
            calls["value"] += 1
            raise OperationalError("statement", {}, Exception("no such table: messages"))

        with pytest.raises(OperationalError):
            await broken()
        assert calls["value"] == 1

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self, isolated_env):
        @retry_on_db_lock(max_retries=0, base_delay=0.01)
        async def always_locked() -> None:
            raise OperationalError("statement", {}, Exception("database is locked"))

        for _ in range(db._CIRCUIT_BREAKER_THRESHOLD):
            with pytest.raises(OperationalError):
                await always_locked()
        assert get_circuit_state() == CircuitState.OPEN
        assert get_db_health_status()["circuit_state"] == "open"
        with pytest.raises(CircuitBreakerOpenError):
            await always_locked()

        db.reset_database_state()
        assert get_circuit_state() == CircuitState.CLOSED
