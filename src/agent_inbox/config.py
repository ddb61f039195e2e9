"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")

DEFAULT_MENTION_ROSTER: Final[tuple[str, ...]] = ("max", "sam", "leo", "son")


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    path: str
    cors_enabled: bool
    cors_origins: list[str]


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool
    pool_size: int | None
    max_overflow: int | None
    pool_timeout: int | None


@dataclass(slots=True, frozen=True)
class MessagingSettings:
    """Mention parsing, preview rendering and unread listing knobs."""

    mention_roster: tuple[str, ...]
    mention_wildcard: str
    comment_preview_chars: int
    dm_preview_chars: int
    dm_ticket_preview_chars: int
    urgent_marker: str
    default_avatar: str
    unread_detail_limit: int
    recent_limit: int
    activity_log_enabled: bool


@dataclass(slots=True, frozen=True)
class NotificationSettings:
    """Notification retention configuration.

    The cleanup worker runs inside the HTTP app when enabled and deletes
    notifications older than ``cleanup_hours`` every ``cleanup_interval_seconds``.

    Example .env:
        NOTIFICATIONS_CLEANUP_ENABLED=true
        NOTIFICATIONS_CLEANUP_HOURS=48
    """

    cleanup_enabled: bool
    cleanup_interval_seconds: int
    cleanup_hours: int
    clear_read_days: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    database: DatabaseSettings
    messaging: MessagingSettings
    notifications: NotificationSettings
    # Logging
    log_rich_enabled: bool
    log_level: str
    log_json_enabled: bool
    tools_log_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _int_optional(value: str) -> int | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except (TypeError, ValueError):
        return None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    def _csv(name: str, default: str) -> list[str]:
        raw = _decouple_config(name, default=default)
        return [part.strip() for part in raw.split(",") if part.strip()]

    cors_default = "true" if environment.lower() == "development" else "false"
    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8766"), default=8766),
        path=_decouple_config("HTTP_PATH", default="/mcp/"),
        cors_enabled=_bool(_decouple_config("HTTP_CORS_ENABLED", default=cors_default), default=cors_default == "true"),
        cors_origins=_csv("HTTP_CORS_ORIGINS", default=""),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./agent_inbox.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        pool_size=_int_optional(_decouple_config("DATABASE_POOL_SIZE", default="")),
        max_overflow=_int_optional(_decouple_config("DATABASE_MAX_OVERFLOW", default="")),
        pool_timeout=_int_optional(_decouple_config("DATABASE_POOL_TIMEOUT", default="")),
    )

    roster = tuple(name.lower() for name in _csv("MENTION_ROSTER", default=",".join(DEFAULT_MENTION_ROSTER)))
    messaging_settings = MessagingSettings(
        mention_roster=roster or DEFAULT_MENTION_ROSTER,
        mention_wildcard=(_decouple_config("MENTION_WILDCARD", default="all").strip().lower() or "all"),
        comment_preview_chars=_int(_decouple_config("COMMENT_PREVIEW_CHARS", default="100"), default=100),
        dm_preview_chars=_int(_decouple_config("DM_PREVIEW_CHARS", default="150"), default=150),
        dm_ticket_preview_chars=_int(_decouple_config("DM_TICKET_PREVIEW_CHARS", default="100"), default=100),
        urgent_marker=_decouple_config("URGENT_MARKER", default="🔴 Urgent"),
        default_avatar=_decouple_config("DEFAULT_AVATAR", default="🤖"),
        unread_detail_limit=_int(_decouple_config("UNREAD_DETAIL_LIMIT", default="10"), default=10),
        recent_limit=_int(_decouple_config("RECENT_LIMIT", default="20"), default=20),
        activity_log_enabled=_bool(_decouple_config("ACTIVITY_LOG_ENABLED", default="true"), default=True),
    )

    notification_settings = NotificationSettings(
        cleanup_enabled=_bool(_decouple_config("NOTIFICATIONS_CLEANUP_ENABLED", default="false"), default=False),
        cleanup_interval_seconds=_int(
            _decouple_config("NOTIFICATIONS_CLEANUP_INTERVAL_SECONDS", default="3600"), default=3600
        ),
        cleanup_hours=_int(_decouple_config("NOTIFICATIONS_CLEANUP_HOURS", default="24"), default=24),
        clear_read_days=_int(_decouple_config("NOTIFICATIONS_CLEAR_READ_DAYS", default="7"), default=7),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        database=database_settings,
        messaging=messaging_settings,
        notifications=notification_settings,
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        tools_log_enabled=_bool(_decouple_config("TOOLS_LOG_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
