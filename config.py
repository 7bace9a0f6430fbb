"""Application-wide configuration helpers and constants."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")


logger = logging.getLogger(__name__)


def _clean_text(value: str | None) -> str:
    """Return ``value`` stripped of surrounding whitespace."""

    if value is None:
        return ""
    return value.strip()


def _path_from(env_value: str | None, default: str | Path) -> Path:
    """Resolve a filesystem path using an environment override when provided."""

    text = _clean_text(env_value)
    candidate = Path(text) if text else Path(default)
    candidate = candidate.expanduser()
    if candidate.is_absolute():
        try:
            return candidate.resolve()
        except (OSError, RuntimeError):  # pragma: no cover - fallback for exotic paths
            return candidate
    return candidate


def _coerce_positive_float(value: str | None, default: float) -> float:
    """Return ``value`` coerced to a positive float or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = float(text)
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_positive_int(value: str | None, default: int) -> int:
    """Return ``value`` coerced to a positive integer or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = int(float(text))
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_log_level(value: str | None, default: int = logging.INFO) -> int:
    """Return a ``logging`` level for names such as ``debug`` or ``WARNING``."""

    text = _clean_text(value).upper()
    if not text:
        return default
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else default


LOG_DIR_PATH: Final[Path] = _path_from(os.environ.get("LOG_DIR"), BASE_DIR / "logs")
LOG_DIR: Final[str] = os.fspath(LOG_DIR_PATH)
LOG_FILE_PATH: Final[Path] = _path_from(
    os.environ.get("LOG_FILE"), LOG_DIR_PATH / "import.log"
)
LOG_FILE: Final[str] = os.fspath(LOG_FILE_PATH)
LOG_LEVEL: Final[int] = _coerce_log_level(os.environ.get("LOG_LEVEL"))


def _build_db_dsn() -> str:
    """Return the database DSN, defaulting to a SQLite file beside the code."""

    configured = _clean_text(os.environ.get("DB_DSN"))
    if configured:
        return configured
    sqlite_path = _path_from(None, BASE_DIR / "games.db").resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


DB_DSN: Final[str] = _build_db_dsn()
DB_CONNECT_TIMEOUT_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("DB_CONNECT_TIMEOUT"), 10.0
)

DEFAULT_IGDB_BASE_URL: Final[str] = "https://api.igdb.com/v4"
DEFAULT_TWITCH_TOKEN_URL: Final[str] = "https://id.twitch.tv/oauth2/token"
DEFAULT_TWITCH_VALIDATE_URL: Final[str] = "https://id.twitch.tv/oauth2/validate"
DEFAULT_HLTB_BASE_URL: Final[str] = "https://hltb-proxy.fly.dev/v1"
DEFAULT_IGDB_USER_AGENT: Final[str] = "game-metadata-importer/0.1"

IGDB_CLIENT_ID: Final[str] = _clean_text(os.environ.get("IGDB_CLIENT_ID"))
IGDB_CLIENT_SECRET: Final[str] = _clean_text(os.environ.get("IGDB_CLIENT_SECRET"))
IGDB_BASE_URL: Final[str] = (
    _clean_text(os.environ.get("IGDB_BASE_URL")) or DEFAULT_IGDB_BASE_URL
)
IGDB_USER_AGENT: Final[str] = (
    _clean_text(os.environ.get("IGDB_USER_AGENT")) or DEFAULT_IGDB_USER_AGENT
)
TWITCH_TOKEN_URL: Final[str] = (
    _clean_text(os.environ.get("TWITCH_TOKEN_URL")) or DEFAULT_TWITCH_TOKEN_URL
)
TWITCH_VALIDATE_URL: Final[str] = (
    _clean_text(os.environ.get("TWITCH_VALIDATE_URL")) or DEFAULT_TWITCH_VALIDATE_URL
)
HLTB_BASE_URL: Final[str] = (
    _clean_text(os.environ.get("HLTB_BASE_URL")) or DEFAULT_HLTB_BASE_URL
)

HTTP_TIMEOUT_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("HTTP_TIMEOUT"), 8.0
)
IGDB_MAX_RETRIES: Final[int] = _coerce_positive_int(
    os.environ.get("IGDB_MAX_RETRIES"), 3
)
IGDB_RETRY_BACKOFF_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("IGDB_RETRY_BACKOFF"), 0.5
)


def validate_igdb_credentials() -> bool:
    """Return whether IGDB credentials are configured, logging any that are missing."""

    missing = [
        name
        for name, value in (
            ("IGDB_CLIENT_ID", IGDB_CLIENT_ID),
            ("IGDB_CLIENT_SECRET", IGDB_CLIENT_SECRET),
        )
        if not value
    ]

    if missing:
        logger.error(
            "Missing required IGDB credentials; set %s.", " and ".join(missing)
        )

    return not missing


__all__ = [
    "BASE_DIR",
    "DB_CONNECT_TIMEOUT_SECONDS",
    "DB_DSN",
    "DEFAULT_HLTB_BASE_URL",
    "DEFAULT_IGDB_BASE_URL",
    "DEFAULT_IGDB_USER_AGENT",
    "DEFAULT_TWITCH_TOKEN_URL",
    "DEFAULT_TWITCH_VALIDATE_URL",
    "HLTB_BASE_URL",
    "HTTP_TIMEOUT_SECONDS",
    "IGDB_BASE_URL",
    "IGDB_CLIENT_ID",
    "IGDB_CLIENT_SECRET",
    "IGDB_MAX_RETRIES",
    "IGDB_RETRY_BACKOFF_SECONDS",
    "IGDB_USER_AGENT",
    "LOG_DIR",
    "LOG_DIR_PATH",
    "LOG_FILE",
    "LOG_FILE_PATH",
    "LOG_LEVEL",
    "TWITCH_TOKEN_URL",
    "TWITCH_VALIDATE_URL",
    "validate_igdb_credentials",
]
