"""Runtime configuration for the Penguin Bank MCP server."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

LOGGER = logging.getLogger("penguin_bank.config")

DEFAULT_ALLOWED_ORIGINS = (
    "https://claude.ai",
    "https://penguin-bank-cloud.netlify.app",
    "http://localhost:3000",
)

DEFAULT_DEMO_USER_ID = "550e8400-e29b-41d4-a716-446655440001"

# Must stay below the 30s request limit of typical hosting platforms.
TOOL_TIMEOUT_SECONDS = 25.0
SESSION_CAPACITY = 100


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


def _get_origins() -> Tuple[str, ...]:
    raw = os.getenv("ALLOWED_ORIGINS")
    if not raw:
        return DEFAULT_ALLOWED_ORIGINS
    origins = tuple(item.strip().rstrip("/") for item in raw.split(",") if item.strip())
    return origins or DEFAULT_ALLOWED_ORIGINS


def _db_params() -> Dict[str, Any]:
    dsn = os.getenv("DATABASE_URL")
    if dsn:
        return {"dsn": dsn}
    return {
        "host": os.getenv("DB_HOST", "localhost"),
        "port": _get_int("DB_PORT", 5432),
        "database": os.getenv("DB_NAME", "penguin_bank"),
        "user": os.getenv("DB_USER", "penguin"),
        "password": os.getenv("DB_PASSWORD", ""),
    }


@dataclass
class Settings:
    """Server settings, normally read from the environment."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"
    log_dir: Optional[str] = None
    allowed_origins: Tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    data_backend: str = "postgres"
    db: Dict[str, Any] = field(default_factory=dict)
    demo_user_id: str = DEFAULT_DEMO_USER_ID
    tool_timeout_seconds: float = TOOL_TIMEOUT_SECONDS
    session_capacity: int = SESSION_CAPACITY
    oauth_issuer: Optional[str] = None

    @classmethod
    def from_environment(cls) -> "Settings":
        backend = os.getenv("PENGUIN_DATA_BACKEND", "postgres").strip().lower()
        if backend not in {"postgres", "memory"}:
            LOGGER.warning("Unknown PENGUIN_DATA_BACKEND=%r, using postgres", backend)
            backend = "postgres"
        return cls(
            host=os.getenv("MCP_HOST", "127.0.0.1"),
            port=_get_int("MCP_PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "info"),
            log_dir=os.getenv("LOG_DIR") or None,
            allowed_origins=_get_origins(),
            data_backend=backend,
            db=_db_params(),
            demo_user_id=os.getenv("DEMO_USER_ID", DEFAULT_DEMO_USER_ID),
            tool_timeout_seconds=_get_float("TOOL_TIMEOUT_SECONDS", TOOL_TIMEOUT_SECONDS),
            session_capacity=max(1, _get_int("SESSION_CAPACITY", SESSION_CAPACITY)),
            oauth_issuer=os.getenv("OAUTH_ISSUER") or None,
        )
