"""Configuration constants and environment bootstrap utilities."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv  # type: ignore[import-not-found]

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent
ENV_PATH = PROJECT_ROOT / ".env"

EXPORT_DOMAINS: Tuple[str, ...] = (
    "services",
    "invoices",
    "customers",
    "vehicles",
    "properties",
    "inquiries",
    "emergencies",
    "payments",
    "staff",
    "messages",
)
EXPORT_FORMATS: Tuple[str, ...] = ("csv", "pdf")
DEFAULT_EXPORT_DOMAIN = "services"
DEFAULT_EXPORT_FORMAT = "csv"
DEFAULT_LOCALE = "en-US"
DEFAULT_CURRENCY = "USD"

EXPORT_PAGE_SIZE = 500
BUFFERED_EXPORT_LIMIT = 2000

# scope -> (limit, window seconds)
RATE_LIMIT_SCOPES: Dict[str, Tuple[int, int]] = {
    "write": (30, 60),
    "auth": (5, 300),
    "upload": (10, 60),
    "export": (20, 60),
}
# in-memory limiter drops expired buckets once it tracks this many keys
RATE_LIMIT_SWEEP_THRESHOLD = 1024
RATE_LIMIT_SWEEP_INTERVAL_MS = 1000

_ALL_DOMAINS: FrozenSet[str] = frozenset(EXPORT_DOMAINS)
EXPORT_ROLE_DOMAINS: Dict[str, FrozenSet[str]] = {
    "ADMIN": _ALL_DOMAINS,
    "CEO": _ALL_DOMAINS,
    "MANAGER": _ALL_DOMAINS,
    "STAFF_AUTO": frozenset(
        {
            "services",
            "invoices",
            "customers",
            "vehicles",
            "emergencies",
            "payments",
            "messages",
        }
    ),
    "STAFF_PROPERTY": frozenset(
        {"properties", "customers", "inquiries", "invoices", "payments", "messages"}
    ),
    "HR": frozenset({"staff"}),
    "CUSTOMER": frozenset(),
}
EXPORT_MANAGER_ROLES: Tuple[str, ...] = ("ADMIN", "CEO", "MANAGER")

TOKEN_DEFAULT_TTL = 900  # seconds
TOKEN_MIN_TTL = 60
TOKEN_MAX_TTL = 3600
DEV_EXPORT_SECRET = "export-secret"

ANALYTICS_DEFAULT_DAYS = 30
ANALYTICS_MAX_DAYS = 90
EXPORT_JOB_LIST_LIMIT = 25

SESSION_LOOKUP_TIMEOUT = 5  # seconds
AUDIT_WORKERS = 2

# PDF table geometry, in points
PDF_MARGIN = 40
PDF_ROW_HEIGHT = 16
PDF_HEADER_HEIGHT = 20
PDF_TITLE_GAP = 26
PDF_CELL_CHAR_LIMIT = 110


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///export_service.db"
    redis_url: Optional[str] = None
    redis_enabled: bool = True
    export_secret: str = DEV_EXPORT_SECRET
    session_lookup_url: Optional[str] = None
    session_lookup_timeout: float = SESSION_LOOKUP_TIMEOUT


def load_environment() -> None:
    """Load variables from the optional project-level ``.env`` file."""
    if ENV_PATH.exists():
        load_dotenv(dotenv_path=ENV_PATH)
    else:
        logging.getLogger(__name__).warning("Missing .env file at %s", ENV_PATH)


def _env_text(name: str) -> Optional[str]:
    value = str(os.getenv(name) or "").strip()
    return value or None


def load_settings() -> Settings:
    """Build :class:`Settings` from the process environment."""
    logger = logging.getLogger(__name__)
    secret = _env_text("EXPORT_SECRET") or _env_text("SESSION_SECRET")
    if not secret:
        logger.warning(
            "EXPORT_SECRET not set; signing export tokens with the development secret"
        )
        secret = DEV_EXPORT_SECRET

    raw_timeout = _env_text("SESSION_LOOKUP_TIMEOUT")
    try:
        timeout = float(raw_timeout) if raw_timeout else SESSION_LOOKUP_TIMEOUT
    except ValueError:
        logger.warning("Ignoring invalid SESSION_LOOKUP_TIMEOUT=%r", raw_timeout)
        timeout = SESSION_LOOKUP_TIMEOUT

    return Settings(
        database_url=_env_text("DATABASE_URL") or Settings.database_url,
        redis_url=_env_text("REDIS_URL"),
        redis_enabled=(_env_text("FEATURE_REDIS_CACHE") or "true").lower() != "false",
        export_secret=secret,
        session_lookup_url=_env_text("SESSION_LOOKUP_URL"),
        session_lookup_timeout=timeout,
    )
