"""Configuration helpers for the inbox mirror crawler and API."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

SOURCE_EMAIL_KEY = "SOURCE_EMAIL"
SOURCE_PASSWORD_KEY = "SOURCE_PASSWORD"
SOURCE_BASE_URL_KEY = "SOURCE_BASE_URL"
BROWSER_HEADLESS_ENV = "BROWSER_HEADLESS"
COOKIES_PATH_ENV = "COOKIES_PATH"
INBOX_DB_ENV = "INBOX_DB_PATH"
STATUS_STALE_ENV = "CRAWL_STATUS_STALE_SECONDS"
ABANDON_ENV = "CRAWL_ABANDON_SECONDS"

DEFAULT_SOURCE_BASE_URL = "https://soomgo.com"
DEFAULT_COOKIES_PATH = PROJECT_ROOT / "secrets" / "source_cookies.pkl"
DEFAULT_INBOX_DB = PROJECT_ROOT / "data" / "inbox.db"
DEFAULT_STATUS_STALE_SECONDS = 30.0
DEFAULT_ABANDON_SECONDS = 60.0

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class SourceCredentials:
    """Login pair for the external inbox. Never logged."""

    email: str
    password: str

    def __repr__(self) -> str:
        return f"SourceCredentials(email={self.email!r}, password='***')"


@dataclass(frozen=True)
class BrowserSettings:
    """Runtime settings for the shared Selenium session."""

    base_url: str
    cookies_path: Path
    headless: bool = True
    window_size: str = "1280,800"
    page_load_timeout: float = 30.0


@dataclass(frozen=True)
class CrawlSettings:
    """Staleness thresholds for crawl job status reads.

    ``status_stale_seconds`` drives read-time inference on the status
    endpoint; ``abandon_after_seconds`` is the longer caller-side give-up
    window reported alongside it.
    """

    status_stale_seconds: float = DEFAULT_STATUS_STALE_SECONDS
    abandon_after_seconds: float = DEFAULT_ABANDON_SECONDS


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = _get_env(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise RuntimeError(f"{name} must be a boolean flag; received '{raw}'.")


def _get_seconds(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number of seconds; received '{raw}'.") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive; received '{raw}'.")
    return value


def get_source_credentials() -> SourceCredentials:
    """Return the source login pair or raise a descriptive error."""

    email = _get_env(SOURCE_EMAIL_KEY)
    password = _get_env(SOURCE_PASSWORD_KEY)
    if not email:
        raise RuntimeError("SOURCE_EMAIL is not configured; check your .env or environment")
    if not password:
        raise RuntimeError(
            "SOURCE_PASSWORD is not configured. Set it in .env or export the variable before running."
        )
    return SourceCredentials(email=email, password=password)


def get_browser_settings() -> BrowserSettings:
    """Resolve browser/session configuration from the environment."""

    base_url = (_get_env(SOURCE_BASE_URL_KEY, DEFAULT_SOURCE_BASE_URL) or "").rstrip("/")
    raw_cookies = _get_env(COOKIES_PATH_ENV, str(DEFAULT_COOKIES_PATH))
    cookies_path = Path(raw_cookies).expanduser().resolve()
    return BrowserSettings(
        base_url=base_url,
        cookies_path=cookies_path,
        headless=_get_bool(BROWSER_HEADLESS_ENV, True),
    )


def get_crawl_settings() -> CrawlSettings:
    """Resolve both staleness thresholds; the abandon window must be the longer one."""

    stale = _get_seconds(STATUS_STALE_ENV, DEFAULT_STATUS_STALE_SECONDS)
    abandon = _get_seconds(ABANDON_ENV, DEFAULT_ABANDON_SECONDS)
    if abandon < stale:
        raise RuntimeError(
            f"{ABANDON_ENV} ({abandon}) must not be shorter than {STATUS_STALE_ENV} ({stale})."
        )
    return CrawlSettings(status_stale_seconds=stale, abandon_after_seconds=abandon)


def get_inbox_db_path() -> Path:
    """Resolve the SQLite file backing the chat/message store."""

    raw_path = _get_env(INBOX_DB_ENV, str(DEFAULT_INBOX_DB))
    return Path(raw_path).expanduser().resolve()
