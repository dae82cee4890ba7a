"""
config.py

Session and login settings read from the environment (and .env).
Endpoints, domains, timeouts and storage paths are grouped by section
below; everything else imports them from here.
Part of Chatflow — Business Messaging Client.
"""

import os
from pathlib import Path
from typing import Callable, TypeVar

from dotenv import load_dotenv

_T = TypeVar("_T", int, float)

# .env next to this file; real environment variables win
load_dotenv(Path(__file__).resolve().parent / ".env")


def _get_optional(key: str, default: str = "") -> str:
    """
    Read a string setting.

    Args:
        key: Environment variable name.
        default: Used when the variable is unset or blank.

    Returns:
        The stripped value, or default.
    """
    return os.getenv(key, "").strip() or default


def _get_bool(key: str, default: bool = False) -> bool:
    """Read a flag; "1", "true", "yes" and "on" count as set."""
    raw = _get_optional(key).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _get_number(key: str, default: _T, cast: Callable[[str], _T]) -> _T:
    """
    Read a numeric setting, falling back to default on garbage.

    Example:
        retries = _get_number("INJECTION_MAX_RETRIES", 5, int)
    """
    raw = _get_optional(key)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


# ===========================================================================
# Section 1 — API endpoints
# ===========================================================================

API_URL: str = _get_optional("API_URL", "https://chatflow.pabbly.com/api").rstrip("/")
ACCOUNTS_URL: str = _get_optional("ACCOUNTS_URL", "https://accounts.pabbly.com").rstrip("/")
ACCOUNTS_BACKEND_URL: str = _get_optional(
    "ACCOUNTS_BACKEND_URL", f"{ACCOUNTS_URL}/backend"
).rstrip("/")
PROVIDER_PROJECT: str = _get_optional("PROVIDER_PROJECT", "pcf")

# Host of the identity provider and of the app's own post-login surface
PROVIDER_DOMAIN: str = _get_optional("PROVIDER_DOMAIN", "accounts.pabbly.com")
APP_HOST: str = _get_optional("APP_HOST", "chatflow.pabbly.com")
OAUTH_PROVIDER_DOMAIN: str = _get_optional("OAUTH_PROVIDER_DOMAIN", "accounts.google.com")

# Custom redirect scheme registered by the mobile app (pabblychatflow://...)
APP_SCHEME: str = _get_optional("APP_SCHEME", "pabblychatflow")

USER_AGENT: str = _get_optional(
    "USER_AGENT",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
)

# ===========================================================================
# Section 2 — Timeouts & retry budgets
# ===========================================================================

API_TIMEOUT_SECONDS: float = _get_number("API_TIMEOUT_SECONDS", 30.0, float)
PAGE_LOAD_TIMEOUT_SECONDS: float = _get_number("PAGE_LOAD_TIMEOUT_SECONDS", 15.0, float)
INJECTION_MAX_RETRIES: int = _get_number("INJECTION_MAX_RETRIES", 5, int)
INJECTION_RETRY_DELAY_SECONDS: float = _get_number("INJECTION_RETRY_DELAY_SECONDS", 1.0, float)
INJECTION_SETTLE_DELAY_MS: int = _get_number("INJECTION_SETTLE_DELAY_MS", 500, int)
LOGIN_FLOW_TIMEOUT_SECONDS: float = _get_number("LOGIN_FLOW_TIMEOUT_SECONDS", 180.0, float)
VERIFY_INTERVAL_SECONDS: int = _get_number("VERIFY_INTERVAL_SECONDS", 60 * 60, int)

# ===========================================================================
# Section 3 — Storage
# ===========================================================================

STORAGE_BACKEND: str = _get_optional("STORAGE_BACKEND", "file")  # file | database | memory
STATE_DIR: Path = Path(
    _get_optional("STATE_DIR", str(Path(__file__).resolve().parent / ".chatflow"))
)
DATABASE_URL: str = _get_optional("DATABASE_URL", f"sqlite:///{STATE_DIR / 'session.db'}")
CACHE_DIR: Path = Path(_get_optional("CACHE_DIR", str(STATE_DIR / "cache")))

# ===========================================================================
# Section 4 — Push notifications
# ===========================================================================

PUSH_ENABLED: bool = _get_bool("PUSH_ENABLED", default=False)
PUSH_PLAYER_ID: str = _get_optional("PUSH_PLAYER_ID")

# ===========================================================================
# Section 5 — General Config
# ===========================================================================

LOG_LEVEL: str = _get_optional("LOG_LEVEL", "INFO")
BROWSER_HEADLESS: bool = _get_bool("BROWSER_HEADLESS", default=True)

# ===========================================================================
# Section 6 — Logs
# ===========================================================================

LOGS_DIR: Path = Path(_get_optional("LOGS_DIR", str(Path(__file__).resolve().parent / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)


def as_dict() -> dict[str, str | int | float | bool]:
    """
    Snapshot of the settings above for diagnostics. The push player id is
    masked.

    Example:
        _log.debug("CONFIG | %s", as_dict())
    """
    return {
        "API_URL": API_URL,
        "ACCOUNTS_URL": ACCOUNTS_URL,
        "ACCOUNTS_BACKEND_URL": ACCOUNTS_BACKEND_URL,
        "PROVIDER_PROJECT": PROVIDER_PROJECT,
        "PROVIDER_DOMAIN": PROVIDER_DOMAIN,
        "APP_HOST": APP_HOST,
        "OAUTH_PROVIDER_DOMAIN": OAUTH_PROVIDER_DOMAIN,
        "APP_SCHEME": APP_SCHEME,
        "API_TIMEOUT_SECONDS": API_TIMEOUT_SECONDS,
        "PAGE_LOAD_TIMEOUT_SECONDS": PAGE_LOAD_TIMEOUT_SECONDS,
        "INJECTION_MAX_RETRIES": INJECTION_MAX_RETRIES,
        "INJECTION_RETRY_DELAY_SECONDS": INJECTION_RETRY_DELAY_SECONDS,
        "INJECTION_SETTLE_DELAY_MS": INJECTION_SETTLE_DELAY_MS,
        "LOGIN_FLOW_TIMEOUT_SECONDS": LOGIN_FLOW_TIMEOUT_SECONDS,
        "VERIFY_INTERVAL_SECONDS": VERIFY_INTERVAL_SECONDS,
        "STORAGE_BACKEND": STORAGE_BACKEND,
        "STATE_DIR": str(STATE_DIR),
        "DATABASE_URL": DATABASE_URL,
        "CACHE_DIR": str(CACHE_DIR),
        "PUSH_ENABLED": PUSH_ENABLED,
        "PUSH_PLAYER_ID": "***set***" if PUSH_PLAYER_ID else "",
        "LOG_LEVEL": LOG_LEVEL,
        "BROWSER_HEADLESS": BROWSER_HEADLESS,
        "LOGS_DIR": str(LOGS_DIR),
    }
