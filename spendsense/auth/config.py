from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse

LOG_LEVELS = ("silent", "error", "warn", "info", "debug")


@dataclass(frozen=True)
class AuthConfig:
    # Identity provider (GoTrue / Supabase Auth)
    provider_url: Optional[str] = None
    provider_key: Optional[str] = None  # public anon key, never logged
    oauth_provider: str = "google"

    # Origin the identity provider redirects back to (reverse-proxy safe)
    frontend_url: Optional[str] = None

    # OAuth state parameter
    state_secret: Optional[str] = None
    state_max_age_seconds: int = 900

    # Callback page timing
    callback_retry_delay_ms: int = 450
    failure_redirect_delay_ms: int = 800

    # Clear the local session on sign-out without waiting for the provider event
    optimistic_sign_out: bool = False

    log_level: str = "info"

    @property
    def provider_enabled(self) -> bool:
        """The provider is usable only when both URL and key are configured."""
        return bool(self.provider_url and self.provider_key)

    @property
    def codec_secret(self) -> Optional[str]:
        return self.state_secret or self.provider_key


def _env_str(key: str) -> Optional[str]:
    return (os.getenv(key, "") or "").strip() or None


def _env_bool(key: str, default: bool) -> bool:
    raw = (os.getenv(key, "") or "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(key: str, default: int) -> int:
    raw = (os.getenv(key, "") or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _env_http_url(key: str) -> Optional[str]:
    """Absolute http(s) URL or None; anything else is treated as unset."""
    raw = _env_str(key)
    if not raw:
        return None
    parsed = urlparse(raw)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return None
    return raw.rstrip("/")


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    The identity provider is enabled if SPENDSENSE_AUTH_URL and SPENDSENSE_AUTH_ANON_KEY are set.
    Without them the console stays functional but unauthenticated.
    """
    max_age = _env_int("AUTH_STATE_MAX_AGE_SECONDS", 900)
    if max_age < 60:
        max_age = 60

    log_level = (_env_str("LOG_LEVEL") or "info").lower()
    if log_level == "warning":
        log_level = "warn"
    if log_level not in LOG_LEVELS:
        log_level = "info"

    return AuthConfig(
        provider_url=_env_http_url("SPENDSENSE_AUTH_URL"),
        provider_key=_env_str("SPENDSENSE_AUTH_ANON_KEY"),
        oauth_provider=(_env_str("SPENDSENSE_OAUTH_PROVIDER") or "google").lower(),
        frontend_url=_env_http_url("FRONTEND_URL"),
        state_secret=_env_str("AUTH_STATE_SECRET"),
        state_max_age_seconds=max_age,
        callback_retry_delay_ms=max(0, _env_int("AUTH_CALLBACK_RETRY_DELAY_MS", 450)),
        failure_redirect_delay_ms=max(0, _env_int("AUTH_FAILURE_REDIRECT_DELAY_MS", 800)),
        optimistic_sign_out=_env_bool("AUTH_OPTIMISTIC_SIGN_OUT", False),
        log_level=log_level,
    )
