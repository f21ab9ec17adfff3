from __future__ import annotations

import base64
import os
from typing import Any, Optional
from urllib.parse import urlencode, urlparse

LANDING_PATH = "/"
CALLBACK_PATH = "/auth/callback"
DEFAULT_RETURN_PATH = "/dashboard"


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def is_return_path(value: Any) -> bool:
    """
    True for in-app routes like `/insights`.

    Scheme-relative paths (`//evil.com`) and CR/LF are rejected to prevent open redirects.
    """
    if not isinstance(value, str) or not value.startswith("/"):
        return False
    if value.startswith("//"):
        return False
    return "\r" not in value and "\n" not in value


def sanitize_return_path(value: Any, default: str = DEFAULT_RETURN_PATH) -> str:
    # No trimming: " /x" does not start with "/" and gets the default.
    return value if is_return_path(value) else default


def landing_url(return_to: Optional[str] = None) -> str:
    if not return_to:
        return LANDING_PATH
    return f"{LANDING_PATH}?{urlencode({'returnTo': return_to})}"


def redact_url(url: Optional[str]) -> Optional[str]:
    """Keep scheme + host + path; drop query and fragment (they may carry codes or state)."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return parsed.path or None
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
