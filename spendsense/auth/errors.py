from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """
    Base class for authentication failures.

    These are carried as values inside results (AuthResult, SessionResponse, ...);
    the auth core never raises them past its own boundary.
    """

    code = "auth_error"

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.cause = cause

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ConfigurationError(AuthError):
    """Identity provider unset or misconfigured. Disables sign-in."""

    code = "configuration_error"


class ProviderError(AuthError):
    """Network or service failure talking to the identity provider."""

    code = "provider_error"


class MalformedStateError(AuthError):
    """OAuth state parameter could not be decoded."""

    code = "malformed_state"


class RetryExhausted(AuthError):
    """No session after the single bounded retry on the callback page."""

    code = "retry_exhausted"


def as_provider_error(err: Optional[BaseException], message: str) -> Optional[AuthError]:
    if err is None:
        return None
    if isinstance(err, AuthError):
        return err
    return ProviderError(f"{message}: {err}", cause=err)
