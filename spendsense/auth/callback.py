from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit

from spendsense.auth.codec import ReturnPathCodec
from spendsense.auth.config import AuthConfig, load_auth_config
from spendsense.auth.errors import (
    AuthError,
    ConfigurationError,
    MalformedStateError,
    ProviderError,
    RetryExhausted,
    as_provider_error,
)
from spendsense.auth.models import SessionResponse
from spendsense.auth.provider import IdentityProvider, Navigator
from spendsense.auth.storage import ReturnPathBackup
from spendsense.auth.util import DEFAULT_RETURN_PATH, LANDING_PATH

logger = logging.getLogger(__name__)


class CallbackState(str, Enum):
    ENTERED = "entered"
    ERROR_DETECTED = "error_detected"
    AWAITING_SESSION = "awaiting_session"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass(frozen=True)
class CallbackOutcome:
    state: CallbackState
    destination: str
    message: str
    error: Optional[AuthError] = None
    session_requests: int = 0

    @property
    def resolved(self) -> bool:
        return self.state is CallbackState.RESOLVED


def parse_callback_params(url: str) -> Dict[str, str]:
    """
    Query and fragment parameters of the callback URL (first value wins, query over fragment).

    Providers report errors in either place depending on the flow.
    """
    parts = urlsplit(url or "")
    params: Dict[str, str] = {}
    for raw in (parts.fragment, parts.query):
        for key, values in parse_qs(raw, keep_blank_values=False).items():
            if values:
                params[key] = values[0]
    return params


class CallbackFinalizer:
    """
    Runs once on the page the identity provider redirects back to.

    ENTERED -> (ERROR_DETECTED | AWAITING_SESSION) -> (RESOLVED | RETRYING) -> (RESOLVED | FAILED).
    A missing session gets exactly one retry after a short delay. close() cancels the
    retry timer and the delayed failure redirect; late provider answers are ignored.
    """

    def __init__(
        self,
        provider: Optional[IdentityProvider],
        navigator: Navigator,
        *,
        config: Optional[AuthConfig] = None,
        backup: Optional[ReturnPathBackup] = None,
        codec: Optional[ReturnPathCodec] = None,
    ) -> None:
        self._cfg = config or load_auth_config()
        self._provider = provider
        self._navigator = navigator
        self._backup = backup or ReturnPathBackup(None)
        self._codec = codec or ReturnPathCodec.from_config(self._cfg)

        self.state = CallbackState.ENTERED
        self.message = "Finalizing sign-in…"
        self.session_requests = 0
        self.state_error: Optional[MalformedStateError] = None

        self._started = False
        self._alive = True
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._retry_waiter: Optional[asyncio.Future] = None
        self._redirect_handle: Optional[asyncio.TimerHandle] = None

    async def run(self, callback_url: str) -> CallbackOutcome:
        if self._started:
            raise RuntimeError("CallbackFinalizer.run() may only be called once")
        self._started = True
        try:
            return await self._finalize(callback_url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unexpected error while finalizing sign-in")
            return self._fail(ProviderError("Unexpected error", cause=e), "Unexpected error. Redirecting…")

    def close(self) -> None:
        self._alive = False
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        if self._retry_waiter is not None and not self._retry_waiter.done():
            self._retry_waiter.set_result(None)
        if self._redirect_handle is not None:
            self._redirect_handle.cancel()
            self._redirect_handle = None

    # --- states ---

    async def _finalize(self, callback_url: str) -> CallbackOutcome:
        params = parse_callback_params(callback_url)

        error = params.get("error") or params.get("error_code")
        if error:
            self._transition(CallbackState.ERROR_DETECTED)
            description = params.get("error_description") or error
            logger.warning("Identity provider returned an error: %s", error)
            return self._fail(ProviderError(description), description)

        provider = self._provider
        if provider is None:
            return self._fail(
                ConfigurationError("Identity provider not configured"),
                "Sign-in is not configured. Redirecting…",
            )

        self._transition(CallbackState.AWAITING_SESSION)
        destination = self._destination(params.get("state"))

        response = await self._request_session(provider)
        if not self._alive:
            return self._outcome(destination)
        if response.error is not None:
            return self._fail(response.error, "Sign-in failed. Redirecting…")
        if response.session is not None:
            return self._resolve(destination)

        # The provider may still be exchanging the redirect code.
        self._transition(CallbackState.RETRYING)
        self.message = "Finishing up…"
        await self._wait_retry_delay()
        if not self._alive:
            return self._outcome(destination)

        response = await self._request_session(provider)
        if not self._alive:
            return self._outcome(destination)
        if response.error is None and response.session is not None:
            return self._resolve(destination)
        return self._fail(
            response.error or RetryExhausted("No session after retry"),
            "Sign-in could not be completed. Redirecting…",
        )

    def _destination(self, state_token: Optional[str]) -> str:
        path = self._codec.decode(state_token, max_age=self._cfg.state_max_age_seconds)
        if path is not None:
            return path
        if state_token:
            self.state_error = MalformedStateError("OAuth state parameter unusable")
            logger.info("%s; falling back to backup return path", self.state_error)
        return self._backup.load() or DEFAULT_RETURN_PATH

    async def _request_session(self, provider: IdentityProvider) -> SessionResponse:
        self.session_requests += 1
        try:
            response = await provider.get_current_session()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Session request failed: %s", e)
            return SessionResponse(error=ProviderError("Session request failed", cause=e))
        if response.error is not None:
            return SessionResponse(error=as_provider_error(response.error, "Session request failed"))
        return response

    async def _wait_retry_delay(self) -> None:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        def release() -> None:
            if not waiter.done():
                waiter.set_result(None)

        self._retry_waiter = waiter
        self._retry_handle = loop.call_later(self._cfg.callback_retry_delay_ms / 1000.0, release)
        try:
            await waiter
        finally:
            self._retry_handle = None
            self._retry_waiter = None

    def _resolve(self, destination: str) -> CallbackOutcome:
        self._backup.clear()
        self._transition(CallbackState.RESOLVED)
        self.message = "Signed in. Redirecting…"
        logger.info("Sign-in finalized; continuing to %s", destination)
        self._navigator.navigate(destination, replace=True)
        return self._outcome(destination)

    def _fail(self, error: AuthError, message: str) -> CallbackOutcome:
        self._backup.clear()
        self._transition(CallbackState.FAILED)
        self.message = message
        logger.warning("Sign-in failed (%s): %s", error.code, error)
        if self._alive:
            loop = asyncio.get_running_loop()
            self._redirect_handle = loop.call_later(self._cfg.failure_redirect_delay_ms / 1000.0, self._go_landing)
        return self._outcome(LANDING_PATH, error)

    def _go_landing(self) -> None:
        self._redirect_handle = None
        if self._alive:
            self._navigator.navigate(LANDING_PATH, replace=True)

    def _transition(self, state: CallbackState) -> None:
        logger.debug("Callback %s -> %s", self.state.value, state.value)
        self.state = state

    def _outcome(self, destination: str, error: Optional[AuthError] = None) -> CallbackOutcome:
        return CallbackOutcome(
            state=self.state,
            destination=destination,
            message=self.message,
            error=error,
            session_requests=self.session_requests,
        )
