"""
Pytest config.

Pins the repo root on sys.path so `import spendsense` works even when pytest is
invoked through a global entrypoint, and provides in-process fakes for the identity
provider and the navigator.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from spendsense.auth.config import AuthConfig, load_auth_config  # noqa: E402
from spendsense.auth.models import RedirectResult, Session, SessionResponse  # noqa: E402


class FakeSubscription:
    def __init__(self, provider: "FakeProvider", listener: Any) -> None:
        self._provider = provider
        self._listener = listener

    def unsubscribe(self) -> None:
        self._provider.unsubscribe_calls += 1
        if self._listener in self._provider.listeners:
            self._provider.listeners.remove(self._listener)


class FakeProvider:
    """
    Scriptable identity provider.

    `responses` is consumed in order by get_current_session(); entries may be a
    SessionResponse or an exception to raise. When empty, `session` is returned.
    Setting `gate` to an asyncio.Event holds session requests until it is set.
    """

    def __init__(self) -> None:
        self.session: Optional[Session] = None
        self.responses: List[Any] = []
        self.gate: Optional[asyncio.Event] = None
        self.session_calls = 0
        self.redirects: List[Tuple[str, str]] = []
        self.redirect_result = None
        self.redirect_exception: Optional[Exception] = None
        self.listeners: List[Any] = []
        self.subscribe_error: Optional[Exception] = None
        self.unsubscribe_calls = 0
        self.sign_out_calls = 0
        self.sign_out_error: Optional[Exception] = None
        self.emit_on_sign_out = False

    async def get_current_session(self) -> SessionResponse:
        self.session_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return SessionResponse(session=self.session)

    async def start_oauth_redirect(self, *, redirect_url: str, opaque_state: str) -> RedirectResult:
        self.redirects.append((redirect_url, opaque_state))
        if self.redirect_exception is not None:
            raise self.redirect_exception
        if self.redirect_result is not None:
            return self.redirect_result
        return RedirectResult(ok=True, url=f"https://idp.example.test/authorize?redirect_to={redirect_url}")

    def subscribe_to_session_changes(self, listener: Any) -> FakeSubscription:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.listeners.append(listener)
        return FakeSubscription(self, listener)

    async def sign_out(self) -> Optional[Exception]:
        self.sign_out_calls += 1
        if self.emit_on_sign_out:
            self.emit("SIGNED_OUT", None)
        return self.sign_out_error

    def emit(self, event: str, session: Optional[Session]) -> None:
        for listener in list(self.listeners):
            listener(event, session)


class RecordingNavigator:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, bool]] = []

    def navigate(self, path: str, *, replace: bool = False) -> None:
        self.calls.append((path, replace))


@pytest.fixture(autouse=True)
def _clear_auth_config_cache() -> Iterator[None]:
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        provider_url="https://auth.example.test",
        provider_key="anon-key",
        frontend_url="https://app.example.test",
        state_secret="test-state-secret",
        callback_retry_delay_ms=0,
        failure_redirect_delay_ms=0,
    )


@pytest.fixture
def user_session() -> Session:
    return Session(id="user-1", email="ada@example.com", avatar_url="https://img.example.test/ada.png")
