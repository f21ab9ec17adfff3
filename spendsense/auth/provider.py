from __future__ import annotations

from typing import Callable, Optional, Protocol

from spendsense.auth.models import RedirectResult, Session, SessionResponse

# Session change events pushed by the identity provider. The store applies any
# event name the same way; only these two are emitted by the GoTrue adapter.
SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

SessionChangeListener = Callable[[str, Optional[Session]], None]


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class IdentityProvider(Protocol):
    """
    Identity provider collaborator. Session issuance, token handling and the authorize
    URL are its business; the auth core only consumes these calls.
    """

    async def get_current_session(self) -> SessionResponse: ...

    async def start_oauth_redirect(self, *, redirect_url: str, opaque_state: str) -> RedirectResult: ...

    def subscribe_to_session_changes(self, listener: SessionChangeListener) -> Subscription: ...

    async def sign_out(self) -> Optional[Exception]: ...


class Navigator(Protocol):
    def navigate(self, path: str, *, replace: bool = False) -> None: ...
