from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from spendsense.auth.config import AuthConfig, load_auth_config
from spendsense.auth.errors import ProviderError, as_provider_error
from spendsense.auth.models import AuthResult, Session, SessionStoreState
from spendsense.auth.provider import IdentityProvider, Subscription
from spendsense.auth.signin import SignInInitiator
from spendsense.auth.storage import ReturnPathBackup

logger = logging.getLogger(__name__)

StateListener = Callable[[SessionStoreState], None]


class SessionStore:
    """
    Single authoritative holder of the current session and the bootstrap flag.

    Lifecycle: construct, mount() once, close() on teardown. Every asynchronous
    continuation captures the store generation when it starts and is dropped if
    the generation has moved on (close() bumps it). Consumers subscribe to the store,
    never to the provider.

    sign_out() does not clear the session itself: the provider's SIGNED_OUT event does,
    so session writes have one path. Set optimistic_sign_out for providers that do not
    emit an event on sign-out.
    """

    def __init__(
        self,
        provider: Optional[IdentityProvider],
        *,
        config: Optional[AuthConfig] = None,
        backup: Optional[ReturnPathBackup] = None,
        initiator: Optional[SignInInitiator] = None,
        optimistic_sign_out: Optional[bool] = None,
    ) -> None:
        cfg = config or load_auth_config()
        self._provider = provider
        self._state = SessionStoreState(session=None, loading=True)
        self._listeners: List[StateListener] = []
        self._generation = 0
        self._mounted = False
        self._closed = False
        self._subscription: Optional[Subscription] = None
        self._bootstrap_task: Optional[asyncio.Task] = None
        self._optimistic_sign_out = cfg.optimistic_sign_out if optimistic_sign_out is None else optimistic_sign_out
        self.initiator = initiator or SignInInitiator(provider, config=cfg, backup=backup)

    # --- lifecycle ---

    def mount(self) -> asyncio.Task:
        """Start the bootstrap and the provider subscription. Must run inside an event loop."""
        if self._mounted:
            raise RuntimeError("SessionStore.mount() may only be called once")
        self._mounted = True
        self._generation += 1
        generation = self._generation

        self._bootstrap_task = asyncio.get_running_loop().create_task(self._bootstrap(generation))
        self._subscribe_provider(generation)
        return self._bootstrap_task

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                subscription.unsubscribe()
            except Exception as e:
                logger.warning("Session change unsubscribe failed: %s", e)
        self._listeners.clear()

    async def wait_until_ready(self) -> SessionStoreState:
        if self._bootstrap_task is not None:
            await asyncio.shield(self._bootstrap_task)
        return self._state

    # --- reads ---

    def get_state(self) -> SessionStoreState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    # --- actions ---

    async def sign_in(
        self,
        *,
        redirect_to: Optional[str] = None,
        return_to: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> AuthResult:
        return await self.initiator.sign_in(redirect_to=redirect_to, return_to=return_to, origin=origin)

    async def sign_out(self) -> AuthResult:
        if self._provider is None:
            return AuthResult(ok=True)

        generation = self._generation
        try:
            raw_error = await self._provider.sign_out()
            error = as_provider_error(raw_error, "Sign-out failed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = ProviderError("Sign-out failed", cause=e)
        if error is not None:
            logger.warning("Sign-out error: %s", error)

        if self._optimistic_sign_out:
            self._apply(generation, None, source="sign-out")
        return AuthResult(ok=error is None, error=error)

    # --- internals ---

    async def _bootstrap(self, generation: int) -> None:
        if self._provider is None:
            # No provider: keep the app functional but unauthenticated.
            self._apply(generation, None, source="bootstrap")
            return

        session: Optional[Session] = None
        try:
            response = await self._provider.get_current_session()
            if response.error is not None:
                logger.warning("Session bootstrap error: %s", response.error)
            else:
                session = response.session
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Session bootstrap failed: %s", e)

        if not self._state.loading and generation == self._generation:
            # A provider event resolved the session while we were waiting; it is newer.
            logger.debug("Session bootstrap result superseded by provider event")
            return
        self._apply(generation, session, source="bootstrap")

    def _subscribe_provider(self, generation: int) -> None:
        if self._provider is None:
            return

        def on_change(event: str, session: Optional[Session]) -> None:
            logger.debug("Session change event: %s", event)
            self._apply(generation, session, source=event)

        try:
            self._subscription = self._provider.subscribe_to_session_changes(on_change)
        except Exception as e:
            logger.warning("Session change subscription failed: %s", e)

    def _apply(self, generation: int, session: Optional[Session], *, source: str) -> bool:
        if generation != self._generation:
            logger.debug("Discarding stale session update from %s", source)
            return False
        self._state = SessionStoreState(session=session, loading=False)
        self._notify()
        return True

    def _notify(self) -> None:
        state = self._state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Session store listener failed")
