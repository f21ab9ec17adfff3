from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import jwt  # PyJWT
import requests

from spendsense.auth.config import AuthConfig
from spendsense.auth.errors import ProviderError
from spendsense.auth.models import RedirectResult, Session, SessionResponse
from spendsense.auth.provider import SIGNED_IN, SIGNED_OUT, SessionChangeListener
from spendsense.auth.storage import KeyValueStorage, MemoryStorage, SafeStorage
from spendsense.auth.util import b64url, random_token, redact_url

logger = logging.getLogger(__name__)

TOKEN_KEY = "spendsense.auth.token"
VERIFIER_KEY = "spendsense.auth.codeVerifier"


def pkce_challenge(verifier: str) -> str:
    """
    Generate PKCE challenge from verifier using SHA256.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)


def access_token_expires_at(access_token: str) -> Optional[float]:
    """
    Read `exp` from the access token without verifying it.

    The provider verifies tokens; this only spares a round trip for tokens that are
    already dead. Undecodable tokens are left for the provider to judge.
    """
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


def access_token_expired(access_token: str, *, now: Optional[float] = None, leeway: int = 0) -> bool:
    expires_at = access_token_expires_at(access_token)
    if expires_at is None:
        return False
    current = time.time() if now is None else now
    return current >= expires_at - leeway


def _with_query(url: str, **extra: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in extra]
    query.extend(extra.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class _Subscription:
    def __init__(self, listeners: List[SessionChangeListener], listener: SessionChangeListener) -> None:
        self._listeners = listeners
        self._listener = listener

    def unsubscribe(self) -> None:
        try:
            self._listeners.remove(self._listener)
        except ValueError:
            pass


class GoTrueProvider:
    """
    Identity provider backed by a GoTrue (Supabase Auth) server, using the PKCE redirect flow.

    Tokens and the PKCE verifier live in the storage collaborator. Token refresh is
    not implemented: once a session is established, a timer drops it and emits
    SIGNED_OUT when the access token's `exp` passes.
    """

    def __init__(
        self,
        cfg: AuthConfig,
        *,
        storage: Optional[KeyValueStorage] = None,
        open_url: Optional[Callable[[str], Any]] = None,
        timeout: float = 10.0,
    ) -> None:
        if not cfg.provider_url or not cfg.provider_key:
            raise ValueError("Identity provider URL/key not configured")
        self._base = cfg.provider_url.rstrip("/")
        self._key = cfg.provider_key
        self._oauth_provider = cfg.oauth_provider
        self._storage = SafeStorage(storage if storage is not None else MemoryStorage())
        self._open_url = open_url
        self._timeout = timeout
        self._listeners: List[SessionChangeListener] = []
        self._expiry_handle: Optional[asyncio.TimerHandle] = None

    # --- provider contract ---

    async def get_current_session(self) -> SessionResponse:
        tokens = self._load_tokens()
        access_token = str((tokens or {}).get("access_token") or "")
        if not access_token:
            return SessionResponse()
        if access_token_expired(access_token):
            logger.info("Access token expired; treating session as signed out")
            self._drop_session()
            return SessionResponse()

        try:
            r = await asyncio.to_thread(
                requests.get,
                f"{self._base}/auth/v1/user",
                headers=self._headers(access_token),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            return SessionResponse(error=ProviderError("Session lookup failed", cause=e))

        if r.status_code == 401:
            self._drop_session()
            return SessionResponse()
        if r.status_code >= 400:
            return SessionResponse(error=ProviderError(f"Session lookup failed (status={r.status_code})"))
        try:
            payload = r.json()
        except ValueError as e:
            return SessionResponse(error=ProviderError("Invalid user response", cause=e))
        self._schedule_expiry(access_token)
        return SessionResponse(session=Session.from_payload(payload))

    async def start_oauth_redirect(self, *, redirect_url: str, opaque_state: str) -> RedirectResult:
        verifier = random_token(32)  # 43+ chars (base64url) -> valid PKCE verifier
        self._storage.set(VERIFIER_KEY, verifier)

        params = {
            "provider": self._oauth_provider,
            # The state rides on our own callback URL so it comes back untouched by the provider.
            "redirect_to": _with_query(redirect_url, state=opaque_state),
            "code_challenge": pkce_challenge(verifier),
            "code_challenge_method": "s256",
        }
        url = f"{self._base}/auth/v1/authorize?{urlencode(params)}"

        if self._open_url is not None:
            try:
                self._open_url(url)
            except Exception as e:
                return RedirectResult(ok=False, error=ProviderError("Could not open the sign-in page", cause=e))
        logger.debug("Authorize URL built for %s", redact_url(url))
        return RedirectResult(ok=True, url=url)

    def subscribe_to_session_changes(self, listener: SessionChangeListener) -> _Subscription:
        self._listeners.append(listener)
        return _Subscription(self._listeners, listener)

    async def sign_out(self) -> Optional[Exception]:
        tokens = self._load_tokens()
        access_token = str((tokens or {}).get("access_token") or "")
        error: Optional[Exception] = None
        if access_token:
            try:
                r = await asyncio.to_thread(
                    requests.post,
                    f"{self._base}/auth/v1/logout",
                    headers=self._headers(access_token),
                    timeout=self._timeout,
                )
                # 401: the server already considers the token dead.
                if r.status_code >= 400 and r.status_code != 401:
                    error = ProviderError(f"Sign-out failed (status={r.status_code})")
            except requests.RequestException as e:
                error = ProviderError("Sign-out failed", cause=e)
        self._drop_session()
        return error

    # --- redirect code exchange ---

    async def exchange_code(self, code: str) -> SessionResponse:
        """
        Exchange the authorization code from the callback URL for a session (PKCE).
        """
        verifier = self._storage.get(VERIFIER_KEY)
        if not verifier:
            return SessionResponse(error=ProviderError("Missing PKCE code verifier"))

        try:
            r = await asyncio.to_thread(
                requests.post,
                f"{self._base}/auth/v1/token",
                params={"grant_type": "pkce"},
                json={"auth_code": code, "code_verifier": verifier},
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            return SessionResponse(error=ProviderError("Code exchange failed", cause=e))

        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            return SessionResponse(error=ProviderError(f"Code exchange failed (status={r.status_code})"))
        try:
            data = r.json()
        except ValueError as e:
            return SessionResponse(error=ProviderError("Invalid token response", cause=e))
        if not isinstance(data, dict) or not data.get("access_token"):
            return SessionResponse(error=ProviderError("Invalid token response"))

        self._storage.remove(VERIFIER_KEY)
        self._storage.set(TOKEN_KEY, json.dumps(data, separators=(",", ":"), sort_keys=True))
        session = Session.from_payload(data.get("user"))
        self._schedule_expiry(str(data["access_token"]))
        self._emit(SIGNED_IN, session)
        return SessionResponse(session=session)

    # --- internals ---

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self._key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def _load_tokens(self) -> Optional[Dict[str, Any]]:
        raw = self._storage.get(TOKEN_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            self._storage.remove(TOKEN_KEY)
            return None
        return data if isinstance(data, dict) else None

    def _schedule_expiry(self, access_token: str) -> None:
        self._cancel_expiry()
        expires_at = access_token_expires_at(access_token)
        if expires_at is None:
            return
        delay = max(0.0, expires_at - time.time())
        self._expiry_handle = asyncio.get_running_loop().call_later(delay, self._expire, access_token)

    def _cancel_expiry(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _expire(self, access_token: str) -> None:
        self._expiry_handle = None
        tokens = self._load_tokens()
        # Only the token the timer was armed for; a newer sign-in keeps its session.
        if str((tokens or {}).get("access_token") or "") != access_token:
            return
        logger.info("Access token expired; ending session")
        self._drop_session()

    def _drop_session(self) -> None:
        self._cancel_expiry()
        self._storage.remove(TOKEN_KEY)
        self._emit(SIGNED_OUT, None)

    def _emit(self, event: str, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception("Session change listener failed")


def build_provider(
    cfg: AuthConfig,
    *,
    storage: Optional[KeyValueStorage] = None,
    open_url: Optional[Callable[[str], Any]] = None,
) -> Optional[GoTrueProvider]:
    """GoTrueProvider when configured, else None (sign-in disabled, app still usable)."""
    if not cfg.provider_enabled:
        return None
    return GoTrueProvider(cfg, storage=storage, open_url=open_url)
