"""
SpendSense console server.

Serves the route surface of the sign-in flow (landing, login, OAuth callback, logout)
and the protected pages, all backed by one in-process SessionStore. The console is a
single-user local app: the store holds the session of whoever runs it.
"""

from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from spendsense.auth.callback import CallbackFinalizer
from spendsense.auth.config import AuthConfig, load_auth_config
from spendsense.auth.errors import ConfigurationError
from spendsense.auth.gotrue import build_provider
from spendsense.auth.guard import GuardDecision, RouteGuard
from spendsense.auth.models import AuthResult, Session
from spendsense.auth.provider import IdentityProvider
from spendsense.auth.storage import KeyValueStorage, MemoryStorage, ReturnPathBackup
from spendsense.auth.store import SessionStore
from spendsense.auth.util import redact_url, sanitize_return_path

logger = logging.getLogger(__name__)

# Upper bound on how long startup waits for the first session resolution.
_BOOTSTRAP_WAIT_SECONDS = 2.0

_PROTECTED_PAGES: Dict[str, str] = {
    "/dashboard": "Dashboard",
    "/transactions": "Transactions",
    "/insights": "Insights",
    "/alerts": "Alerts",
    "/settings": "Settings",
}


class UserView(BaseModel):
    id: str
    email: Optional[str] = None
    avatarUrl: Optional[str] = None


@dataclass
class ConsoleRuntime:
    config: AuthConfig
    provider: Optional[IdentityProvider]
    backup: ReturnPathBackup
    store: SessionStore


class _ResponseNavigator:
    """Collects navigation requests; the HTTP response performs the actual navigation."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, bool]] = []

    def navigate(self, path: str, *, replace: bool = False) -> None:
        self.calls.append((path, replace))


_runtime: Optional[ConsoleRuntime] = None


def _build_provider(cfg: AuthConfig, storage: KeyValueStorage) -> Optional[IdentityProvider]:
    return build_provider(cfg, storage=storage)


def _get_runtime() -> ConsoleRuntime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="Console is starting up")
    return _runtime


def _user_json(session: Optional[Session]) -> Optional[Dict[str, Any]]:
    if session is None:
        return None
    return UserView(id=session.id, email=session.email, avatarUrl=session.avatar_url).model_dump()


def _error_response(result: AuthResult) -> JSONResponse:
    status = 503 if isinstance(result.error, ConfigurationError) else 502
    error = result.error.to_dict() if result.error is not None else {"code": "auth_error", "message": "failed"}
    return JSONResponse(status_code=status, content={"ok": False, "error": error})


def _failure_page(message: str, delay_ms: int) -> HTMLResponse:
    seconds = max(0.0, delay_ms / 1000.0)
    body = (
        "<!doctype html><html><head>"
        f'<meta http-equiv="refresh" content="{seconds:g};url=/">'
        "<title>Signing you in</title></head>"
        f"<body><h1>Signing you in</h1><p>{html.escape(message)}</p></body></html>"
    )
    return HTMLResponse(content=body, status_code=200)


app = FastAPI(title="SpendSense console")


@app.on_event("startup")
async def _startup_session_store() -> None:
    """
    Mount the session store. A slow or failing provider never prevents startup.
    """
    global _runtime

    cfg = load_auth_config()
    storage = MemoryStorage()
    provider = _build_provider(cfg, storage)
    backup = ReturnPathBackup(storage)
    store = SessionStore(provider, config=cfg, backup=backup)
    _runtime = ConsoleRuntime(config=cfg, provider=provider, backup=backup, store=store)

    task = store.mount()
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=_BOOTSTRAP_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Session bootstrap still pending after %ss; serving interstitials", _BOOTSTRAP_WAIT_SECONDS)
    logger.info(
        "Auth config: provider_enabled=%s provider_url=%s frontend_url=%s",
        cfg.provider_enabled,
        redact_url(cfg.provider_url),
        redact_url(cfg.frontend_url),
    )


@app.on_event("shutdown")
async def _shutdown_session_store() -> None:
    global _runtime

    if _runtime is not None:
        _runtime.store.close()
        _runtime = None


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/")
async def landing(return_to: Optional[str] = Query(None, alias="returnTo")) -> Dict[str, Any]:
    """Public landing page. Accessible without authentication."""
    rt = _get_runtime()
    state = rt.store.get_state()
    return {
        "ok": True,
        "signedIn": state.signed_in,
        "loading": state.loading,
        "user": _user_json(state.session),
        "returnTo": sanitize_return_path(return_to),
        "signInEnabled": rt.store.initiator.enabled,
    }


@app.get("/auth/login")
async def auth_login(request: Request, return_to: Optional[str] = Query(None, alias="returnTo")) -> Response:
    """Start the redirect-based sign-in and send the browser to the identity provider."""
    rt = _get_runtime()
    result = await rt.store.sign_in(return_to=return_to, origin=str(request.base_url))
    if not result.ok:
        return _error_response(result)

    url = result.data.get("url")
    if not url:
        # Provider navigated on its own (e.g. opened a browser window).
        return JSONResponse(content={"ok": True, "returnTo": result.data.get("returnTo")})
    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.get("/auth/callback")
async def auth_callback(request: Request) -> Response:
    """Identity provider redirect target: finalize the sign-in and continue."""
    rt = _get_runtime()

    code = request.query_params.get("code")
    exchange: Optional[Callable[..., Any]] = getattr(rt.provider, "exchange_code", None)
    if code and exchange is not None:
        exchanged = await exchange(code)
        if exchanged.error is not None:
            logger.warning("Authorization code exchange failed: %s", exchanged.error)

    navigator = _ResponseNavigator()
    finalizer = CallbackFinalizer(rt.provider, navigator, config=rt.config, backup=rt.backup)
    try:
        outcome = await finalizer.run(str(request.url))
    finally:
        finalizer.close()

    if outcome.resolved:
        resp: Response = RedirectResponse(url=outcome.destination, status_code=303)
    else:
        resp = _failure_page(outcome.message, rt.config.failure_redirect_delay_ms)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.post("/auth/logout")
async def auth_logout() -> JSONResponse:
    rt = _get_runtime()
    result = await rt.store.sign_out()
    if not result.ok:
        return _error_response(result)
    resp = JSONResponse(content={"ok": True})
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.get("/api/auth/me")
async def auth_me() -> Dict[str, Any]:
    rt = _get_runtime()
    session = rt.store.get_state().session
    if session is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {"ok": True, "user": _user_json(session)}


def _protected_page(title: str) -> Callable[[Request], Any]:
    async def page(request: Request) -> Response:
        rt = _get_runtime()
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"

        navigator = _ResponseNavigator()
        result = RouteGuard(rt.store, navigator).check(path)
        if result.decision is GuardDecision.PENDING:
            return JSONResponse(
                status_code=202,
                content={"ok": False, "status": "checking_session", "message": "Checking session…"},
            )
        if result.decision is GuardDecision.REDIRECT:
            return RedirectResponse(url=result.redirect_to or "/", status_code=307)
        return JSONResponse(
            content={"ok": True, "page": title, "user": _user_json(rt.store.get_state().session)}
        )

    page.__name__ = f"page_{title.lower()}"
    return page


for _path, _title in _PROTECTED_PAGES.items():
    app.add_api_route(_path, _protected_page(_title), methods=["GET"])


def configure_logging(level: str) -> None:
    """
    Apply LOG_LEVEL to every `spendsense.*` logger.

    main.py may already have installed a root handler at import time, so the level is
    set on the loggers directly instead of relying on basicConfig.
    """
    lvl = (level or "info").strip().lower()
    if lvl == "silent":
        logging.disable(logging.CRITICAL)
        return
    logging.disable(logging.NOTSET)
    py_level = {"warn": logging.WARNING, "warning": logging.WARNING}.get(lvl) or getattr(
        logging, lvl.upper(), logging.INFO
    )
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    root.setLevel(py_level)
    logging.getLogger("spendsense").setLevel(py_level)


def run(host: str = "127.0.0.1", port: int = 3000) -> None:
    import uvicorn

    cfg = load_auth_config()
    configure_logging(cfg.log_level)

    # Map our log levels to uvicorn log levels
    uvicorn_log_level = {"silent": "critical", "warn": "warning"}.get(cfg.log_level, cfg.log_level)

    logger.info("Starting SpendSense console on %s:%d (log_level=%s)", host, port, cfg.log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
