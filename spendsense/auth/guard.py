from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from spendsense.auth.provider import Navigator
from spendsense.auth.store import SessionStore
from spendsense.auth.util import landing_url, sanitize_return_path


class GuardDecision(str, Enum):
    ALLOW = "allow"
    PENDING = "pending"  # session still being resolved: show the interstitial
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GuardResult:
    decision: GuardDecision
    redirect_to: Optional[str] = None
    return_to: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision is GuardDecision.ALLOW


class RouteGuard:
    """Synchronous gate consulted by every protected view."""

    def __init__(self, store: SessionStore, navigator: Navigator) -> None:
        self._store = store
        self._navigator = navigator

    def check(self, path: str) -> GuardResult:
        state = self._store.get_state()
        if state.loading:
            return GuardResult(GuardDecision.PENDING)
        if state.session is None:
            return_to = sanitize_return_path(path)
            target = landing_url(return_to)
            self._navigator.navigate(target, replace=True)
            return GuardResult(GuardDecision.REDIRECT, redirect_to=target, return_to=return_to)
        return GuardResult(GuardDecision.ALLOW)
