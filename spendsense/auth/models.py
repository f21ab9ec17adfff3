from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from spendsense.auth.errors import AuthError


@dataclass(frozen=True)
class Session:
    """Authenticated identity record from the identity provider. Replaced wholesale, never mutated."""

    id: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["Session"]:
        """
        Build a Session from a provider user payload.

        Google sign-ins put the avatar under user_metadata.avatar_url (sometimes `picture`).
        Returns None when the payload has no user id.
        """
        if not isinstance(payload, Mapping):
            return None
        user_id = str(payload.get("id") or "").strip()
        if not user_id:
            return None
        meta = payload.get("user_metadata")
        if not isinstance(meta, Mapping):
            meta = {}
        email = payload.get("email")
        avatar = meta.get("avatar_url") or meta.get("picture")
        return cls(
            id=user_id,
            email=str(email) if email else None,
            avatar_url=str(avatar) if avatar else None,
            raw=dict(payload),
        )


@dataclass(frozen=True)
class SessionStoreState:
    session: Optional[Session] = None
    loading: bool = True

    @property
    def signed_in(self) -> bool:
        return self.session is not None


@dataclass(frozen=True)
class OAuthState:
    """Payload carried by the opaque `state` parameter through the OAuth round trip."""

    return_to: str
    issued_at: float


@dataclass(frozen=True)
class SessionResponse:
    session: Optional[Session] = None
    error: Optional[AuthError] = None


@dataclass(frozen=True)
class RedirectResult:
    ok: bool
    error: Optional[AuthError] = None
    url: Optional[str] = None  # provider authorize URL, when the provider exposes it


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a sign-in or sign-out request."""

    ok: bool
    error: Optional[AuthError] = None
    data: Dict[str, Any] = field(default_factory=dict)
