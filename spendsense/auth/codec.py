from __future__ import annotations

import logging
import time
from typing import Optional

from itsdangerous import BadData, URLSafeSerializer

from spendsense.auth.config import AuthConfig
from spendsense.auth.models import OAuthState
from spendsense.auth.util import is_return_path

logger = logging.getLogger(__name__)

STATE_SALT = "spendsense-oauth-state-v1"

# Used only when neither AUTH_STATE_SECRET nor the anon key is configured; the token is
# then a transport envelope, not a tamper-evident one.
_UNCONFIGURED_SECRET = "spendsense-unconfigured-state"


class ReturnPathCodec:
    """
    Encodes the return path into the opaque, URL-safe `state` token and back.

    decode() never raises: the token travels through third-party infrastructure
    that may truncate or drop it, so every failure reads as "absent".

    decode(encode(p)) == p holds only for paths accepted by `is_return_path`. A path
    that starts with `/` but is scheme-relative (`//host`) or contains CR/LF decodes
    as None, the same as a tampered token, so it can never become a redirect target.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self._serializer = URLSafeSerializer(secret_key=secret or _UNCONFIGURED_SECRET, salt=STATE_SALT)

    @classmethod
    def from_config(cls, cfg: AuthConfig) -> "ReturnPathCodec":
        return cls(cfg.codec_secret)

    def encode(self, return_path: str, issued_at: Optional[float] = None) -> str:
        payload = {
            "returnTo": return_path,
            "issuedAt": time.time() if issued_at is None else issued_at,
        }
        return self._serializer.dumps(payload)

    def load_state(self, token: Optional[str]) -> Optional[OAuthState]:
        if not token or not isinstance(token, str):
            return None
        try:
            data = self._serializer.loads(token)
        except (BadData, TypeError, ValueError):
            logger.debug("OAuth state rejected: bad signature or payload")
            return None
        if not isinstance(data, dict):
            return None
        return_to = data.get("returnTo")
        if not is_return_path(return_to):
            return None
        issued_at = data.get("issuedAt")
        if isinstance(issued_at, bool) or not isinstance(issued_at, (int, float)):
            issued_at = 0.0
        return OAuthState(return_to=return_to, issued_at=float(issued_at))

    def decode(self, token: Optional[str], *, max_age: Optional[float] = None, now: Optional[float] = None) -> Optional[str]:
        state = self.load_state(token)
        if state is None:
            return None
        if max_age is not None:
            current = time.time() if now is None else now
            if current - state.issued_at > max_age:
                logger.debug("OAuth state rejected: older than %ss", max_age)
                return None
        return state.return_to
