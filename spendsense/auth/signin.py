from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from spendsense.auth.codec import ReturnPathCodec
from spendsense.auth.config import AuthConfig, load_auth_config
from spendsense.auth.errors import ConfigurationError, ProviderError, as_provider_error
from spendsense.auth.models import AuthResult
from spendsense.auth.provider import IdentityProvider
from spendsense.auth.storage import ReturnPathBackup
from spendsense.auth.util import CALLBACK_PATH, redact_url, sanitize_return_path

logger = logging.getLogger(__name__)


class SignInInitiator:
    """
    Starts the redirect-based sign-in.

    The return path travels twice: inside the signed `state` token and in the backup store.
    """

    def __init__(
        self,
        provider: Optional[IdentityProvider],
        *,
        config: Optional[AuthConfig] = None,
        backup: Optional[ReturnPathBackup] = None,
        codec: Optional[ReturnPathCodec] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cfg = config or load_auth_config()
        self._provider = provider
        self._backup = backup or ReturnPathBackup(None)
        self._codec = codec or ReturnPathCodec.from_config(self._cfg)
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._provider is not None

    def callback_url(self, origin: Optional[str] = None) -> Optional[str]:
        """
        Configured frontend origin first; the serving origin only as a fallback.
        """
        base = (self._cfg.frontend_url or origin or "").strip().rstrip("/")
        if not base:
            return None
        return f"{base}{CALLBACK_PATH}"

    async def sign_in(
        self,
        *,
        redirect_to: Optional[str] = None,
        return_to: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> AuthResult:
        if self._provider is None:
            logger.warning(
                "Identity provider is not configured. Set SPENDSENSE_AUTH_URL and SPENDSENSE_AUTH_ANON_KEY."
            )
            return AuthResult(ok=False, error=ConfigurationError("Identity provider not configured"))

        final_redirect = redirect_to or self.callback_url(origin)
        if not final_redirect:
            return AuthResult(ok=False, error=ConfigurationError("No frontend origin configured (FRONTEND_URL)"))

        safe_return = sanitize_return_path(return_to)
        self._backup.save(safe_return)
        state = self._codec.encode(safe_return, self._clock())

        try:
            result = await self._provider.start_oauth_redirect(redirect_url=final_redirect, opaque_state=state)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OAuth redirect initiation failed: %s", e)
            return AuthResult(ok=False, error=ProviderError("OAuth redirect initiation failed", cause=e))

        if not result.ok:
            error = as_provider_error(result.error, "OAuth redirect rejected") or ProviderError("OAuth redirect rejected")
            logger.warning("OAuth redirect rejected by provider: %s", error)
            return AuthResult(ok=False, error=error)

        logger.info("OAuth redirect started (callback=%s, returnTo=%s)", redact_url(final_redirect), safe_return)
        # With a real browser the page navigates away and nobody observes this value.
        return AuthResult(ok=True, data={"url": result.url, "redirectTo": final_redirect, "returnTo": safe_return})
