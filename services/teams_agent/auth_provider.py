"""
App-credential token provider for Microsoft Graph.

Uses the MSAL client-credentials flow and keeps the token in memory until
shortly before it expires.
"""
import asyncio
import logging
import time
from typing import Optional

from msal import ConfidentialClientApplication

from shared.config import get_settings
from shared.errors import ServiceUnavailableError, UpstreamError

logger = logging.getLogger(__name__)
settings = get_settings()

# Refresh this many seconds before the token actually expires
EXPIRY_SKEW_SECONDS = 60


class GraphAuthProvider:
    """Acquires and caches Graph bearer tokens."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        authority: Optional[str] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.azure_client_id
        self.client_secret = client_secret if client_secret is not None else settings.azure_client_secret
        self.authority = authority or settings.get_authority()
        self.app: Optional[ConfidentialClientApplication] = None
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    def is_available(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _get_app(self) -> ConfidentialClientApplication:
        if self.app is None:
            self.app = ConfidentialClientApplication(
                client_id=self.client_id,
                client_credential=self.client_secret,
                authority=self.authority,
            )
        return self.app

    async def get_app_token(self) -> str:
        """Return a cached token or acquire a new one."""
        if not self.is_available():
            raise ServiceUnavailableError("Microsoft Graph credentials are not configured")

        if self._token and time.time() < self._expires_at:
            return self._token

        async with self._lock:
            if self._token and time.time() < self._expires_at:
                return self._token

            try:
                # MSAL is synchronous
                result = await asyncio.to_thread(
                    self._get_app().acquire_token_for_client,
                    scopes=[settings.graph_scope],
                )
            except Exception as e:
                logger.error(f"Token acquisition failed: {e}")
                raise UpstreamError(f"Failed to acquire Graph token: {e}")

            if not result or "access_token" not in result:
                description = (result or {}).get("error_description", "Unknown error")
                logger.error(f"Token acquisition failed: {description}")
                raise UpstreamError(f"Failed to acquire Graph token: {description}")

            expires_in = int(result.get("expires_in", 3600))
            self._token = result["access_token"]
            self._expires_at = time.time() + max(expires_in - EXPIRY_SKEW_SECONDS, 0)
            logger.info("Acquired Microsoft Graph app token", extra={"expires_in": expires_in})
            return self._token

    def clear_cache(self) -> None:
        self._token = None
        self._expires_at = 0.0
