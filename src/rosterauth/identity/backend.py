"""Client for the internal identity/profile backend.

The backend trades provider tokens for its own federated sessions and can revoke
them. One client is created per process.
"""

import asyncio
import threading
from typing import Any, Optional

import aiohttp

from rosterauth.identity.identity import BackendSession
from rosterauth.main.aiohttp_client import aiohttp_client, request_timeout
from rosterauth.main.config import Settings, get_settings
from rosterauth.main.exceptions import FederationFailed
from rosterauth.main.logging import get_logger

logger = get_logger(__name__)


class HttpIdentityBackend:
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _post(self, path: str, payload: dict[str, Any]) -> tuple[int, Any]:
        async with aiohttp_client().post(
            f"{self.base_url}{path}",
            json=payload,
            headers=self._headers(),
            timeout=request_timeout(self.timeout),
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                body = None
            return resp.status, body

    async def exchange_federated_credential(
        self, provider_token: str, *, token_type: str = "id_token"
    ) -> BackendSession:
        try:
            status, body = await self._post(
                "/federation/exchange",
                {"provider_token": provider_token, "token_type": token_type},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(
                "Identity backend unreachable",
                extra={"base_url": self.base_url, "error_type": type(e).__name__},
            )
            raise FederationFailed(f"Backend request failed: {type(e).__name__}") from e

        if status != 200 or not isinstance(body, dict) or not body.get("uid"):
            logger.error(
                "Identity backend rejected federated credential",
                extra={"http_status": status, "has_body": isinstance(body, dict)},
            )
            raise FederationFailed(f"Backend returned HTTP {status}")

        return BackendSession(
            uid=str(body["uid"]),
            email=body.get("email"),
            display_name=body.get("display_name") or body.get("displayName"),
            session_token=body.get("session_token"),
        )

    async def revoke(self, uid: str) -> bool:
        """Revoke every backend session for ``uid``. Returns False if the backend refused."""
        try:
            status, _ = await self._post("/sessions/revoke", {"uid": uid})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(
                "Failed to revoke backend sessions",
                extra={"uid": uid, "error_type": type(e).__name__},
            )
            return False

        if status not in (200, 204):
            logger.error(
                "Identity backend refused session revocation",
                extra={"uid": uid, "http_status": status},
            )
            return False
        return True


_backend: Optional[HttpIdentityBackend] = None
_backend_lock = threading.Lock()


def _create_backend(settings: Settings) -> Optional[HttpIdentityBackend]:
    if not settings.identity_backend_url:
        return None
    logger.info(
        "Initializing identity backend client",
        extra={"base_url": settings.identity_backend_url},
    )
    return HttpIdentityBackend(
        settings.identity_backend_url,
        api_key=settings.identity_backend_api_key,
    )


def get_identity_backend() -> Optional[HttpIdentityBackend]:
    """Process-wide backend client, created on first use. None when not configured."""
    global _backend
    if _backend is None:
        with _backend_lock:
            if _backend is None:
                _backend = _create_backend(get_settings())
    return _backend


def set_identity_backend(backend: Optional[HttpIdentityBackend]) -> None:
    global _backend
    with _backend_lock:
        _backend = backend


def reset_identity_backend() -> None:
    set_identity_backend(None)
