"""OIDC discovery with a process-wide cache.

Provider metadata changes rarely, so each issuer's endpoints are fetched once
and kept for ``discovery_cache_ttl_seconds``. A miss or expiry triggers a single
synchronous refetch; concurrent callers wait on the same fetch.
"""

import asyncio
import time
from typing import Optional

import aiohttp
from pydantic import ValidationError

from rosterauth.authentication.auth_models import ProviderEndpoints
from rosterauth.main.aiohttp_client import aiohttp_client, request_timeout
from rosterauth.main.config import get_settings
from rosterauth.main.exceptions import DiscoveryError
from rosterauth.main.logging import get_logger

logger = get_logger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"

# Module-level locks for per-process singleflight
_DISCOVERY_LOCKS: dict[str, asyncio.Lock] = {}


def _get_lock(issuer_url: str) -> asyncio.Lock:
    """Get or create asyncio.Lock for singleflight per issuer."""
    if issuer_url not in _DISCOVERY_LOCKS:
        _DISCOVERY_LOCKS[issuer_url] = asyncio.Lock()
    return _DISCOVERY_LOCKS[issuer_url]


def discovery_url_for(issuer_url: str) -> str:
    issuer_url = issuer_url.rstrip("/")
    if issuer_url.endswith(WELL_KNOWN_PATH):
        return issuer_url
    return f"{issuer_url}{WELL_KNOWN_PATH}"


async def fetch_discovery(discovery_url: str, timeout: Optional[float] = None) -> dict:
    """
    Fetch OIDC discovery document.

    One attempt only; callers decide whether to restart the whole sign-in.

    Raises:
        DiscoveryError: unreachable, non-200, or not a JSON object
    """
    try:
        async with aiohttp_client().get(
            discovery_url, timeout=request_timeout(timeout)
        ) as resp:
            if resp.status != 200:
                logger.error(
                    f"Failed to fetch OIDC discovery document: HTTP {resp.status}",
                    extra={
                        "discovery_url": discovery_url,
                        "http_status": resp.status,
                    },
                )
                raise DiscoveryError(
                    f"Failed to fetch discovery document: HTTP {resp.status}"
                )
            document = await resp.json(content_type=None)
    except DiscoveryError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.error(
            "OIDC discovery request failed",
            extra={
                "discovery_url": discovery_url,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        raise DiscoveryError(f"Discovery request failed: {type(e).__name__}") from e

    if not isinstance(document, dict):
        raise DiscoveryError("Discovery document is not a JSON object")
    return document


class DiscoveryResolver:
    """Resolves and caches provider endpoints per issuer."""

    def __init__(self, ttl_seconds: Optional[int] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.ttl_seconds = ttl_seconds or settings.discovery_cache_ttl_seconds
        self.timeout = timeout
        self._cache: dict[str, tuple[ProviderEndpoints, float]] = {}

    def _cached(self, issuer_url: str) -> Optional[ProviderEndpoints]:
        entry = self._cache.get(issuer_url)
        if entry is None:
            return None
        endpoints, fetched_at = entry
        if time.monotonic() - fetched_at >= self.ttl_seconds:
            return None
        return endpoints

    def invalidate(self, issuer_url: Optional[str] = None) -> None:
        if issuer_url is None:
            self._cache.clear()
        else:
            self._cache.pop(issuer_url.rstrip("/"), None)

    async def resolve(self, issuer_url: str) -> ProviderEndpoints:
        issuer_url = issuer_url.rstrip("/")

        endpoints = self._cached(issuer_url)
        if endpoints is not None:
            logger.debug("Discovery cache HIT", extra={"issuer": issuer_url})
            return endpoints

        async with _get_lock(issuer_url):
            # Double-check after acquiring lock (another coroutine might have fetched)
            endpoints = self._cached(issuer_url)
            if endpoints is not None:
                return endpoints

            document = await fetch_discovery(
                discovery_url_for(issuer_url), timeout=self.timeout
            )
            try:
                endpoints = ProviderEndpoints.model_validate(document)
            except ValidationError as e:
                missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
                logger.error(
                    "Discovery document missing required fields",
                    extra={"issuer": issuer_url, "missing_fields": missing},
                )
                raise DiscoveryError(
                    f"Discovery document missing required fields: {', '.join(missing)}"
                ) from e

            self._cache[issuer_url] = (endpoints, time.monotonic())
            logger.info(
                "Resolved provider endpoints",
                extra={
                    "issuer": issuer_url,
                    "authorization_endpoint": endpoints.authorization_endpoint,
                    "token_endpoint": endpoints.token_endpoint,
                },
            )
            return endpoints


_resolver: Optional[DiscoveryResolver] = None


def get_discovery_resolver() -> DiscoveryResolver:
    """Process-wide resolver so every sign-in shares one cache."""
    global _resolver
    if _resolver is None:
        _resolver = DiscoveryResolver()
    return _resolver


def reset_discovery_resolver() -> None:
    global _resolver
    _resolver = None
