"""Derive a verified identity from the provider's token material.

Three strategies, chosen by ``IDENTITY_STRATEGY``:

* ``id_token``: verify the ID token locally against the provider's JWKS
* ``userinfo``: ask the userinfo endpoint (e.g. Graph ``/me``) with the access token
* ``federated``: trade the provider token with the internal identity backend

Whatever the strategy, the email is normalized and checked against
``ALLOWED_DOMAINS`` before an identity is returned.
"""

import asyncio
import base64
from typing import Any, Callable, Optional

import aiohttp
import jwt
from jwt import PyJWKClient
from pydantic import ValidationError

from rosterauth.authentication.auth_models import AuthAttempt, ProviderEndpoints, TokenBundle
from rosterauth.identity.backend import HttpIdentityBackend, get_identity_backend
from rosterauth.identity.identity import VerifiedIdentity, normalize_email
from rosterauth.main.aiohttp_client import aiohttp_client, request_timeout
from rosterauth.main.config import IdentityStrategy, Settings
from rosterauth.main.exceptions import (
    ConfigError,
    DiscoveryError,
    ExchangeFailed,
    NoEmail,
    NoTokenIssued,
    TenantRestricted,
)
from rosterauth.main.logging import get_logger
from rosterauth.main.request_context import bind_user_email
from rosterauth.observability.redaction import redact_email

logger = get_logger(__name__)

DEFAULT_SIGNING_ALGORITHMS = ["RS256"]

# Entra puts the mailbox in different claims depending on account type and API
EMAIL_CLAIMS = ("email", "mail", "userPrincipalName", "preferred_username", "upn")

# Entra's multi-tenant metadata advertises a templated issuer
TEMPLATED_ISSUER_MARKER = "{tenantid}"


def email_from_claims(claims: dict[str, Any]) -> str:
    for claim in EMAIL_CLAIMS:
        value = normalize_email(claims.get(claim))
        if value and "@" in value:
            return value
    return ""


def display_name_from_claims(claims: dict[str, Any]) -> str:
    name = claims.get("name") or claims.get("displayName")
    if not name:
        parts = [
            claims.get("given_name") or claims.get("givenName"),
            claims.get("family_name") or claims.get("surname"),
        ]
        name = " ".join(p for p in parts if p)
    return (name or "").strip()


def _idna(domain: str) -> str:
    domain = domain.strip().lower()
    try:
        return domain.encode("idna").decode("ascii")
    except UnicodeError:
        return domain


def check_allowed_domain(email: str, allowed_domains: list[str]) -> None:
    """Raise TenantRestricted unless the email's domain is allowed. Empty list allows all."""
    if not allowed_domains:
        return

    local_part, separator, domain_part = email.partition("@")
    if not separator or not local_part or not domain_part or "@" in domain_part:
        raise TenantRestricted("Email claim has invalid format")

    email_domain = _idna(domain_part)
    normalized_allowed = [_idna(domain) for domain in allowed_domains]
    if email_domain not in normalized_allowed:
        logger.error(
            "Email domain not allowed",
            extra={"email_domain": email_domain, "allowed_domains": normalized_allowed},
        )
        raise TenantRestricted(f"Email domain {email_domain} is not allowed")


def compute_at_hash(access_token: str, algorithm: str) -> str:
    alg_obj = jwt.get_algorithm_by_name(algorithm)
    digest = alg_obj.compute_hash_digest(access_token.encode())
    return base64.urlsafe_b64encode(digest[: (len(digest) // 2)]).rstrip(b"=").decode()


def _build_identity(
    subject_id: Optional[str], email: str, display_name: str, settings: Settings
) -> VerifiedIdentity:
    if not email:
        raise NoEmail("Identity carries no email claim")
    if not subject_id:
        raise ExchangeFailed("Identity carries no subject")

    check_allowed_domain(email, settings.allowed_domains)

    bind_user_email(email)
    return VerifiedIdentity(subject_id=subject_id, email=email, display_name=display_name)


class IdTokenIdentityResolver:
    def __init__(
        self,
        settings: Settings,
        *,
        signing_algorithms: Optional[list[str]] = None,
        jwk_client_factory: Callable[..., PyJWKClient] = PyJWKClient,
    ):
        self.settings = settings
        self.signing_algorithms = signing_algorithms or DEFAULT_SIGNING_ALGORITHMS
        self._jwk_client_factory = jwk_client_factory
        self._jwk_clients: dict[str, PyJWKClient] = {}

    def _jwk_client(self, jwks_uri: str) -> PyJWKClient:
        client = self._jwk_clients.get(jwks_uri)
        if client is None:
            client = self._jwk_client_factory(
                jwks_uri, cache_keys=True, timeout=int(self.settings.http_timeout_seconds)
            )
            self._jwk_clients[jwks_uri] = client
        return client

    def _expected_issuer(self, endpoints: ProviderEndpoints) -> Optional[str]:
        if not endpoints.issuer or TEMPLATED_ISSUER_MARKER in endpoints.issuer.lower():
            return None
        return endpoints.issuer

    async def resolve(
        self, token_bundle: TokenBundle, attempt: AuthAttempt, endpoints: ProviderEndpoints
    ) -> VerifiedIdentity:
        id_token = token_bundle.id_token
        if not id_token:
            raise NoTokenIssued("Token response carried no id_token to verify")
        if not endpoints.jwks_uri:
            raise DiscoveryError("Provider metadata has no jwks_uri")

        try:
            signing_key = await asyncio.to_thread(
                self._jwk_client(endpoints.jwks_uri).get_signing_key_from_jwt, id_token
            )
            decoded = jwt.api_jwt.decode_complete(
                id_token,
                key=signing_key.key,
                algorithms=self.signing_algorithms,
                audience=self.settings.oidc_client_id,
                issuer=self._expected_issuer(endpoints),
                leeway=self.settings.oidc_clock_leeway_seconds,
            )
        except jwt.PyJWTError as e:
            logger.error(
                "ID token validation failed",
                extra={
                    "attempt_id": str(attempt.attempt_id),
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            raise ExchangeFailed(f"ID token validation failed: {type(e).__name__}") from e

        payload = decoded["payload"]
        header = decoded["header"]

        if payload.get("nonce") != attempt.nonce:
            logger.error(
                "ID token nonce does not match attempt",
                extra={"attempt_id": str(attempt.attempt_id), "has_nonce": "nonce" in payload},
            )
            raise ExchangeFailed("ID token nonce mismatch")

        # at_hash is optional; when present it must match
        expected_at_hash = payload.get("at_hash")
        if expected_at_hash and token_bundle.access_token:
            computed_at_hash = compute_at_hash(token_bundle.access_token, header["alg"])
            if computed_at_hash != expected_at_hash:
                logger.error(
                    "at_hash validation failed",
                    extra={"attempt_id": str(attempt.attempt_id), "algorithm": header["alg"]},
                )
                raise ExchangeFailed("ID token at_hash mismatch")

        return _build_identity(
            payload.get("oid") or payload.get("sub"),
            email_from_claims(payload),
            display_name_from_claims(payload),
            self.settings,
        )


class UserInfoIdentityResolver:
    def __init__(self, settings: Settings, timeout: Optional[float] = None):
        self.settings = settings
        self.timeout = timeout

    async def resolve(
        self, token_bundle: TokenBundle, attempt: AuthAttempt, endpoints: ProviderEndpoints
    ) -> VerifiedIdentity:
        if not token_bundle.access_token:
            raise NoTokenIssued("Token response carried no access_token for userinfo")

        url = self.settings.userinfo_url or endpoints.userinfo_endpoint
        if not url:
            raise ConfigError("No userinfo endpoint configured or advertised")

        try:
            async with aiohttp_client().get(
                url,
                headers={
                    "Authorization": f"Bearer {token_bundle.access_token}",
                    "Accept": "application/json",
                },
                timeout=request_timeout(self.timeout),
            ) as resp:
                if resp.status != 200:
                    logger.error(
                        f"Userinfo request failed: HTTP {resp.status}",
                        extra={"attempt_id": str(attempt.attempt_id), "userinfo_url": url},
                    )
                    raise ExchangeFailed(f"Userinfo returned HTTP {resp.status}")
                claims = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(
                "Userinfo request failed",
                extra={"userinfo_url": url, "error_type": type(e).__name__},
            )
            raise ExchangeFailed(f"Userinfo request failed: {type(e).__name__}") from e

        if not isinstance(claims, dict):
            raise ExchangeFailed("Userinfo returned a non-object body")

        return _build_identity(
            claims.get("sub") or claims.get("id"),
            email_from_claims(claims),
            display_name_from_claims(claims),
            self.settings,
        )


class FederatedIdentityResolver:
    def __init__(self, settings: Settings, backend: HttpIdentityBackend):
        self.settings = settings
        self.backend = backend

    async def resolve(
        self, token_bundle: TokenBundle, attempt: AuthAttempt, endpoints: ProviderEndpoints
    ) -> VerifiedIdentity:
        if token_bundle.id_token:
            provider_token, token_type = token_bundle.id_token, "id_token"
        else:
            provider_token, token_type = token_bundle.access_token, "access_token"

        backend_session = await self.backend.exchange_federated_credential(
            provider_token, token_type=token_type
        )

        try:
            return _build_identity(
                backend_session.uid,
                normalize_email(backend_session.email),
                (backend_session.display_name or "").strip(),
                self.settings,
            )
        except (NoEmail, TenantRestricted, ValidationError):
            # The backend already opened a session for this uid
            revoked = await self.backend.revoke(backend_session.uid)
            logger.warning(
                "Revoked federated session after identity rejection",
                extra={
                    "uid": backend_session.uid,
                    "email": redact_email(backend_session.email or ""),
                    "revoked": revoked,
                },
            )
            raise


def build_identity_resolver(
    settings: Settings,
) -> IdTokenIdentityResolver | UserInfoIdentityResolver | FederatedIdentityResolver:
    if settings.identity_strategy == IdentityStrategy.USERINFO:
        return UserInfoIdentityResolver(settings)
    if settings.identity_strategy == IdentityStrategy.FEDERATED:
        backend = get_identity_backend()
        if backend is None:
            raise ConfigError("Federated identity requires IDENTITY_BACKEND_URL")
        return FederatedIdentityResolver(settings, backend)
    return IdTokenIdentityResolver(settings)
