"""PKCE (RFC 7636, S256 only) authorization request construction."""

import base64
import hashlib
import secrets
from typing import Optional
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl

from rosterauth.authentication.attempt_store import InMemoryAttemptStore, RedisAttemptStore
from rosterauth.authentication.auth_models import AuthAttempt, ProviderEndpoints
from rosterauth.main.config import Settings
from rosterauth.main.exceptions import ConfigError
from rosterauth.main.logging import get_logger

logger = get_logger(__name__)

# 64 random bytes -> 86 base64url characters, inside RFC 7636's 43..128 window
VERIFIER_ENTROPY_BYTES = 64
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(VERIFIER_ENTROPY_BYTES)


def code_challenge_for(code_verifier: str) -> str:
    """Unpadded URL-safe base64 of SHA-256(verifier)."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    return secrets.token_urlsafe(32)


def _with_query(url: str, params: dict[str, str]) -> str:
    # Some providers publish authorization endpoints that already carry a query (e.g. B2C policies)
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True) + list(params.items())
    return urlunparse(parsed._replace(query=urlencode(query)))


class PKCERequestBuilder:
    def __init__(
        self,
        settings: Settings,
        attempt_store: InMemoryAttemptStore | RedisAttemptStore,
    ):
        self.settings = settings
        self.attempt_store = attempt_store

    def _require_config(self) -> tuple[str, str]:
        client_id = self.settings.oidc_client_id
        redirect_uri = self.settings.effective_redirect_uri
        if not client_id:
            logger.error("OIDC_CLIENT_ID is not configured")
            raise ConfigError("Missing client id")
        if not redirect_uri:
            logger.error("OIDC_REDIRECT_URI is not configured")
            raise ConfigError("Missing redirect URI")
        return client_id, redirect_uri

    async def build(
        self,
        endpoints: ProviderEndpoints,
        client_session_id: str,
        *,
        login_hint: Optional[str] = None,
    ) -> tuple[AuthAttempt, str]:
        """Create a fresh attempt and the URL that sends the user to the provider.

        The attempt is registered under its state token, replacing any attempt
        still pending for the same client session.
        """
        client_id, redirect_uri = self._require_config()

        code_verifier = generate_code_verifier()
        attempt = AuthAttempt(
            client_session_id=client_session_id,
            code_verifier=code_verifier,
            expected_state=generate_state(),
            nonce=generate_nonce(),
            redirect_uri=redirect_uri,
        )

        params = {
            "client_id": client_id,
            "response_type": "code",
            "scope": " ".join(self.settings.oidc_scopes),
            "redirect_uri": redirect_uri,
            "code_challenge": code_challenge_for(code_verifier),
            "code_challenge_method": "S256",
            "state": attempt.expected_state,
            "nonce": attempt.nonce,
        }
        if self.settings.oidc_prompt:
            params["prompt"] = self.settings.oidc_prompt
        if login_hint:
            params["login_hint"] = login_hint

        authorization_url = _with_query(endpoints.authorization_endpoint, params)

        replaced = await self.attempt_store.register(attempt)
        if replaced is not None:
            logger.info(
                "Replaced pending sign-in attempt",
                extra={
                    "client_session_id": client_session_id,
                    "replaced_attempt_id": str(replaced.attempt_id),
                },
            )

        logger.debug(
            "Built authorization request",
            extra={
                "attempt_id": str(attempt.attempt_id),
                "client_session_id": client_session_id,
                "authorization_endpoint": endpoints.authorization_endpoint,
                "redirect_uri": redirect_uri,
            },
        )
        return attempt, authorization_url
