import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiohttp
from pydantic import ValidationError

from rosterauth.authentication.auth_models import AuthAttempt, ProviderEndpoints, TokenBundle
from rosterauth.authentication.provider_errors import classify_provider_error
from rosterauth.main.aiohttp_client import aiohttp_client, request_timeout
from rosterauth.main.config import Settings
from rosterauth.main.exceptions import ExchangeFailed, NoTokenIssued
from rosterauth.main.logging import get_logger
from rosterauth.observability.redaction import redact_code, sanitize_payload

logger = get_logger(__name__)


class TokenExchanger:
    """Code-for-token exchange against the resolved token endpoint.

    Never retries: authorization codes are single-use, so a failure needs a
    brand-new attempt.
    """

    def __init__(self, settings: Settings, timeout: Optional[float] = None):
        self.settings = settings
        self.timeout = timeout

    def _token_request(self, code: str, attempt: AuthAttempt) -> dict[str, str]:
        token_data = {
            "grant_type": "authorization_code",
            "client_id": self.settings.oidc_client_id,
            "code": code,
            "redirect_uri": attempt.redirect_uri,
            "code_verifier": attempt.code_verifier,
        }
        if self.settings.oidc_client_secret:
            token_data["client_secret"] = self.settings.oidc_client_secret
        return token_data

    async def exchange(
        self, code: str, attempt: AuthAttempt, endpoints: ProviderEndpoints
    ) -> TokenBundle:
        token_endpoint = endpoints.token_endpoint
        log_extra = {
            "attempt_id": str(attempt.attempt_id),
            "token_endpoint": token_endpoint,
            "code": redact_code(code),
        }

        logger.debug("Exchanging authorization code for tokens", extra=log_extra)

        try:
            async with aiohttp_client().post(
                token_endpoint,
                data=self._token_request(code, attempt),
                headers={"Accept": "application/json"},
                timeout=request_timeout(self.timeout),
            ) as resp:
                if resp.status != 200:
                    # Capture IdP error response for debugging
                    try:
                        error_body = await resp.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        error_body = {"error": await resp.text()}
                    if not isinstance(error_body, dict):
                        error_body = {"error": str(error_body)}
                    self._raise_exchange_failed(resp.status, error_body, log_extra)

                token_response = await resp.json(content_type=None)
        except ExchangeFailed:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(
                "Token exchange request failed",
                extra={**log_extra, "error": str(e), "error_type": type(e).__name__},
            )
            raise ExchangeFailed(f"Token request failed: {type(e).__name__}") from e

        return self._bundle_from_response(token_response, log_extra)

    def _raise_exchange_failed(self, http_status: int, error_body: dict, log_extra: dict):
        error = error_body.get("error")
        error_description = error_body.get("error_description")
        classified = classify_provider_error(
            error, error_description, error_body.get("error_codes")
        )

        logger.error(
            f"Token exchange failed: HTTP {http_status}",
            extra={
                **log_extra,
                "http_status": http_status,
                "error_response": sanitize_payload(error_body),
                "classified_as": type(classified).__name__,
            },
        )
        failure = ExchangeFailed(
            f"HTTP {http_status}: {error}",
            error=error,
            error_description=error_description,
            user_message=classified.user_message,
            provider_error=classified,
        )
        raise failure

    def _bundle_from_response(self, token_response, log_extra: dict) -> TokenBundle:
        if not isinstance(token_response, dict):
            raise NoTokenIssued("Token endpoint returned a non-object body")

        id_token = token_response.get("id_token")
        access_token = token_response.get("access_token")

        expires_at = None
        expires_in = token_response.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                logger.warning(
                    "Ignoring unparseable expires_in",
                    extra={**log_extra, "expires_in": expires_in},
                )

        try:
            bundle = TokenBundle(
                id_token=id_token, access_token=access_token, expires_at=expires_at
            )
        except ValidationError as e:
            logger.error(
                "Missing id_token and access_token in response",
                extra={
                    **log_extra,
                    "has_id_token": bool(id_token),
                    "has_access_token": bool(access_token),
                },
            )
            raise NoTokenIssued("Token response carried neither id_token nor access_token") from e

        logger.debug(
            "Tokens received",
            extra={
                **log_extra,
                "has_id_token": bool(id_token),
                "has_access_token": bool(access_token),
            },
        )
        return bundle
