"""The sign-in pipeline.

discovery -> PKCE request -> (browser round-trip) -> correlation -> token exchange
-> identity -> roster gate -> session

``begin`` registers a pending attempt and returns the provider URL. The flow then
waits for nothing: ``handle_redirect`` is the inbound event that resumes it when
the provider sends the browser back.
"""

from typing import Any, Mapping, Optional

from rosterauth.authentication.attempt_store import InMemoryAttemptStore, RedisAttemptStore
from rosterauth.authentication.auth_models import (
    AuthAttempt,
    InitiateAuthResponse,
    SignInResult,
    SignInStatus,
)
from rosterauth.authentication.correlator import ProcessedCodeSet, ResponseCorrelator
from rosterauth.authentication.discovery import DiscoveryResolver, get_discovery_resolver
from rosterauth.authentication.pkce import PKCERequestBuilder
from rosterauth.authentication.token_exchanger import TokenExchanger
from rosterauth.identity.backend import get_identity_backend
from rosterauth.identity.identity_resolver import (
    FederatedIdentityResolver,
    IdTokenIdentityResolver,
    UserInfoIdentityResolver,
    build_identity_resolver,
)
from rosterauth.main.config import Settings
from rosterauth.main.exceptions import AuthFlowError, ConfigError
from rosterauth.main.logging import get_logger
from rosterauth.main.request_context import bind_attempt
from rosterauth.roster.roster import Denied
from rosterauth.roster.roster_gate import RosterGate
from rosterauth.roster.roster_repo import InMemoryRosterRepository, RedisRosterRepository
from rosterauth.sessions.session import Session
from rosterauth.sessions.session_registry import InMemorySessionRegistry, RedisSessionRegistry
from rosterauth.sessions.session_service import SessionService
from rosterauth.users.profile_repo import InMemoryProfileRepository, RedisProfileRepository

logger = get_logger(__name__)


class SignInFlow:
    def __init__(
        self,
        settings: Settings,
        *,
        discovery: DiscoveryResolver,
        request_builder: PKCERequestBuilder,
        correlator: ResponseCorrelator,
        token_exchanger: TokenExchanger,
        identity_resolver: IdTokenIdentityResolver
        | UserInfoIdentityResolver
        | FederatedIdentityResolver,
        roster_gate: RosterGate,
        session_service: SessionService,
    ):
        self.settings = settings
        self.discovery = discovery
        self.request_builder = request_builder
        self.correlator = correlator
        self.token_exchanger = token_exchanger
        self.identity_resolver = identity_resolver
        self.roster_gate = roster_gate
        self.session_service = session_service
        self._status: dict[str, SignInStatus] = {}
        self.correlator.add_discard_listener(self._attempt_discarded)

    def status(self, client_session_id: str) -> SignInStatus:
        return self._status.get(client_session_id, SignInStatus.IDLE)

    def _set_status(self, client_session_id: str, status: SignInStatus) -> None:
        if status == SignInStatus.IDLE:
            self._status.pop(client_session_id, None)
        else:
            self._status[client_session_id] = status

    def _attempt_discarded(self, attempt: AuthAttempt) -> None:
        # The redirect may arrive without the owner's cookie
        if self.status(attempt.client_session_id) == SignInStatus.AWAITING_PROVIDER:
            self._set_status(attempt.client_session_id, SignInStatus.IDLE)

    def _issuer_url(self) -> str:
        if not self.settings.oidc_issuer_url:
            logger.error("OIDC_ISSUER_URL is not configured")
            raise ConfigError("Missing issuer URL")
        return self.settings.oidc_issuer_url

    async def begin(
        self, client_session_id: str, *, login_hint: Optional[str] = None
    ) -> InitiateAuthResponse:
        bind_attempt(client_session_id)
        try:
            endpoints = await self.discovery.resolve(self._issuer_url())
            attempt, authorization_url = await self.request_builder.build(
                endpoints, client_session_id, login_hint=login_hint
            )
        except AuthFlowError as e:
            self._set_status(client_session_id, SignInStatus.IDLE)
            self._log_failure(e)
            raise

        self._set_status(client_session_id, SignInStatus.AWAITING_PROVIDER)
        bind_attempt(client_session_id, attempt.attempt_id)
        logger.info(
            "Sign-in started",
            extra={"attempt_id": str(attempt.attempt_id), "client_session_id": client_session_id},
        )
        return InitiateAuthResponse(
            authorization_url=authorization_url, state=attempt.expected_state
        )

    async def handle_redirect(
        self,
        raw_response: str | Mapping[str, Any],
        *,
        client_session_id: Optional[str] = None,
    ) -> SignInResult:
        """Resume the pending attempt the redirect belongs to.

        ``client_session_id`` is the session the redirect arrived in; when given it
        must be the one that started the attempt. Denied is returned as a result.
        Every other way of not signing in raises an ``AuthFlowError`` and leaves
        the client idle.
        """
        try:
            return await self.correlator.run_once(
                raw_response, self._complete, client_session_id=client_session_id
            )
        except AuthFlowError as e:
            if client_session_id:
                await self._settle_after_failure(client_session_id)
            self._log_failure(e)
            raise

    async def _settle_after_failure(self, client_session_id: str) -> None:
        """End whatever attempt the delivering client had pending and make it idle.

        A client mid-exchange or already signed in is left alone.
        """
        if self.status(client_session_id) != SignInStatus.AWAITING_PROVIDER:
            return
        await self.correlator.cancel(client_session_id)
        self._set_status(client_session_id, SignInStatus.IDLE)

    async def _complete(self, code: str, attempt: AuthAttempt) -> SignInResult:
        client_session_id = attempt.client_session_id
        bind_attempt(client_session_id, attempt.attempt_id)
        self._set_status(client_session_id, SignInStatus.EXCHANGING)

        try:
            endpoints = await self.discovery.resolve(self._issuer_url())
            token_bundle = await self.token_exchanger.exchange(code, attempt, endpoints)
            identity = await self.identity_resolver.resolve(token_bundle, attempt, endpoints)
            outcome = await self.roster_gate.authorize(identity)

            if isinstance(outcome, Denied):
                self._set_status(client_session_id, SignInStatus.IDLE)
                return SignInResult(granted=False, message=outcome.message)

            session = await self.session_service.grant(outcome)
        except BaseException:
            self._set_status(client_session_id, SignInStatus.IDLE)
            raise

        self._set_status(client_session_id, SignInStatus.SIGNED_IN)
        logger.info(
            "Sign-in complete",
            extra={"attempt_id": str(attempt.attempt_id), "uid": outcome.uid},
        )
        return SignInResult(granted=True, session=session, profile=outcome)

    async def cancel(self, client_session_id: str) -> bool:
        attempt = await self.correlator.cancel(client_session_id)
        if self.status(client_session_id) != SignInStatus.SIGNED_IN:
            self._set_status(client_session_id, SignInStatus.IDLE)
        return attempt is not None

    async def sign_out(self, client_session_id: str, token: str) -> Session:
        session = await self.session_service.revoke(token)
        self._set_status(client_session_id, SignInStatus.IDLE)
        return session

    def _log_failure(self, exc: AuthFlowError) -> None:
        provider_error = getattr(exc, "provider_error", None)
        logger.warning(
            "Sign-in failed",
            extra={
                "error_type": type(exc).__name__,
                "detail": str(exc),
                "provider_error": type(provider_error).__name__ if provider_error else None,
                "retryable": exc.retryable,
            },
        )


def build_sign_in_flow(settings: Settings, redis_client=None) -> SignInFlow:
    """Wire the pipeline, using Redis-backed stores when a client is given."""
    if redis_client is not None:
        attempt_store = RedisAttemptStore(redis_client, settings.oidc_state_ttl_seconds)
        roster_repo = RedisRosterRepository(redis_client)
        profile_repo = RedisProfileRepository(redis_client)
        session_registry = RedisSessionRegistry(redis_client)
    else:
        attempt_store = InMemoryAttemptStore(settings.oidc_state_ttl_seconds)
        roster_repo = InMemoryRosterRepository()
        profile_repo = InMemoryProfileRepository()
        session_registry = InMemorySessionRegistry()

    session_service = SessionService(settings, session_registry, backend=get_identity_backend())

    return SignInFlow(
        settings,
        discovery=get_discovery_resolver(),
        request_builder=PKCERequestBuilder(settings, attempt_store),
        correlator=ResponseCorrelator(
            attempt_store, ProcessedCodeSet(ttl_seconds=settings.oidc_state_ttl_seconds)
        ),
        token_exchanger=TokenExchanger(settings),
        identity_resolver=build_identity_resolver(settings),
        roster_gate=RosterGate(settings, roster_repo, profile_repo, session_service),
        session_service=session_service,
    )
