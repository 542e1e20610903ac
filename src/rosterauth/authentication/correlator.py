"""Matching provider redirects to pending attempts.

The provider answers on the redirect URI with either ``code`` + ``state`` or an
OAuth error. Parameters may arrive in the query string or the URL fragment.
Every code is run through the exchange step at most once; duplicate deliveries
of the same redirect share the outcome of the first, but only with the client
session that owns the attempt.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar
from urllib.parse import parse_qsl, urlparse

from rosterauth.authentication.attempt_store import InMemoryAttemptStore, RedisAttemptStore
from rosterauth.authentication.auth_models import AuthAttempt, RedirectParams
from rosterauth.authentication.provider_errors import classify_provider_error
from rosterauth.main.config import get_settings
from rosterauth.main.exceptions import MissingCode, StateMismatch, UserCancelled
from rosterauth.main.logging import get_logger
from rosterauth.observability.redaction import redact_code

logger = get_logger(__name__)

T = TypeVar("T")

OAUTH_PARAM_NAMES = {"code", "state", "error", "error_description", "error_codes"}


def _params_from_string(raw: str) -> dict[str, str]:
    raw = raw.strip()
    if "://" in raw:
        parsed = urlparse(raw)
        query = dict(parse_qsl(parsed.query, keep_blank_values=True))
        fragment = dict(parse_qsl(parsed.fragment, keep_blank_values=True))
    else:
        raw = raw.lstrip("?")
        query_part, _, fragment_part = raw.partition("#")
        query = dict(parse_qsl(query_part, keep_blank_values=True))
        fragment = dict(parse_qsl(fragment_part, keep_blank_values=True))

    # Fragment only wins when the query carries no OAuth parameters at all
    if OAUTH_PARAM_NAMES & query.keys():
        return query
    return fragment


def parse_redirect(raw: str | Mapping[str, Any]) -> RedirectParams:
    """Extract OAuth parameters from a redirect URL, query, fragment, or mapping."""
    if isinstance(raw, Mapping):
        params = {k: v for k, v in raw.items() if v is not None}
        if "redirect_url" in params and not (OAUTH_PARAM_NAMES & params.keys()):
            params = _params_from_string(str(params["redirect_url"]))
    else:
        params = _params_from_string(raw)

    return RedirectParams(
        code=params.get("code") or None,
        state=params.get("state") or None,
        error=params.get("error") or None,
        error_description=params.get("error_description") or None,
        error_codes=params.get("error_codes") or None,
    )


@dataclass
class _CodeEntry:
    state: str
    attempt_id: str
    client_session_id: str
    outcome: asyncio.Future
    completed_at: Optional[float] = None


@dataclass
class ProcessedCodeSet:
    """Authorization codes already handed to the exchange step.

    A code is claimed before its exchange. A successful exchange keeps the code
    (and its outcome) until ``ttl_seconds`` pass; a failed one is released so a
    genuine retry is never blocked.
    """

    ttl_seconds: int
    _entries: dict[str, _CodeEntry] = field(default_factory=dict)

    def __contains__(self, code: str) -> bool:
        self._purge()
        return code in self._entries

    def __len__(self) -> int:
        self._purge()
        return len(self._entries)

    def _purge(self) -> None:
        now = time.monotonic()
        expired = [
            code
            for code, entry in self._entries.items()
            if entry.completed_at is not None and now - entry.completed_at >= self.ttl_seconds
        ]
        for code in expired:
            del self._entries[code]

    def get(self, code: str) -> Optional[_CodeEntry]:
        self._purge()
        return self._entries.get(code)

    def claim(self, code: str, attempt: AuthAttempt) -> _CodeEntry:
        entry = _CodeEntry(
            state=attempt.expected_state,
            attempt_id=str(attempt.attempt_id),
            client_session_id=attempt.client_session_id,
            outcome=asyncio.get_running_loop().create_future(),
        )
        self._entries[code] = entry
        return entry

    def complete(self, code: str, entry: _CodeEntry, result: Any) -> None:
        if not entry.outcome.done():
            entry.outcome.set_result(result)
        # A cancelled attempt may have released the code while the exchange ran
        if self._entries.get(code) is entry:
            entry.completed_at = time.monotonic()

    def release(self, code: str, entry: _CodeEntry, exc: BaseException) -> None:
        if not entry.outcome.done():
            if isinstance(exc, asyncio.CancelledError):
                exc = UserCancelled("Sign-in abandoned while the code was being exchanged")
            entry.outcome.set_exception(exc)
            # Mark as retrieved; duplicates awaiting it still see the exception
            entry.outcome.exception()
        if self._entries.get(code) is entry:
            del self._entries[code]

    def release_state(self, state: str) -> int:
        """Drop every not-yet-successful entry that belongs to ``state``."""
        stale = [
            code
            for code, entry in self._entries.items()
            if entry.state == state and entry.completed_at is None
        ]
        for code in stale:
            del self._entries[code]
        return len(stale)


class ResponseCorrelator:
    def __init__(
        self,
        attempt_store: InMemoryAttemptStore | RedisAttemptStore,
        processed_codes: Optional[ProcessedCodeSet] = None,
    ):
        self.attempt_store = attempt_store
        if processed_codes is None:
            processed_codes = ProcessedCodeSet(ttl_seconds=get_settings().oidc_state_ttl_seconds)
        self.processed_codes = processed_codes
        # Serializes the duplicate check with the claim so two deliveries cannot both claim
        self._claim_lock = asyncio.Lock()
        self._discard_listeners: list[Callable[[AuthAttempt], None]] = []

    def add_discard_listener(self, listener: Callable[[AuthAttempt], None]) -> None:
        """Call ``listener`` with every attempt a failed redirect throws away."""
        self._discard_listeners.append(listener)

    async def correlate(
        self,
        raw_response: str | Mapping[str, Any],
        *,
        client_session_id: Optional[str] = None,
    ) -> tuple[str, AuthAttempt]:
        """Validate a redirect and return its authorization code with the matching attempt.

        When ``client_session_id`` is given it must be the session that started
        the attempt.

        Raises:
            UserCancelled | ProviderError: the provider returned an error
            MissingCode: success without a code
            StateMismatch: state unknown, expired, or owned by another client session
        """
        params = parse_redirect(raw_response)
        return await self._correlate(params, client_session_id)

    async def _correlate(
        self, params: RedirectParams, client_session_id: Optional[str]
    ) -> tuple[str, AuthAttempt]:
        if params.has_error:
            failure = classify_provider_error(
                params.error, params.error_description, params.error_codes
            )
            if params.state:
                await self._discard(params.state)
            logger.warning(
                "Provider returned an error on redirect",
                extra={
                    "error": params.error,
                    "error_description": params.error_description,
                    "classified_as": type(failure).__name__,
                },
            )
            raise failure

        if not params.code:
            if params.state:
                await self._discard(params.state)
            logger.error(
                "Redirect carried no authorization code",
                extra={"has_state": bool(params.state)},
            )
            raise MissingCode("Redirect without code")

        # The store matches the state exactly; a prefix or case variant finds nothing
        attempt = await self.attempt_store.get(params.state) if params.state else None
        if attempt is None:
            logger.error(
                "Redirect state does not match any pending attempt",
                extra={"has_state": bool(params.state), "code": redact_code(params.code)},
            )
            raise StateMismatch("Unknown or expired state")

        if client_session_id is not None and client_session_id != attempt.client_session_id:
            # Left pending so the owning session can still finish
            logger.error(
                "Redirect delivered by a client session that did not start the attempt",
                extra={"attempt_id": str(attempt.attempt_id), "code": redact_code(params.code)},
            )
            raise StateMismatch("State belongs to another client session")

        return params.code, attempt

    async def run_once(
        self,
        raw_response: str | Mapping[str, Any],
        continuation: Callable[[str, AuthAttempt], Awaitable[T]],
        *,
        client_session_id: Optional[str] = None,
    ) -> T:
        """Correlate a redirect and run ``continuation`` at most once per code.

        A duplicate delivery of a code from the owning client session returns (or
        raises) whatever the first delivery produced, waiting for it if it is
        still in flight. Duplicates from anywhere else are refused.
        """
        params = parse_redirect(raw_response)

        async with self._claim_lock:
            duplicate = self._duplicate_of(params, client_session_id)
            if duplicate is None:
                code, attempt = await self._correlate(params, client_session_id)
                entry = self.processed_codes.claim(code, attempt)

        if duplicate is not None:
            logger.info(
                "Duplicate redirect delivery; reusing first outcome",
                extra={"code": redact_code(params.code), "attempt_id": duplicate.attempt_id},
            )
            return await asyncio.shield(duplicate.outcome)

        try:
            result = await continuation(code, attempt)
        except BaseException as exc:
            self.processed_codes.release(code, entry, exc)
            raise
        else:
            self.processed_codes.complete(code, entry, result)
            return result
        finally:
            # The attempt is single-use whatever happened
            await self.attempt_store.discard(attempt.expected_state)

    def _duplicate_of(
        self, params: RedirectParams, client_session_id: Optional[str]
    ) -> Optional[_CodeEntry]:
        if params.has_error or not params.code:
            return None
        entry = self.processed_codes.get(params.code)
        if entry is None:
            return None
        if entry.state != params.state:
            logger.error(
                "Known authorization code replayed with a different state",
                extra={"code": redact_code(params.code)},
            )
            raise StateMismatch("Code replayed with foreign state")
        if client_session_id != entry.client_session_id:
            logger.error(
                "Known authorization code replayed from another client session",
                extra={"code": redact_code(params.code), "attempt_id": entry.attempt_id},
            )
            raise StateMismatch("Code replayed from another client session")
        return entry

    async def cancel(self, client_session_id: str) -> Optional[AuthAttempt]:
        """Abandon the client's pending attempt without leaking claimed codes."""
        attempt = await self.attempt_store.discard_for_client(client_session_id)
        if attempt is not None:
            released = self.processed_codes.release_state(attempt.expected_state)
            logger.info(
                "Sign-in attempt cancelled",
                extra={
                    "client_session_id": client_session_id,
                    "attempt_id": str(attempt.attempt_id),
                    "released_codes": released,
                },
            )
        return attempt

    async def _discard(self, state: str) -> Optional[AuthAttempt]:
        attempt = await self.attempt_store.discard(state)
        if attempt is not None:
            self.processed_codes.release_state(state)
            for listener in self._discard_listeners:
                listener(attempt)
        return attempt
