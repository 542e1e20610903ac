"""Sign-in fields attached to every log line of the task that set them.

The HTTP middleware binds a correlation id, the flow binds the client session and
attempt it is working on, and the identity resolver binds the (masked) email once
it is known. Each asyncio task sees its own copy.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional
from uuid import UUID

from rosterauth.observability.redaction import redact_email


@dataclass(frozen=True)
class LogContext:
    correlation_id: Optional[str] = None
    client_session_id: Optional[str] = None
    attempt_id: Optional[str] = None
    user_email: Optional[str] = None


_log_context: ContextVar[LogContext] = ContextVar("sign_in_log_context", default=LogContext())


def get_request_context() -> Dict[str, Any]:
    """Return the bound fields, leaving out the ones nobody has set."""
    return {key: value for key, value in asdict(_log_context.get()).items() if value is not None}


def _bind(**values: Optional[str]) -> LogContext:
    context = replace(_log_context.get(), **values)
    _log_context.set(context)
    return context


def bind_correlation_id(correlation_id: str) -> LogContext:
    return _bind(correlation_id=correlation_id)


def bind_attempt(client_session_id: str, attempt_id: UUID | str | None = None) -> LogContext:
    """Bind the client session, and the attempt once one exists.

    A different client session drops the attempt and email of the previous one.
    """
    current = _log_context.get()
    if current.client_session_id != client_session_id:
        return _bind(
            client_session_id=client_session_id,
            attempt_id=str(attempt_id) if attempt_id else None,
            user_email=None,
        )
    return _bind(attempt_id=str(attempt_id) if attempt_id else current.attempt_id)


def bind_user_email(email: str) -> LogContext:
    # Only the masked form ever reaches a log line
    return _bind(user_email=redact_email(email))


def clear_request_context() -> None:
    _log_context.set(LogContext())
