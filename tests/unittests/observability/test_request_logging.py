import asyncio
import json
import logging

import pytest

from rosterauth.main.logging import SignInJSONFormatter, record_extras
from rosterauth.main.request_context import (
    bind_attempt,
    bind_correlation_id,
    bind_user_email,
    clear_request_context,
    get_request_context,
)


@pytest.fixture(autouse=True)
def empty_context():
    clear_request_context()


def _record(msg="Sign-in failed", **extras) -> logging.LogRecord:
    record = logging.LogRecord(
        name="rosterauth.authentication.sign_in_flow",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    record.__dict__.update(extras)
    return record


def test_context_binds_and_clears():
    bind_correlation_id("abc")
    bind_attempt("client-a", "attempt-1")

    assert get_request_context() == {
        "correlation_id": "abc",
        "client_session_id": "client-a",
        "attempt_id": "attempt-1",
    }

    clear_request_context()
    assert get_request_context() == {}


def test_user_email_is_stored_masked():
    bind_user_email("jane@school.edu")

    assert get_request_context() == {"user_email": "j***e@school.edu"}


def test_rebinding_same_client_keeps_attempt():
    bind_attempt("client-a", "attempt-1")
    bind_attempt("client-a")

    assert get_request_context()["attempt_id"] == "attempt-1"


def test_binding_another_client_drops_previous_attempt_and_email():
    bind_correlation_id("abc")
    bind_attempt("client-a", "attempt-1")
    bind_user_email("jane@school.edu")

    bind_attempt("client-b")

    assert get_request_context() == {"correlation_id": "abc", "client_session_id": "client-b"}


@pytest.mark.asyncio
async def test_context_is_isolated_per_task():
    async def sign_in(client_session_id):
        bind_attempt(client_session_id)
        await asyncio.sleep(0)
        return get_request_context()["client_session_id"]

    results = await asyncio.gather(sign_in("client-a"), sign_in("client-b"))

    assert results == ["client-a", "client-b"]
    assert get_request_context() == {}


def test_record_extras_skips_record_attributes_and_empty_values():
    record = _record(error_type="StateMismatch", provider_error=None)

    assert record_extras(record) == {"error_type": "StateMismatch"}


def test_json_formatter_includes_context_and_extras():
    bind_correlation_id("abc")
    bind_attempt("client-a")
    record = _record(error_type="StateMismatch", provider_error=None)

    log = json.loads(SignInJSONFormatter().format(record))

    assert log["message"] == "Sign-in failed"
    assert log["level"] == "warning"
    assert log["correlation_id"] == "abc"
    assert log["client_session_id"] == "client-a"
    assert log["error_type"] == "StateMismatch"
    assert "provider_error" not in log


def test_bound_context_wins_over_extra_of_same_name():
    bind_attempt("client-a")
    record = _record(client_session_id="client-b")

    log = json.loads(SignInJSONFormatter().format(record))

    assert log["client_session_id"] == "client-a"
