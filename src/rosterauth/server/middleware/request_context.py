from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from rosterauth.main.request_context import bind_correlation_id, clear_request_context

CORRELATION_HEADER = "X-Correlation-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a correlation id to every log line emitted while serving a request."""

    async def dispatch(self, request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid4().hex
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
