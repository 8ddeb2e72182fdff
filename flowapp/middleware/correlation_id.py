from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from flowapp.context import reset_correlation_id, set_correlation_id
from flowapp.middleware.request_logging import TEAM_HEADER


CORRELATION_HEADER = "x-correlation-id"
MAX_CORRELATION_ID_LENGTH = 128


def resolve_correlation_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if not candidate or len(candidate) > MAX_CORRELATION_ID_LENGTH:
        return str(uuid.uuid4())
    return candidate


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        team_id = request.headers.get(TEAM_HEADER)
        request.state.correlation_id = correlation_id
        request.state.team_id = team_id

        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if team_id:
                span.set_attribute("team_id", team_id)

        # flow executions started by this request inherit the id through the context var
        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
