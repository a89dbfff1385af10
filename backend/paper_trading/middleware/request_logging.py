from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..services.logging_utils import bind_log_context, reset_log_context

logger = logging.getLogger("paper_trading.http")

CORRELATION_HEADER = "x-correlation-id"
_SKIPPED_PREFIXES = ("/docs", "/openapi", "/redoc")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id to every request's log context and echo it back.

    With ``log_bodies`` enabled the request and response summaries are logged
    at DEBUG, including a truncated request body.
    """

    def __init__(self, app, *, log_bodies: bool = False, max_body_length: int = 2048) -> None:  # type: ignore[override]
        super().__init__(app)
        self.log_bodies = log_bodies
        self.max_body_length = max_body_length

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:  # type: ignore[override]
        if request.url.path.startswith(_SKIPPED_PREFIXES):
            return await call_next(request)

        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        tokens = bind_log_context(
            correlation_id=correlation_id,
            extra={"http_method": request.method, "http_path": request.url.path},
        )
        start_time = time.perf_counter()
        try:
            if self.log_bodies:
                body = await request.body()
                logger.debug(
                    "%s %s",
                    request.method,
                    request.url.path,
                    extra={
                        "event": "http_request",
                        "query_string": request.url.query or None,
                        "request_body": self._truncate(body),
                    },
                )

            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            level = logging.WARNING if response.status_code >= 500 else logging.DEBUG
            logger.log(
                level,
                "%s %s -> %s",
                request.method,
                request.url.path,
                response.status_code,
                extra={
                    "event": "http_response",
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            response.headers["X-Correlation-ID"] = correlation_id
            return response
        finally:
            reset_log_context(tokens)

    def _truncate(self, body: bytes) -> str | None:
        if not body:
            return None
        text = body.decode("utf-8", errors="ignore")
        if len(text) > self.max_body_length:
            return text[: self.max_body_length] + "... [truncated]"
        return text
