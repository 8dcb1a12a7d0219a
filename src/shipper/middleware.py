"""Request correlation for the gateway.

Every request gets an ID, taken from ``X-Request-ID`` when the caller sends
one. It is echoed on the response and stamped onto every log record emitted
while the request is handled, so engine, store and Nomad client logs for one
call can be grouped.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Awaitable, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

CallNext = Callable[[Request], Awaitable[Response]]


class RequestIDFilter(logging.Filter):
    """Adds ``request_id`` to log records; ``-`` outside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_ctx.get() or "-"
        return True


def install_request_id_filter(root: Optional[logging.Logger] = None) -> None:
    """Attach one ``RequestIDFilter`` to each handler of the root logger."""
    root = root or logging.getLogger()
    for handler in root.handlers:
        if not any(isinstance(f, RequestIDFilter) for f in handler.filters):
            handler.addFilter(RequestIDFilter())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns a request ID and logs request start and completion."""

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        try:
            logger.info(
                f"Request started: {request.method} {request.url.path}",
                extra={"request_id": request_id, "method": request.method, "path": request.url.path},
            )
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = round((time.time() - start_time) * 1000, 2)
                logger.error(
                    f"Request failed: {request.method} {request.url.path}: {e}",
                    extra={
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "duration_ms": duration_ms,
                    },
                )
                raise

            duration_ms = round((time.time() - start_time) * 1000, 2)
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                f"Request completed: {request.method} {request.url.path} -> {response.status_code}",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            return response
        finally:
            request_id_ctx.reset(token)
