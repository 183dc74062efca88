"""Structured logging setup and per-request log context.

configure_structlog() routes structlog through stdlib logging at LOG_LEVEL,
rendering JSON in production and console output elsewhere. Context bound
with structlog.contextvars is merged into every event, so anything logged
while a request is handled (client calls, sync engine events) carries the
request's request_id and organization_id.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.tracker.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(message)s")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _organization_id(request: Request) -> str | None:
    # path_params are only populated once routing has matched
    return request.scope.get("path_params", {}).get("organization_id")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Binds request context for the duration of a request and logs its outcome.

    An incoming X-Request-ID is reused so callers can correlate their own
    logs; otherwise one is generated. The ID is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        start_time = time.monotonic()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                    organization_id=_organization_id(request),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            if request.url.path == "/metrics":
                return response

            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "http.request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                organization_id=_organization_id(request),
            )
        return response
