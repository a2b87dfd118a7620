"""
FastAPI Middleware

- Correlation ID per request (incoming X-Correlation-ID is honored when sane)
- Request logging; probe hits stay at DEBUG, phone numbers in paths are masked
- AppException / unexpected exception handlers
"""
import re
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from crmbot.core.logging import (
    bind_conversation,
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from crmbot.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

# Phone-like user channel ids that appear in session/message paths
_PHONE_IN_PATH_RE = re.compile(r"(\+?\d{3})\d{4}(\d{3})")

# Caller-supplied ids end up in every log line
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_PROBE_PATHS = frozenset({"/health", "/health/ready"})


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Sets the correlation id and clears conversation ids for the request"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        incoming = request.headers.get("X-Correlation-ID")
        if incoming and not _CORRELATION_ID_RE.match(incoming):
            incoming = None
        correlation_id = set_correlation_id(incoming)
        bind_conversation(tenant_id="", session_id="")

        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _mask_path_pii(path: str) -> str:
    """Mask the middle digits of phone numbers found in a URL path"""
    return _PHONE_IN_PATH_RE.sub(r"\1****\2", path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs start and end of every request with its duration"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        started = time.monotonic()
        safe_path = _mask_path_pii(request.url.path)
        is_probe = request.url.path in _PROBE_PATHS
        log_start = logger.debug if is_probe else logger.info

        log_start(
            f"Request started: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    "method": request.method,
                    "path": safe_path,
                    "duration_seconds": round(time.monotonic() - started, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        if response.status_code >= 400:
            log_end = logger.warning
        elif is_probe:
            log_end = logger.debug
        else:
            log_end = logger.info
        log_end(
            f"Request completed: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "status_code": response.status_code,
                "duration_seconds": round(time.monotonic() - started, 4),
            }
        )
        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": _mask_path_pii(request.url.path),
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_path_pii(request.url.path),
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {"correlation_id": get_correlation_id()}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    # Last added is outermost: correlation id must be set before request logging runs
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
