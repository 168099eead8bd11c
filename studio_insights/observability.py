from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from .errors import DependencyError, InsightsError


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach one stream handler to the root logger; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))


class RequestTimingLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per request and sets an 'X-Process-Time-Ms' response header."""

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("request")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Process-Time-Ms"] = str(duration_ms)

        self.logger.info(
            "method=%s path=%s status=%s duration_ms=%s ip=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.client.host if request.client else "?",
        )
        return response


def error_payload(status: int, message: str, path: str) -> dict:
    return {"ok": False, "error": {"status": status, "message": message, "path": path}}


def add_exception_handlers(app: FastAPI) -> None:
    """Register consistent error payload shapes for service, HTTP and generic exceptions."""

    @app.exception_handler(InsightsError)
    async def insights_exception_handler(request: Request, exc: InsightsError):
        if exc.status_code >= 500:
            logging.getLogger("error").error("%s: %s", type(exc).__name__, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(exc.status_code, exc.message, request.url.path),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else ""
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(exc.status_code, message, request.url.path),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        logging.getLogger("error").exception("Database error: %s", exc)
        err = DependencyError("Database error")
        return JSONResponse(
            status_code=err.status_code,
            content=error_payload(err.status_code, err.message, request.url.path),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logging.getLogger("error").exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content=error_payload(500, "Internal server error", request.url.path))
