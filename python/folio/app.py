"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, the admin guard, request-id middleware,
and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including auth failures) get X-Request-ID

Job Runner Lifecycle:
- The process-wide JobRunner is created at startup and stored in app.state
- Shutdown stops accepting jobs and waits for running ones to finish
"""

import json
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from folio.api.routes import create_api_router
from folio.auth import AdminAuthMiddleware
from folio.config import Environment, get_settings
from folio.errors import ApiError, ApiErrorCode
from folio.jobs import JobRunner, set_job_runner
from folio.logging import configure_logging, get_logger
from folio.middleware.request_id import RequestIDMiddleware
from folio.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
)

# Configure structured logging at import time
configure_logging(json_format=True)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the background job runner for the life of the process."""
    settings = get_settings()

    runner = JobRunner(
        max_workers=settings.job_workers,
        retention_s=settings.job_retention_s,
        registry_max=settings.job_registry_max,
    )
    app.state.job_runner = runner
    set_job_runner(runner)
    logger.info("job_runner_started", workers=settings.job_workers)

    yield

    # Running jobs finish; their chapters must not be left in "processing"
    runner.shutdown(wait=True)
    set_job_runner(None)
    app.state.job_runner = None


def create_app(skip_auth_middleware: bool = False) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_auth_middleware: If True, skip the admin guard (for testing).

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Folio API",
        description="Chapter page ingestion backend",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Register exception handlers
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors (including malformed JSON)."""
        return JSONResponse(
            status_code=400,
            content=error_response(ApiErrorCode.E_INVALID_REQUEST, "Invalid request"),
        )

    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Reject malformed JSON bodies before they reach route handlers."""
        if request.method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        return JSONResponse(
                            status_code=400,
                            content=error_response(
                                ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body"
                            ),
                        )
        return await call_next(request)

    app.include_router(create_api_router())

    if not skip_auth_middleware:
        app.add_middleware(AdminAuthMiddleware, admin_secret=settings.admin_secret)
        logger.info(
            "admin_auth_enabled",
            env=settings.folio_env.value,
            secret_configured=bool(settings.admin_secret),
        )
    elif settings.folio_env in (Environment.STAGING, Environment.PROD):
        raise RuntimeError("The admin guard cannot be skipped in staging or prod")

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including auth failures.

    Args:
        app: The FastAPI application.
        log_requests: Whether to log access entries for each request.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
