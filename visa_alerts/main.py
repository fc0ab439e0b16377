"""Visa Alerts: Main FastAPI Application.

Visa expiry notification engine for HR: milestone sweeps, manual
notifications, and an append-only audit ledger of every email sent.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import close_db, get_settings, init_db
from .schemas import ErrorDetail, ErrorResponse
from .services.exceptions import (
    EmployeeNotFoundError,
    InvalidTriggerError,
    NotificationEngineError,
    RunFatalError,
)

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    # Startup - skip init_db in production (tables are managed by the HR application)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## Visa Alerts API

    Notifies employees before their visa expires.

    ### Key Features

    - **Milestone Sweeps**: A daily run emails employees exactly 30, 15, 7 and 1 days before expiry.
    - **Manual Notifications**: HR can notify a single employee on demand.
    - **Audit Ledger**: Every delivery attempt is recorded; successful ones are never repeated.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================


def _error_response(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=str(exc), details=[]).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="validation_error",
            message="Request validation failed",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err["loc"]),
                    message=err["msg"],
                    code=err["type"],
                )
                for err in exc.errors()
            ],
        ).model_dump(),
    )


@app.exception_handler(EmployeeNotFoundError)
async def employee_not_found_handler(request: Request, exc: EmployeeNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, "employee_not_found", exc)


@app.exception_handler(InvalidTriggerError)
async def invalid_trigger_handler(request: Request, exc: InvalidTriggerError):
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_trigger", exc)


@app.exception_handler(RunFatalError)
async def run_fatal_handler(request: Request, exc: RunFatalError):
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "run_failed", exc)


@app.exception_handler(NotificationEngineError)
async def engine_error_handler(request: Request, exc: NotificationEngineError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "notification_error", exc)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message=f"An unexpected error occurred: {str(exc)[:200]}",
            details=[],
        ).model_dump(),
    )


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "visa_alerts.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
