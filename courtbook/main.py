"""
FastAPI application entry point.

This module creates and configures the FastAPI application.
Using an application factory pattern (create_app function) because:
- Easier to test with different configurations
- Explicit about initialization order

For local development:
    uvicorn courtbook.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.dependencies import close_ledger, get_ledger
from .api.routes import balance, classes, earnings, health
from .config.settings import get_settings
from .core.ledger import (
    AuthorizationError,
    IdentityError,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerError,
    NotAvailableError,
    NotFoundError,
    PersistenceError,
)

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=get_settings().log_level.upper(),
)

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
ERROR_STATUS_CODES: list[tuple[type[LedgerError], int]] = [
    (IdentityError, status.HTTP_401_UNAUTHORIZED),
    (InsufficientBalanceError, status.HTTP_402_PAYMENT_REQUIRED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (NotAvailableError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_code_for(exc: LedgerError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup builds the shared ledger and loads the class registry;
    shutdown stops following the store and waits for background earnings
    accruals to finish.
    """
    # Startup
    settings = get_settings()

    logger.info(
        "Courtbook API starting",
        extra={
            "version": settings.api_version,
            "mock_mode": {"snowflake": settings.snowflake_mock_mode},
        }
    )

    # Validate configuration
    missing_fields = settings.validate_required_fields()
    if missing_fields:
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )

    await get_ledger(settings)

    yield

    # Shutdown
    await close_ledger()
    logger.info("Courtbook API shutting down")


def create_app() -> FastAPI:
    """
    Application factory.

    Creates and configures the FastAPI application.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
        Credit ledger and class booking for coaching sessions.

        ## Authentication

        All endpoints require an API key in the `X-API-Key` header. The
        acting user is identified by the `X-User-Id` header.

        ## Workflow

        1. **Publish a slot**: `POST /api/v1/classes`
        2. **Book it**: `POST /api/v1/classes/{class_id}/book`
           - Debits the slot's credit cost from the student's balance
        3. **Finish it**: `POST /api/v1/classes/{class_id}/finish`
           - Credits the coach's earnings
        4. **Review**: `GET /api/v1/balance/transactions`,
           `GET /api/v1/earnings/transactions`
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    # Configure allowed origins via CORS_ORIGINS environment variable
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        balance.router,
        prefix="/api/v1/balance",
        tags=["Balance"],
    )

    app.include_router(
        classes.router,
        prefix="/api/v1/classes",
        tags=["Classes"],
    )

    app.include_router(
        earnings.router,
        prefix="/api/v1/earnings",
        tags=["Earnings"],
    )

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint - redirect to docs."""
        return {
            "message": "Courtbook API",
            "version": settings.api_version,
            "docs": "/docs",
            "health": "/health",
        }

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError):
        """Map ledger failures to HTTP status codes."""
        code = status_code_for(exc)
        content: dict = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, InsufficientBalanceError):
            content["balance"] = exc.balance
            content["requested"] = exc.requested

        log = logger.error if code >= 500 else logger.info
        log(
            "Ledger operation rejected",
            extra={
                "path": request.url.path,
                "method": request.method,
                "status_code": code,
                "error": type(exc).__name__,
            }
        )
        return JSONResponse(status_code=code, content=content)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """Domain validation failures (e.g. end before start)."""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Catch-all exception handler.

        In production, this prevents stack traces from leaking to clients.
        We log the full error server-side but return a generic message.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error. Please contact support if this persists."
            }
        )

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": settings.api_version,
        }
    )

    return app


# Create the application instance
# This is what uvicorn will import
app = create_app()


# For debugging/development
if __name__ == "__main__":
    import uvicorn

    # Get settings to determine log level
    settings = get_settings()

    uvicorn.run(
        "courtbook.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
