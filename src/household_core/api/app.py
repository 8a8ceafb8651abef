"""FastAPI application factory and dependency injection setup."""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from household_core.api.routes import (
    health_router,
    household_router,
    invite_router,
    me_router,
    subscription_router,
)
from household_core.config import get_settings
from household_core.container import get_container, reset_container
from household_core.exceptions import HouseholdCoreError
from household_core.logging_config import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Configure logging and open the database on startup, release it on shutdown."""
    settings = get_settings()
    configure_logging(settings)

    logger.info(
        "application_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    )

    container = get_container()
    _ = container.database  # Force database initialization

    logger.info("application_started")

    yield

    logger.info("application_stopping")
    reset_container()
    logger.info("application_stopped")


async def log_request_middleware(request: Request, call_next):
    """Middleware to add request context to logs."""
    request_id = str(uuid.uuid4())[:8]
    bind_context(request_id=request_id, path=request.url.path, method=request.method)

    try:
        response = await call_next(request)
        logger.debug("request_completed", status_code=response.status_code)
        return response
    finally:
        clear_context()


async def exception_handler(request: Request, exc: HouseholdCoreError) -> JSONResponse:
    """Render domain exceptions as their error code, message and context."""
    logger.warning(
        "domain_exception",
        error_code=exc.error_code,
        message=exc.message,
        context=exc.context,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_dict()),
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Household membership, invites, entitlements and usage quotas",
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.middleware("http")(log_request_middleware)
    app.add_exception_handler(HouseholdCoreError, exception_handler)

    app.include_router(health_router)
    app.include_router(household_router)
    app.include_router(invite_router)
    app.include_router(me_router)
    app.include_router(subscription_router)

    return app


# Create app instance for uvicorn
app = create_app()
