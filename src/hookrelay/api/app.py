"""FastAPI application for hookrelay."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hookrelay import __version__
from hookrelay.config import Settings
from hookrelay.exceptions import (
    AuthenticationError,
    NotFoundError,
    RelayError,
    ValidationError,
)
from hookrelay.logging import configure_logging, get_logger
from hookrelay.service import RelayService

from .router import router, set_service

logger = get_logger(__name__)


def _make_lifespan(
    settings: Settings,
    service: RelayService | None,
    run_worker: bool,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Manage application lifespan.

        Initializes the RelayService and the delivery worker on startup,
        and cleans up on shutdown.
        """
        configure_logging(level=settings.log_level, format=settings.log_format)
        logger.info("Starting hookrelay API", log_level=settings.log_level, env=settings.env)

        relay = service or RelayService.create(settings)
        await relay.initialize()
        set_service(relay)

        if run_worker:
            relay.start_worker()

        yield

        await relay.close()
        set_service(None)

    return lifespan


def create_app(
    settings: Settings | None = None,
    service: RelayService | None = None,
    run_worker: bool = True,
) -> FastAPI:
    """Create a FastAPI application.

    Args:
        settings: Optional settings. Uses environment if None.
        service: Pre-built service (tests). Created from settings if None.
        run_worker: Run background delivery in the API process.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from hookrelay.api import create_app

        app = create_app()
        # Run with: uvicorn hookrelay.api:app
        ```
    """
    if settings is None:
        settings = service.settings if service is not None else Settings()

    app = FastAPI(
        title="hookrelay",
        description="Reliable outbound webhooks: endpoint management and event broadcast.",
        version=__version__,
        lifespan=_make_lifespan(settings, service, run_worker),
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Register exception handlers
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(
        request: Request, exc: AuthenticationError
    ) -> JSONResponse:
        """Handle authentication errors with 401 status."""
        logger.warning("Authentication failed", error=exc.message, path=str(request.url))
        return JSONResponse(
            status_code=401,
            content=exc.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        """Handle all other hookrelay errors with 500 status."""
        logger.error("hookrelay error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())

    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
