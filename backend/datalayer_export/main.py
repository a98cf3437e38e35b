"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
logging and CORS middleware, includes the datalayer export router, closes the
shared GeoServer client on shutdown and exposes a health check endpoint for
monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn datalayer_export.main:app --reload

    Or imported and used programmatically:
        >>> from datalayer_export.main import app
        >>> # Use app in ASGI server
"""

import contextlib
from collections.abc import AsyncIterator

import fastapi
from fastapi.middleware import cors

from datalayer_export.api import datalayers
from datalayer_export.core import config
from datalayer_export.core import logging as app_logging
from datalayer_export.services import geoserver


@contextlib.asynccontextmanager
async def lifespan(_app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Release the GeoServer connection pool when the app stops."""
    yield
    if geoserver.get_geoserver_client.cache_info().currsize:
        geoserver.get_geoserver_client().close()


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging, includes the datalayer export router, and adds CORS
    middleware and a health check endpoint. CORS origins are configured from
    settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    app_logging.configure_logging(settings)
    app = fastapi.FastAPI(
        title="Datalayer Export",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(datalayers.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
