"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src import __version__
from src.api.routes import health_router, posts_router, queues_router
from src.broker.connection import connect
from src.broker.publisher import Publisher
from src.broker.topology import ensure_queue
from src.config import get_settings
from src.errors import PublishError
from src.observability.logging import setup_logging
from src.observability.metrics import setup_metrics
from src.observability.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from src.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Connects to the broker, declares the task queue, and closes the link
    on shutdown.
    """
    # Startup
    setup_logging("api")
    setup_metrics()
    setup_tracing("api")

    settings = get_settings()
    link = await connect()
    if settings.otel_enabled:
        instrument_sqlalchemy(link.engine.sync_engine)

    try:
        queue = await ensure_queue(link, settings.queue_name, durable=settings.queue_durable)

        app.state.link = link
        app.state.queue = queue
        app.state.publisher = Publisher(link)

        logger.info("Application started", extra={"queue": queue.name})

        yield
    finally:
        # Shutdown
        await link.close()
        logger.info("Application shutdown")


async def publish_error_handler(request: Request, exc: PublishError) -> JSONResponse:
    """Map broker publish failures to 503."""
    logger.error(
        "Publish failed",
        extra={"path": request.url.path, "queue": exc.queue, "error": str(exc)},
    )
    body = ErrorResponse(error="Service unavailable", detail=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(),
    )


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Task Dispatch API",
        description="Reliable background task dispatch over a durable queue",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PublishError, publish_error_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(posts_router)
    app.include_router(queues_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
