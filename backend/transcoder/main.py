"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response

from transcoder.core.config import Settings, settings
from transcoder.core.logging import setup_logging
from transcoder.core.metrics import get_metrics, get_metrics_content_type, set_app_info
from transcoder.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from transcoder.modules.transcoding.router import router as transcoding_router
from transcoder.modules.transcoding.service import TranscodingServices, build_services


def create_app(
    config: Optional[Settings] = None,
    services: Optional[TranscodingServices] = None,
) -> FastAPI:
    """Build the application.

    ``services`` is normally built from ``config`` at startup; tests pass
    their own to substitute fakes.
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(level=config.LOG_LEVEL, json_format=config.LOG_JSON)
        set_app_info(config.VERSION, "development" if config.DEBUG else "production")
        if app.state.transcoding is None:
            app.state.transcoding = build_services(config)
        await app.state.transcoding.start()
        try:
            yield
        finally:
            await app.state.transcoding.stop()

    app = FastAPI(
        title=config.PROJECT_NAME,
        version=config.VERSION,
        description="""
## Video Transcoding API

Upload a video, pick an output format, bitrate and resolution, and poll the
job until a download link is ready.

* **Upload** - `POST /upload` stores the original and starts or queues a job
* **Status** - `GET /job/{jobId}` reports state, progress and the result
* **Queue** - `GET /jobs/stats` shows worker capacity and queue depth
        """,
        openapi_url=f"{config.API_V1_PREFIX}/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "transcoding", "description": "Upload, job status and queue statistics"},
        ],
        lifespan=lifespan,
    )
    app.state.transcoding = services

    # Last added runs first, so correlation IDs are set before logging
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    app.include_router(transcoding_router, prefix=config.API_V1_PREFIX)
    return app


app = create_app()
