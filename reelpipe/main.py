"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from reelpipe.core.config import settings
from reelpipe.core.database import init_db
from reelpipe.core.logging import setup_logging
from reelpipe.core.metrics import get_content_type, get_metrics, set_app_info
from reelpipe.core.middleware import (
    MetricsMiddleware,
    RequestContextMiddleware,
    TracingMiddleware,
)
from reelpipe.core.redis import close_redis
from reelpipe.core.storage import get_media_layout
from reelpipe.core.tracing import setup_tracing, shutdown_tracing
from reelpipe.modules.media.router import router as media_router
from reelpipe.modules.stream.router import router as stream_router
from reelpipe.modules.transcoding.queue import create_processing_queue

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

if settings.TRACING_ENABLED:
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
        enable_console_export=settings.DEBUG,
    )

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    get_media_layout().ensure_roots()

    queue = create_processing_queue(settings)
    await queue.start()
    app.state.processing_queue = queue
    try:
        yield
    finally:
        await queue.stop()
        app.state.processing_queue = None
        await close_redis()
        shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="VOD ingestion, adaptive bitrate transcoding and byte-range delivery.",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check and metrics endpoints"},
        {"name": "media", "description": "Upload handoff, processing status, reprocessing and deletion"},
        {"name": "stream", "description": "Original, HLS playlist and segment delivery with byte ranges"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)

app.add_middleware(TracingMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(media_router, prefix=settings.API_V1_PREFIX)
app.include_router(stream_router, prefix=settings.API_V1_PREFIX)
