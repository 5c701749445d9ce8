"""Embedding service main application."""

import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from .api.routes import router as api_router
from .encoders.presets import ConfigProvider
from .encoders.service import InferenceService
from .loaders.model_loader import ModelLoader
from .runtime.metrics import get_metrics_collector
from libs.common.config import EmbeddingConfig
from libs.common.logging import configure_logging

logger = structlog.get_logger("embedding_service")

SERVICE_NAME = "embedding-service"
VERSION = "0.1.0"


def create_app(
    inference_service: Optional[InferenceService] = None,
    config: Optional[EmbeddingConfig] = None,
) -> FastAPI:
    """Build the FastAPI application.

    When ``inference_service`` is given it is used as-is and the lifespan does
    not load a model; it is still closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        service_config = config or EmbeddingConfig()
        configure_logging(SERVICE_NAME, service_config.ml_log_level, service_config.ml_log_format)
        app.state.config = service_config
        app.state.config_provider = ConfigProvider(service_config)
        app.state.startup_time = time.time()
        app.state.metrics_collector = get_metrics_collector(SERVICE_NAME)

        logger.info("Starting embedding service", env=service_config.ml_env)

        if inference_service is not None:
            app.state.inference_service = inference_service
        else:
            loader = ModelLoader.from_config(service_config)
            app.state.inference_service = await InferenceService.create(
                service_config,
                loader,
                metrics=app.state.metrics_collector,
                initial_metadata=app.state.config_provider.initial_metadata(),
            )

        logger.info("Embedding service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down embedding service")
        await app.state.inference_service.close()
        logger.info("Embedding service shutdown complete")

    app = FastAPI(
        title="Embedding Service",
        description="Sentence embedding inference with live model switching",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add processing time header to responses."""
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.exception("Unhandled error", path=request.url.path)
            status_code = 500
            response = JSONResponse(
                status_code=500,
                content={"error": "InternalError", "detail": str(e)}
            )

        collector = getattr(app.state, "metrics_collector", None)
        if collector is not None:
            collector.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=status_code,
                duration=time.time() - start_time,
            )

        return response

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Bind a request id to every log line emitted for this request."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        service: Optional[InferenceService] = getattr(app.state, "inference_service", None)
        if service is not None and await service.health_check():
            return {"status": "healthy", "service": SERVICE_NAME}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": SERVICE_NAME}
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        collector = getattr(app.state, "metrics_collector", None)
        if collector is None:
            return Response(content="# No metrics available\n", media_type="text/plain")
        return Response(content=collector.get_metrics(), media_type="text/plain")

    @app.get("/live")
    async def liveness():
        """Liveness probe. Returns quickly if process is responsive."""
        return {
            "status": "alive",
            "service": SERVICE_NAME,
            "uptime_seconds": time.time() - getattr(app.state, "startup_time", time.time())
        }

    @app.get("/ready")
    async def readiness():
        """Readiness probe. Ready once a model serves reads."""
        service: Optional[InferenceService] = getattr(app.state, "inference_service", None)
        if service is None or not await service.health_check():
            logger.warning("Readiness probe failed")
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "service": SERVICE_NAME}
            )

        metadata = await service.current_model_info()
        return {
            "status": "ready",
            "service": SERVICE_NAME,
            "model_id": metadata.model_id,
            "switch_in_progress": service.switch_in_progress,
        }

    @app.get("/resources")
    async def resources():
        """Describe the active model, presets and limits."""
        service: Optional[InferenceService] = getattr(app.state, "inference_service", None)
        provider: Optional[ConfigProvider] = getattr(app.state, "config_provider", None)

        return {
            "service": SERVICE_NAME,
            "active_model": (await service.current_model_info()).as_dict() if service else None,
            "presets": sorted(provider.presets()) if provider else [],
            "limits": {
                "max_batch_size": service.max_batch_size if service else None,
                "max_text_chars": service.max_text_chars if service else None,
            },
            "switch_policy": service.switch_policy if service else None,
        }

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "status": "running",
            "endpoints": {
                "encode": "/api/v1/encode",
                "encode_batch": "/api/v1/encode/batch",
                "model_info": "/api/v1/model/info",
                "model_switch": "/api/v1/model/switch",
                "model_presets": "/api/v1/model/presets",
                "metrics": "/metrics"
            },
            "probes": {
                "health": "/health",
                "live": "/live",
                "ready": "/ready"
            },
            "metadata": {
                "resources": "/resources"
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    settings = EmbeddingConfig()
    uvicorn.run(
        "app.main:app",
        host=settings.ml_embedding_host,
        port=settings.ml_embedding_port,
        log_level=settings.ml_log_level.lower(),
    )
