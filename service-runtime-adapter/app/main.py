"""Runtime adapter service main application."""

import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
import structlog

from .api.routes import router as api_router
from .runtime.adapter_service import RuntimeAdapterService
from .runtime.metrics import get_metrics_collector
from libs.common.config import RuntimeAdapterConfig, get_config
from libs.common.logging import configure_logging

logger = structlog.get_logger("runtime_adapter")


def create_app(service: Optional[RuntimeAdapterService] = None) -> FastAPI:
    """Build the FastAPI application.

    Parameters
    - service: Optional pre-built adapter service; when omitted one is
      constructed from ``RuntimeAdapterConfig`` at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        if service is None:
            config = get_config("runtime-adapter")
            configure_logging("runtime-adapter", config.ml_log_level, config.ml_log_format)
            app.state.adapter_service = RuntimeAdapterService(config)
        else:
            app.state.adapter_service = service
        app.state.metrics_collector = app.state.adapter_service.metrics

        adapter_config = app.state.adapter_service.config
        logger.info(
            "Runtime adapter started",
            runtime_url=adapter_config.runtime_base_url,
            config_file=adapter_config.model_config_file,
            capacity_bytes=app.state.adapter_service.capacity_bytes,
        )

        yield

        # Shutdown
        logger.info("Shutting down runtime adapter")
        await app.state.adapter_service.close()
        logger.info("Runtime adapter shutdown complete")

    app = FastAPI(
        title="Model Runtime Adapter",
        description="Load/unload/status adapter between a model mesh and a config-file driven backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix="/api/v1")

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
                content={"error": "Internal server error", "detail": str(e)}
            )

        duration = time.time() - start_time
        if hasattr(request.app.state, "metrics_collector"):
            request.app.state.metrics_collector.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=status_code,
                duration=duration
            )
        response.headers["X-Process-Time"] = str(duration)
        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint; ready once the backend reset succeeded."""
        adapter = getattr(request.app.state, "adapter_service", None)
        if adapter is not None and adapter.ready:
            return {"status": "healthy", "service": "runtime-adapter"}
        return JSONResponse(
            status_code=503,
            content={"status": "starting", "service": "runtime-adapter"}
        )

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        collector = getattr(request.app.state, "metrics_collector", None)
        if collector is None:
            collector = get_metrics_collector("runtime-adapter")
        return Response(content=collector.get_metrics(), media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "runtime-adapter",
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "runtime_status": "/api/v1/runtime-status",
                "load": "/api/v1/models/load",
                "unload": "/api/v1/models/unload",
                "reconcile": "/api/v1/reconcile",
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    port = RuntimeAdapterConfig().adapter_port
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
