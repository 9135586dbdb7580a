# tenantrag/main.py
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import time
import uuid

from typing import Optional

from tenantrag.api.routes import router
from tenantrag.config import LOG_FILE, LOG_LEVEL
from tenantrag.errors import RateLimitedError, TenantRAGError
from tenantrag.observability.logger import setup_logging, get_logger
from tenantrag.observability.metrics import metrics_tracker
from tenantrag.observability.posthog_client import posthog_client
from tenantrag.services import Services, build_services

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

VERSION = "1.0.0"


def create_app(services: Optional[Services] = None) -> FastAPI:

    app = FastAPI(
        title="Tenant RAG API",
        description="Multi-tenant knowledge base retrieval with plan-based quotas",
        version=VERSION,
    )

    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Request id, latency logging and process metrics for every call."""

        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        logger.info(
            "request_started",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            },
        )

        start_time = time.time()

        try:

            response = await call_next(request)

            latency = time.time() - start_time

            if response.status_code >= 500:
                metrics_tracker.record_failure()
            else:
                metrics_tracker.record_success(latency)

            logger.info(
                "request_completed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_seconds": round(latency, 3),
                },
            )

            response.headers["X-Request-ID"] = request_id

            return response

        except Exception as e:

            latency = time.time() - start_time

            metrics_tracker.record_failure()

            logger.error(
                "request_failed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "latency_seconds": round(latency, 3),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )

            raise

    app.include_router(router)

    @app.exception_handler(TenantRAGError)
    async def tenantrag_exception_handler(request: Request, exc: TenantRAGError):

        request_id = getattr(request.state, "request_id", "unknown")

        log = logger.warning if exc.status_code < 500 else logger.error

        log(
            "request_rejected",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "error": exc.error,
                "status_code": exc.status_code,
                "error_message": exc.message,
            },
        )

        if exc.status_code >= 500:
            posthog_client.track_error(
                distinct_id=request_id,
                error_type=type(exc).__name__,
                error_message=exc.message,
                endpoint=request.url.path,
            )

        headers = None

        if isinstance(exc, RateLimitedError) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):

        request_id = getattr(request.state, "request_id", "unknown")

        logger.error(
            "unhandled_exception",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
            exc_info=True,
        )

        posthog_client.track_error(
            distinct_id=request_id,
            error_type=type(exc).__name__,
            error_message=str(exc),
            endpoint=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "An internal error occurred. Please try again.",
                "request_id": request_id,
            },
        )

    @app.on_event("startup")
    async def startup_event():

        logger.info(
            "application_startup",
            extra={
                "version": VERSION,
                "embedder": app.state.services.embedder.name,
                "posthog_enabled": posthog_client.enabled,
            },
        )

    @app.on_event("shutdown")
    async def shutdown_event():

        posthog_client.shutdown()

        logger.info("application_shutdown")

    @app.get("/")
    async def root():

        return {
            "message": "Tenant RAG API",
            "version": VERSION,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()
