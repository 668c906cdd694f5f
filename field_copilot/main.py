"""
Field Copilot API
Main FastAPI application for job-scoped technician Q&A
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from field_copilot.exceptions import (
    ConfigError,
    ConversationMismatchError,
    JobNotFoundError,
    ModelInvocationError,
    ParseError,
)
from field_copilot.routers import chat
from field_copilot.services.config import Settings
from field_copilot.services.job_context import JobContextProvider, StaticJobContextProvider
from field_copilot.services.llm import ModelProvider, OpenAIChatProvider
from field_copilot.services.orchestrator import CopilotOrchestrator
from field_copilot.services.store import ConversationStore, create_store
from field_copilot.services.telemetry import StructlogTelemetry, Telemetry
from field_copilot.utils.logging import setup_logging
from field_copilot.utils.metrics import active_connections, request_counter, request_duration

# Configure structured logging
logger = structlog.get_logger()


def _setup_tracing(app: FastAPI, settings: Settings):
    """Export spans over OTLP and instrument FastAPI"""
    from opentelemetry import trace
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

    provider = TracerProvider(resource=Resource.create({"service.name": settings.OTEL_SERVICE_NAME}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(
        endpoint=settings.OTEL_ENDPOINT,
        insecure=True
    )))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)


def create_app(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[ModelProvider] = None,
    store: Optional[ConversationStore] = None,
    context_provider: Optional[JobContextProvider] = None,
    telemetry: Optional[Telemetry] = None,
) -> FastAPI:
    """
    Build the application with explicitly constructed services.

    Anything not passed in is derived from settings. Without a model API key
    and without an injected provider the chat endpoint answers 503.
    """
    settings = settings or Settings()
    setup_logging(settings)

    if provider is None and settings.OPENAI_API_KEY:
        provider = OpenAIChatProvider(settings)
    if store is None:
        store = create_store(settings)
    if context_provider is None:
        if settings.JOB_CONTEXT_PATH:
            context_provider = StaticJobContextProvider.from_file(settings.JOB_CONTEXT_PATH)
        else:
            context_provider = StaticJobContextProvider()
    if telemetry is None:
        telemetry = StructlogTelemetry(model=settings.MODEL_NAME)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle"""
        logger.info("Starting Field Copilot API",
                    version=settings.API_VERSION,
                    environment=settings.ENVIRONMENT,
                    model_configured=provider is not None)

        await store.initialize()

        if settings.OTEL_ENABLED:
            _setup_tracing(app, settings)

        logger.info("API initialization complete")

        yield

        # Shutdown
        logger.info("Shutting down Field Copilot API")
        await store.close()
        if provider is not None:
            await provider.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Field Copilot API",
        description="Job-scoped Q&A for field technicians with cited answers",
        version=settings.API_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    )

    # Set services in app state
    app.state.settings = settings
    app.state.provider = provider
    app.state.store = store
    app.state.context_provider = context_provider
    app.state.orchestrator = CopilotOrchestrator(provider, telemetry) if provider is not None else None

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "x-conversation-id"],
    )

    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        """Track request metrics and add request ID"""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        active_connections.inc()
        start_time = time.time()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            endpoint = request.scope.get("route").path if request.scope.get("route") else request.url.path
            if settings.ENABLE_METRICS:
                request_counter.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=response.status_code
                ).inc()
                request_duration.labels(
                    method=request.method,
                    endpoint=endpoint
                ).observe(duration)

            response.headers["X-Request-ID"] = request_id

            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration=duration
            )

            return response

        except Exception as e:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e)
            )
            if settings.ENABLE_METRICS:
                request_counter.labels(
                    method=request.method,
                    endpoint=request.url.path,
                    status=500
                ).inc()
            raise

        finally:
            active_connections.dec()
            structlog.contextvars.unbind_contextvars("request_id")

    app.include_router(chat.router)

    @app.get("/health")
    async def health_check():
        """Basic health check"""
        return {"status": "healthy", "version": settings.API_VERSION}

    @app.get("/health/ready")
    async def readiness_check(request: Request):
        """Readiness probe - checks if all services are ready"""
        checks = {
            "api": "healthy",
            "store": "healthy" if await request.app.state.store.ping() else "unhealthy",
            "model": "healthy" if request.app.state.provider is not None else "unconfigured",
        }

        if all(v == "healthy" for v in checks.values()):
            return {"status": "ready", "checks": checks}
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "checks": checks}
        )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness probe - checks if the application is running"""
        return {"status": "alive"}

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "name": "Field Copilot API",
            "version": settings.API_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs" if settings.ENVIRONMENT == "development" else None,
            "health": "/health",
            "metrics": "/metrics"
        }

    register_exception_handlers(app)
    return app


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "status_code": status_code}
    )


def register_exception_handlers(app: FastAPI):
    """Map the copilot error taxonomy onto HTTP responses"""

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path
        )
        return _error_response(exc.status_code, exc.detail)

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        logger.warning("Job not found", error=exc.message, path=request.url.path)
        return _error_response(404, "Job not found")

    @app.exception_handler(ConversationMismatchError)
    async def conversation_mismatch_handler(request: Request, exc: ConversationMismatchError):
        logger.warning("Conversation mismatch", error=exc.message, path=request.url.path)
        return _error_response(400, exc.message)

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError):
        logger.error("Copilot not configured", error=exc.message, path=request.url.path)
        return _error_response(503, exc.message)

    @app.exception_handler(ParseError)
    async def parse_error_handler(request: Request, exc: ParseError):
        logger.error("Model output could not be parsed", error=exc.message, path=request.url.path)
        return _error_response(502, "Model response could not be parsed")

    @app.exception_handler(ModelInvocationError)
    async def model_error_handler(request: Request, exc: ModelInvocationError):
        logger.error(
            "Model invocation failed",
            error=exc.message,
            upstream_status=exc.status_code,
            path=request.url.path
        )
        return _error_response(502, "Model invocation failed")

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """Handle validation errors"""
        logger.error("Validation error", error=str(exc), path=request.url.path)
        return _error_response(400, str(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(
            "Unhandled exception",
            error=str(exc),
            path=request.url.path,
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "status_code": 500,
                "request_id": request.headers.get("X-Request-ID")
            }
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    uvicorn.run(
        "field_copilot.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_config=None,  # Use structlog instead
        access_log=False,  # Handled by middleware
    )
