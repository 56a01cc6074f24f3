"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.routing import Match

from entitlement_relay.api.admin_routes import router as admin_router
from entitlement_relay.api.routes import WEBHOOK_PATH, router
from entitlement_relay.api.stream_routes import router as stream_router
from entitlement_relay.config import settings
from entitlement_relay.db.migration_runner import run_migrations
from entitlement_relay.db.session import close_engines
from entitlement_relay.observability import get_logger, metrics, setup_logging, setup_tracing
from entitlement_relay.observability.tracing import instrument_fastapi
from entitlement_relay.services.container import ServiceContainer, build_container

# Setup logging before anything else
setup_logging()
setup_tracing()
logger = get_logger(__name__)


def _start_background_tasks(container: ServiceContainer) -> list[asyncio.Task[None]]:
    tasks = [
        asyncio.create_task(
            container.sessions.run_heartbeat(settings.heartbeat_interval_seconds),
            name="session-heartbeat",
        )
    ]
    if container.crm_worker is not None:
        tasks.append(
            asyncio.create_task(
                container.crm_worker.run(settings.crm_poll_interval_seconds),
                name="crm-sync-worker",
            )
        )
    return tasks


def _endpoint_label(app: FastAPI, request: Request) -> str:
    """Route template for metric labels; raw paths carry user ids and device tokens."""
    for route in app.router.routes:
        match, _ = route.matches(request.scope)
        if match is Match.FULL:
            return getattr(route, "path", "unmatched")
    return "unmatched"


def create_app(
    container: ServiceContainer | None = None, run_background_tasks: bool = True
) -> FastAPI:
    """
    Build the application.

    Args:
        container: Pre-built collaborators; built from settings at startup when omitted
        run_background_tasks: Start the heartbeat sweep and CRM worker with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        # Startup
        logger.info(
            "application_starting",
            service=settings.api_title,
            version=settings.api_version,
            storage=settings.storage_backend,
            tracing_enabled=settings.tracing_enabled,
            metrics_enabled=settings.metrics_enabled,
        )

        active = container
        if active is None:
            if not settings.uses_memory_storage and settings.run_migrations_on_startup:
                await asyncio.to_thread(run_migrations)
            active = build_container(settings)
        app.state.container = active

        tasks = _start_background_tasks(active) if run_background_tasks else []

        yield

        # Shutdown
        logger.info("application_shutting_down")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await active.pipeline.drain()
        await active.dispatcher.drain()
        await active.sessions.close_all()
        await close_engines()
        logger.info("application_stopped")

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=settings.api_description,
        lifespan=lifespan,
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Log validation errors. Webhook bodies that fail validation are malformed envelopes."""
        sanitized_errors = [
            {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
            for error in exc.errors()
        ]
        logger.warning(
            "validation_error",
            path=request.url.path,
            method=request.method,
            errors=sanitized_errors,
        )

        if request.url.path == WEBHOOK_PATH:
            metrics.record_rejection("malformed_envelope")
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={
                    "detail": {
                        "error": "malformed_envelope",
                        "message": "Malformed envelope: body must be {\"signedPayload\": string}",
                    }
                },
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": sanitized_errors},
        )

    instrument_fastapi(app)

    # Request logging middleware
    @app.middleware("http")
    async def logging_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Log all HTTP requests with timing."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", "unknown")

        endpoint = _endpoint_label(app, request)
        method = request.method

        logger.info(
            "request_started",
            method=method,
            path=request.url.path,
            request_id=request_id,
        )

        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=duration,
                request_id=request_id,
            )

            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_seconds=duration,
                request_id=request_id,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()

    # Register routes
    app.include_router(router)  # Webhook, entitlement reads, devices, health
    app.include_router(stream_router)  # Live socket stream
    app.include_router(admin_router)  # CRM dead letters

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "running",
        }

    if settings.metrics_enabled:

        @app.get("/metrics")
        async def metrics_endpoint() -> Response:
            """
            Prometheus metrics endpoint.

            Returns metrics in Prometheus text format.
            """
            return PlainTextResponse(generate_latest())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "entitlement_relay.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
