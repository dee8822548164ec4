"""
FastAPI application for the voting API.

Every response uses the envelope {"success": bool, "message"?: str, "data"?: ...};
domain errors raised by the services are mapped to status codes here.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from evote.api.auth import AuthError
from evote.api.cache import TallyCache
from evote.api.config import Settings, settings
from evote.api.database import PostgresStore
from evote.api.memory import MemoryStore
from evote.api.metrics import request_duration
from evote.api.models import HealthResponse
from evote.api import rate_limit
from evote.api.rate_limit import limiter
from evote.api.registry import CandidateRegistry, SettingsRegistry, VoterRegistry
from evote.api.routes import (
    admin_router,
    candidates_router,
    results_router,
    settings_router,
    voters_router,
    votes_router,
)
from evote.api.voting import VoteService
from evote.shared.errors import (
    ConflictError,
    NotFoundError,
    StorageError,
    TransientStorageError,
    VotingError,
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _envelope(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra}
    )


def build_store(app_settings: Settings):
    """Select the storage backend named by STORAGE_BACKEND."""
    if app_settings.STORAGE_BACKEND == "memory":
        return MemoryStore()
    return PostgresStore.from_settings(app_settings)


def register_exception_handlers(app: FastAPI):
    """Map domain errors onto HTTP responses."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return _envelope(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in error["loc"] if part != "body"),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        return _envelope(status.HTTP_400_BAD_REQUEST, "Validation failed", errors=errors)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _envelope(status.HTTP_404_NOT_FOUND, exc.message)

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return _envelope(status.HTTP_400_BAD_REQUEST, exc.message)

    @app.exception_handler(TransientStorageError)
    async def transient_handler(request: Request, exc: TransientStorageError):
        logger.warning(f"Transient storage failure on {request.url.path}: {exc.message}")
        message = exc.message if exc.ambiguous else "Service temporarily unavailable"
        return _envelope(status.HTTP_503_SERVICE_UNAVAILABLE, message)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage error on {request.url.path}: {exc.message}")
        return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")

    # VotingClosedError and any other rule violation
    @app.exception_handler(VotingError)
    async def voting_error_handler(request: Request, exc: VotingError):
        return _envelope(status.HTTP_400_BAD_REQUEST, exc.message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
        return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def create_app(store=None, app_settings: Optional[Settings] = None,
               cache: Optional[TallyCache] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        store: Storage backend; built from STORAGE_BACKEND when omitted
        app_settings: Settings instance; the module settings when omitted
        cache: Results cache; built from Redis settings when omitted and
            TALLY_CACHE_ENABLED is set

    Returns:
        Configured FastAPI application
    """
    app_settings = app_settings or settings
    if store is None:
        store = build_store(app_settings)
    if cache is None and app_settings.TALLY_CACHE_ENABLED:
        cache = TallyCache.from_settings(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        logger.info(f"Starting {app_settings.SERVICE_NAME} service...")
        try:
            await store.initialize()
        except Exception as e:
            logger.error(f"Failed to start {app_settings.SERVICE_NAME}: {e}")
            raise
        logger.info(f"{app_settings.SERVICE_NAME} started successfully")

        yield

        logger.info(f"Shutting down {app_settings.SERVICE_NAME} service...")
        await store.close()
        if cache is not None:
            await cache.close()
        logger.info(f"{app_settings.SERVICE_NAME} shut down successfully")

    app = FastAPI(
        title="Voting API",
        description="API for casting ballots and publishing election results",
        version=app_settings.API_VERSION,
        lifespan=lifespan
    )

    app.state.settings = app_settings
    app.state.store = store
    app.state.cache = cache
    app.state.vote_service = VoteService.from_settings(store, app_settings, cache)
    app.state.candidates = CandidateRegistry(store, cache)
    app.state.voters = VoterRegistry(store)
    app.state.settings_registry = SettingsRegistry(store)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=app_settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=app_settings.CORS_ALLOW_METHODS,
        allow_headers=app_settings.CORS_ALLOW_HEADERS,
    )

    # Add rate limiter
    rate_limit.configure(app_settings)
    app.state.limiter = limiter
    register_exception_handlers(app)

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        """Middleware to track request duration."""
        started = time.perf_counter()
        response = await call_next(request)
        # Label with the route template so path parameters don't explode cardinality
        route = request.scope.get("route")
        request_duration.labels(
            method=request.method,
            endpoint=getattr(route, "path", "unmatched"),
            status=response.status_code
        ).observe(time.perf_counter() - started)
        return response

    for router in (
        candidates_router,
        voters_router,
        votes_router,
        results_router,
        admin_router,
        settings_router,
    ):
        app.include_router(router, prefix=app_settings.API_PREFIX)

    @app.get(f"{app_settings.API_PREFIX}/health", response_model=HealthResponse)
    async def health_check():
        """
        Check health of the service and its dependencies.

        Verifies the storage backend and, when enabled, the Redis results cache.
        """
        services = {}

        storage_healthy = await store.check_health()
        services["storage"] = "connected" if storage_healthy else "disconnected"

        if cache is not None:
            services["redis"] = "connected" if await cache.ping() else "disconnected"

        all_healthy = all(state == "connected" for state in services.values())
        response = HealthResponse(
            status="healthy" if all_healthy else "unhealthy",
            services=services,
            timestamp=datetime.now(timezone.utc)
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json")
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        prefix = app_settings.API_PREFIX
        return {
            "service": app_settings.SERVICE_NAME,
            "version": app_settings.API_VERSION,
            "status": "running",
            "endpoints": {
                "cast_vote": f"{prefix}/votes",
                "results": f"{prefix}/results",
                "candidates": f"{prefix}/candidates",
                "health": f"{prefix}/health",
                "metrics": "/metrics"
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "evote.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
