"""
Main FastAPI Application

Entry point for the school platform API.
Configures the tenancy services, middleware, routes, error handlers, and
startup/shutdown events.

PRODUCTION CHECKLIST:
- [ ] Enable HTTPS only
- [ ] Configure CORS properly
- [ ] Use TENANT_CACHE_BACKEND=redis when running several workers
- [ ] Schedule reconciliation (or set RECONCILE_ON_STARTUP)
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import time
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError

from schoolspace.config import get_settings
from schoolspace.database import engine, SessionLocal, init_db
from schoolspace.middleware.tenant import TenantMiddleware
from schoolspace.middleware.rate_limit import RateLimitMiddleware
from schoolspace.tenancy.cache import build_tenant_cache
from schoolspace.tenancy.executor import NamespaceQueryExecutor
from schoolspace.tenancy.provisioner import NamespaceProvisioner
from schoolspace.utils.logging import setup_logging, get_logger, log_security_event
from schoolspace.core.exceptions import (
    AuthenticationError,
    ConsistencyError,
    InvalidNamespaceError,
    TenancyError,
)

# Import routers
from schoolspace.api.endpoints import context, platform

settings = get_settings()

# Setup logging
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=(settings.ENVIRONMENT == "production")
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(f"Starting application in {settings.ENVIRONMENT} mode")

    # Catalog tables (dev only - use migrations in production)
    if settings.ENVIRONMENT == "development":
        logger.warning("Initializing catalog tables (dev mode)")
        init_db()

    if settings.RECONCILE_ON_STARTUP:
        try:
            results = app.state.provisioner.reconcile_all()
        except SQLAlchemyError as e:
            logger.error(f"Startup reconcile failed: {e}")
        else:
            dirty = [r.namespace for r in results if not r.clean]
            logger.info(f"Startup reconcile: {len(results)} namespaces, {len(dirty)} with unrepaired drift")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    engine.dispose()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Schoolspace",
    description="Multi-school platform with one database namespace per school",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Tenancy services shared by every request
app.state.session_factory = SessionLocal
app.state.tenant_cache = build_tenant_cache(settings)
app.state.executor = NamespaceQueryExecutor(engine, max_attempts=settings.QUERY_RETRY_ATTEMPTS)
app.state.provisioner = NamespaceProvisioner(engine, namespace_dir=settings.SQLITE_NAMESPACE_DIR)


# ============================================================================
# MIDDLEWARE CONFIGURATION
# ============================================================================

# SECURITY: In production, restrict allowed_origins to specific domains
allowed_origins = [
    "http://localhost:3000",
    "http://localhost:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins if settings.ENVIRONMENT != "development" else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add X-Process-Time header to track request duration."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


# Middleware added last runs first. Rate limiting is keyed on the
# resolved school, so it is added before TenantMiddleware.
if settings.RATE_LIMIT_ENABLED:
    app.add_middleware(RateLimitMiddleware)

app.add_middleware(TenantMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(TenancyError)
async def tenancy_error_handler(request: Request, exc: TenancyError):
    """
    Handle tenancy errors raised inside routes.

    The response carries the user-safe detail only; the namespace and
    registry ids stay in the logs.
    """
    extra = {
        "path": request.url.path,
        "event_type": exc.error_type,
        "namespace": getattr(exc, "namespace", None),
    }
    if isinstance(exc, InvalidNamespaceError):
        log_security_event("invalid_namespace", {"source": exc.source, "path": request.url.path}, logger)
    elif isinstance(exc, ConsistencyError):
        logger.error(f"Consistency failure: {exc.error_type}", extra=extra)
    else:
        logger.warning(f"Tenancy error: {exc.error_type}", extra=extra)

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "type": exc.error_type}
    )


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    """Handle authentication errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "type": "authentication_error"},
        headers=exc.headers or {}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all exception handler.

    SECURITY: Don't expose internal errors in production.
    Log full details but return generic error to client.
    """
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
        exc_info=True,
        extra={"path": request.url.path, "method": request.method}
    )

    if settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__}
        )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": "internal_error"}
    )


# ============================================================================
# ROUTES
# ============================================================================

@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": "1.0.0"
    }


app.include_router(context.router, prefix="/api/v1")
app.include_router(platform.router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    uvicorn.run(
        "schoolspace.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
