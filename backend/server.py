from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import logging
import time
import uuid
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import traceback

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import configuration
from config import get_settings, get_cors_config, require_signing_secret, validate_environment

# Import logging and error tracking
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception

# Import database and routers
from database import init_db, dispose_engine, get_engine
from identity.errors import IdentityError
from identity.router import router as identity_router
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router
from routers import auth_router, admin_router

# Get settings
settings = get_settings()

# Configure structured logging
# Use JSON format in production, plain text in development
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.is_production,
)
logger = get_logger(__name__)

# Initialize Sentry error tracking
if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup
    logger.info("=" * 60)
    logger.info("Starting Lodge Identity Core API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Storage backend: {settings.STORAGE_BACKEND}")
    logger.info("=" * 60)

    # No signing secret, no server
    require_signing_secret(settings)

    env_status = validate_environment()
    if not env_status["valid"]:
        for error in env_status["errors"]:
            logger.error(f"Configuration Error: {error}")
        if settings.is_production:
            raise RuntimeError("Cannot start in production with invalid configuration")

    for warning in env_status.get("warnings", []):
        logger.warning(f"Configuration Warning: {warning}")

    if settings.STORAGE_BACKEND == "postgres":
        await init_db()
        logger.info("PostgreSQL connection established")

    logger.info("Lodge Identity Core API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Lodge Identity Core API...")
    if settings.STORAGE_BACKEND == "postgres":
        await dispose_engine()


# Create the main app
app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Identity, role and lodge-scope service for a membership organisation.

    ## Features

    ### Authentication (/api/auth)
    - Email/password login against the canonical and legacy identity stores
    - Token verification with live lodge lookup
    - Effective permission for a lodge scope

    ### Admin (/api/admin)
    - Scoped admin role transfer with read-back verification
    - Direct role changes
    - District lodge listing
    - Audit trail

    ### Identity (/api/identity)
    - Registration
    - Identity lookup
    - Own profile updates

    ### Reconciliation (/api/reconciliation)
    - Legacy store merge into the canonical store
    - Snapshots and rollback
    - Canonical store verification
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/", tags=["Health"])
async def root():
    """Basic health check - returns 200 if service is running"""
    return {
        "message": "Lodge Identity Core API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Detailed health check for load balancers and uptime monitors.

    Returns:
    - 200: All systems operational
    - 503: Storage unavailable
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    if settings.STORAGE_BACKEND == "postgres":
        try:
            from sqlalchemy import text

            async with get_engine().begin() as conn:
                result = await conn.execute(text("SELECT 1"))
                result.fetchone()

            health_status["checks"]["storage"] = {"status": "connected", "type": "postgresql"}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            health_status["status"] = "unhealthy"
            health_status["checks"]["storage"] = {"status": "disconnected", "error": str(e)}
    else:
        data_path = settings.data_path
        health_status["checks"]["storage"] = {
            "status": "available" if data_path.exists() else "missing",
            "type": "file",
        }

    env_status = validate_environment()
    health_status["checks"]["configuration"] = {
        "status": "valid" if env_status["valid"] else "invalid",
        "warnings": len(env_status.get("warnings", [])),
        "errors": len(env_status.get("errors", []))
    }

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """
    Kubernetes liveness probe.
    Returns 200 if the process is running (doesn't check dependencies).
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include all routers
api_router.include_router(auth_router)  # Auth first for visibility
api_router.include_router(admin_router)
api_router.include_router(identity_router)
api_router.include_router(reconciliation_router)

# Include the main router in the app
app.include_router(api_router)

# ==================== MIDDLEWARE ====================

# CORS middleware with production-safe configuration
cors_config = get_cors_config()
app.add_middleware(
    CORSMiddleware,
    **cors_config
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing information and tag them with a request id"""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
    set_request_context(request_id=request_id)

    if settings.debug_enabled:
        logger.debug(f"[{request_id}] {request.method} {request.url.path}")

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

        return response
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise
    finally:
        clear_request_context()


# ==================== EXCEPTION HANDLERS ====================

@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError):
    """Render engine errors with their own status code and error kind"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        capture_exception(exc, path=request.url.path)
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    capture_exception(exc, path=request.url.path)
    if settings.debug_enabled:
        logger.error(traceback.format_exc())

    # Don't expose internal errors in production
    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        }
    )
