from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
import logging
import time
import uuid
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import Settings, get_settings, get_cors_config

from logging_config import setup_logging, set_request_context, clear_request_context, get_request_id
from sentry_integration import init_sentry, capture_exception, set_tag

from database import init_db, dispose_engine
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router
from reconciliation.endpoints.reconciliation_api import get_ledger_provider, reconciliation_error_handler
from reconciliation.errors import ReconciliationError
from utils.validation_errors import ValidationErrorResponse, error_body

logger = logging.getLogger(__name__)


def configure_observability(settings: Settings) -> None:
    """JSON logs in production, plain text in development; Sentry when a DSN is set."""
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.is_production,
        service_name="reconciliation-engine"
    )
    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=settings.API_VERSION,
            traces_sample_rate=0.1 if settings.is_production else 0.0,
        )
        set_tag("ledger_backend", settings.LEDGER_BACKEND)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    settings = get_settings()
    logger.info("=" * 60)
    logger.info("Starting Payment Allocation & Reconciliation API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Ledger backend: {settings.LEDGER_BACKEND}")
    logger.info("=" * 60)

    for error in settings.validate_production_config():
        if settings.is_production:
            raise RuntimeError(f"Cannot start in production with invalid configuration: {error}")
        logger.warning(f"Configuration Warning: {error}")

    if not settings.uses_memory_ledger:
        await init_db()
        logger.info("PostgreSQL connection established")

    yield

    logger.info("Shutting down Reconciliation API...")
    if not settings.uses_memory_ledger:
        await dispose_engine()


# ==================== HEALTH CHECK ENDPOINTS ====================

health_router = APIRouter(tags=["Health"])


@health_router.get("/")
async def root():
    """Basic health check - returns 200 if service is running"""
    settings = get_settings()
    return {
        "message": settings.API_TITLE,
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@health_router.get("/health/ready")
async def readiness_check():
    """
    Readiness probe.
    Returns 200 only when the ledger store answers.
    """
    provider = get_ledger_provider()
    if not await provider.ping():
        raise HTTPException(status_code=503, detail="Ledger store unavailable")
    return {"status": "ready", "timestamp": datetime.now(timezone.utc).isoformat()}


@health_router.get("/health/live")
async def liveness_check():
    """
    Liveness probe.
    Returns 200 if the process is running (doesn't check dependencies).
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


# ==================== EXCEPTION HANDLERS ====================

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ValidationErrorResponse.from_http_exception(exc),
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content=ValidationErrorResponse.from_request_validation(exc))


async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    capture_exception(exc, path=request.url.path, method=request.method)

    settings = get_settings()
    # Don't expose internal errors in production
    details = {"request_id": getattr(request.state, "request_id", None) or get_request_id()}
    if settings.is_production:
        content = error_body("InternalError", "Internal server error", details)
    else:
        content = error_body("InternalError", str(exc), {**details, "type": type(exc).__name__})
    return JSONResponse(status_code=500, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)


# ==================== APPLICATION ====================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.API_TITLE,
        description="""
    Payment allocation and bank reconciliation engine.

    ### Reconciliation (/api/reconciliation)
    - Items: bank transactions and cash-book entries (draft, confirmed, reconciled, cancelled)
    - Suggestions: ranked candidate invoices and bills per item
    - Allocations: apply and remove, all-or-nothing
    - Auto-allocate: best match, else oldest due first
    - Auto-reconcile: batch acceptance of unambiguous exact matches
    """,
        version=settings.API_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug_enabled else None,
        redoc_url="/api/redoc" if settings.debug_enabled else None,
    )

    api_router = APIRouter(prefix="/api")
    api_router.include_router(health_router)
    api_router.include_router(reconciliation_router)
    app.include_router(api_router)

    app.add_middleware(CORSMiddleware, **get_cors_config())

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing information"""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_request_context(request_id=request_id)

        try:
            response = await call_next(request)

            process_time = time.time() - start_time
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

            if settings.debug_enabled or response.status_code >= 400:
                logger.info(
                    f"{request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)"
                )
            return response
        finally:
            clear_request_context()

    register_exception_handlers(app)
    return app


configure_observability(get_settings())
app = create_app()
