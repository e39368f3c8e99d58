"""
CRM Bulk Updater - Main Application

FastAPI application entry point.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import structlog
from datetime import datetime

from config import settings
from exceptions import AppError

logging.basicConfig(format="%(message)s", level=settings.log_level)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer() if settings.is_production
            else structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup: Report configuration gaps
    Shutdown: Drain background tasks
    """
    logger.info(
        "application_starting",
        environment=settings.environment,
        debug=settings.debug,
        storage=settings.storage_backend
    )
    if not settings.app_secret_token:
        logger.warning("app_secret_token_missing")
    if not settings.bitrix_webhook_url:
        logger.warning("bitrix_webhook_missing")

    yield

    from services.task_runner import get_task_runner
    get_task_runner().shutdown()
    logger.info("application_shutting_down")


# Create FastAPI app
app = FastAPI(
    title="CRM Bulk Updater",
    description="Spreadsheet-driven bulk updates for Bitrix24 contacts and companies",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===================
# ROUTES
# ===================

@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns:
        Basic health status and configuration state
    """
    configured = bool(settings.app_secret_token and settings.bitrix_webhook_url)
    return {
        "status": "healthy" if configured else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "environment": settings.environment,
        "security_configured": bool(settings.app_secret_token),
        "crm_configured": bool(settings.bitrix_webhook_url),
    }


@app.get("/")
async def root():
    """
    Root endpoint.

    Returns:
        API information and available endpoints
    """
    return {
        "name": "CRM Bulk Updater API",
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "Disabled in production",
        "health": "/health",
        "endpoints": {
            "security": "/api/security/validate",
            "sessions": "/api/sessions",
        }
    }


# ===================
# ERROR HANDLERS
# ===================

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Render AppErrors raised outside route bodies (e.g. the security gate)."""
    logger.warning(
        "request_rejected",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler.

    Catches unhandled exceptions and returns standard error format.
    """
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": str(exc) if settings.debug else None,
                "timestamp": datetime.utcnow().isoformat()
            }
        }
    )


# ===================
# INCLUDE ROUTERS
# ===================
from routes.security import router as security_router
from routes.sessions import router as sessions_router

app.include_router(security_router)  # Prefix already in router
app.include_router(sessions_router)  # Prefix already in router


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
