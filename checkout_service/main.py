"""
Checkout & payment settlement service
Reserves stock at checkout, creates orders and reconciles them against
payment gateway outcomes.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy.exc import DBAPIError
import os

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from checkout_service.api.orders import router as orders_router
from checkout_service.api.payments import router as payments_router
from checkout_service.api.inventory import router as inventory_router
from checkout_service.application.settlement import settlement_metrics
from checkout_service.core_settings import get_settings
from checkout_service.domain.errors import CheckoutError
from checkout_service.infrastructure import db as database

SERVICE_NAME = "checkout-service"
SERVICE_DESCRIPTION = "Checkout, inventory reservation and payment settlement"

settings = get_settings()
SERVICE_VERSION = settings.SERVICE_VERSION

setup_logging(service_name=SERVICE_NAME, level=settings.LOG_LEVEL)

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")
    try:
        database.init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise
    yield
    logger.info(f"Shutting down {SERVICE_NAME}")

def create_app() -> FastAPI:
    app = FastAPI(
        title=SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code}: {exc.message}", extra={"extra_fields": exc.details})
        else:
            logger.info(f"{exc.code}: {exc.message}", extra={"extra_fields": exc.details})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(DBAPIError)
    async def database_error_handler(request: Request, exc: DBAPIError):
        # Nothing partial was committed; the caller retries from scratch
        logger.error(f"Transaction failed: {exc.__class__.__name__}", exc_info=exc)
        return JSONResponse(status_code=503, content={
            "success": False,
            "error": "transaction_failed",
            "message": "Temporary failure, please retry",
            "retryable": True,
        })

    health_service = ServiceHealth(
        SERVICE_NAME,
        SERVICE_VERSION,
        engine_getter=lambda: database.engine,
        required_settings={
            "PAYSTACK_SECRET_KEY": lambda: get_settings().PAYSTACK_SECRET_KEY,
            "FRONTEND_URL": lambda: get_settings().FRONTEND_URL,
        },
    )
    health_service.register_metrics("settlement", settlement_metrics.snapshot)
    app.include_router(health_service.create_health_router())

    app.include_router(orders_router)
    app.include_router(payments_router)
    app.include_router(inventory_router)

    @app.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "docs": "/api/docs"
        }

    @app.get("/info")
    async def info():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "description": SERVICE_DESCRIPTION,
            "environment": os.getenv("ENVIRONMENT", "development"),
            "endpoints": {
                "health": "/health",
                "ready": "/health/ready",
                "live": "/health/live",
                "metrics": "/metrics",
                "docs": "/api/docs"
            }
        }

    return app

app = create_app()
