import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

from creditgate.core.config import settings, validate_config
from creditgate.core.database import create_all_tables
from creditgate.core.logging import configure_logging
from creditgate.core.middleware.metrics import MetricsMiddleware
from creditgate.core.middleware.request_id import RequestIdMiddleware
from creditgate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from creditgate.api import billing, credits, health
from creditgate.features.credits.service import get_credit_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("creditgate")
    logger.info("Starting creditgate...")
    create_all_tables()
    try:
        yield
    finally:
        # Let fire-and-forget usage writes land before exit
        get_credit_service().ledger.shutdown(wait_for_pending=True)
        logger.info("Stopping creditgate...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="creditgate", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(credits.router)
    app.include_router(billing.router)
    return app


app = create_app()
