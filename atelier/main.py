import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from the repository root .env
root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(root_dir, ".env"))

from atelier.core.config import settings, validate_config
from atelier.core.database import create_all_tables, dispose_engine
from atelier.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from atelier.core.logging import configure_logging
from atelier.core.middleware.request_id import RequestIdMiddleware
from atelier.api import health, metering, metrics

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("atelier")
    logger.info("Starting Atelier metering service...")
    create_all_tables()
    try:
        yield
    finally:
        dispose_engine()
        logging.getLogger("atelier").info("Stopping Atelier metering service...")


app = FastAPI(title="Atelier - Usage Metering", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(metering.router, tags=["metering"])
app.include_router(health.router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
