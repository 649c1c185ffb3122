import logging
import os
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

# Import after dotenv is loaded
from backend.core.config import settings, validate_config
from backend.core.database import close_database, get_database_url, init_database
from backend.core.logging import LOGGER_NAME, configure_logging
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.validation import validate_env
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from backend.features.billing.provider import BillingProviderError
from backend.api import admin, health, payments, webhooks

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting Multi-AI backend...")
    app.state.startup_time = time.time()
    if get_database_url():
        init_database()
    else:
        logger.warning("DATABASE_URL not set; database initialised on first request")
    try:
        yield
    finally:
        close_database()
        logger.info("Stopping Multi-AI backend...")


async def billing_provider_error_handler(request: Request, exc: BillingProviderError):
    """Provider failures surface as 502 in the normalized error shape."""
    return await app_error_handler(
        request,
        AppError(str(exc), code="billing_provider_error", status_code=502),
    )


app = FastAPI(title="Multi-AI - Payments Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(BillingProviderError, billing_provider_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

allowed_origins = ["http://localhost:3000"]
if settings.FRONTEND_URL:
    allowed_origins.append(settings.FRONTEND_URL.rstrip("/"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(health.root_router)
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/health")
def legacy_health():
    """Plain liveness alias kept for existing uptime checks."""
    return {"status": "OK", "environment": settings.ENV}
