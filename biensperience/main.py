import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from the package directory
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

from biensperience.core.config import settings, validate_config  # noqa: E402
from biensperience.core.database import create_all_tables  # noqa: E402
from biensperience.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from biensperience.core.logging import configure_logging  # noqa: E402
from biensperience.core.middleware.ratelimit import RateLimitMiddleware  # noqa: E402
from biensperience.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from biensperience.core.ratelimit import build_rate_limit_config  # noqa: E402
from biensperience.api import entities, flags, health, invites, permissions  # noqa: E402
from biensperience.features.flags.cache import AIStatusCache  # noqa: E402
from biensperience.features.notifications.mailer import ResendMailer  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)

logger = logging.getLogger("biensperience")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Biensperience backend...")
    app.state.startup_time = time.time()
    try:
        create_all_tables()
    except ValueError as e:
        # No DATABASE_URL: the API still starts so /healthz answers
        logger.warning(f"Database not initialized: {e}")
    try:
        yield
    finally:
        logger.info("Stopping Biensperience backend...")


app = FastAPI(title="Biensperience - Entitlements API", lifespan=lifespan)

app.state.ai_status_cache = AIStatusCache(ttl_seconds=settings.AI_STATUS_CACHE_TTL_SECONDS)
app.state.mailer = ResendMailer.from_settings()

# Middlewares
app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config())
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(health.root_router)
app.include_router(invites.router)
app.include_router(permissions.router)
app.include_router(flags.router)
app.include_router(entities.router)
