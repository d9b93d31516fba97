import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from flavr/.env
flavr_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(flavr_dir, ".env"))

from flavr.core.config import settings, validate_config
from flavr.core.database import create_all_tables
from flavr.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from flavr.core.logging import configure_logging
from flavr.core.middleware.request_id import RequestIdMiddleware
from flavr.core.validation import validate_env
from flavr.api import admin, billing, health, usage

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("flavr")
    logger.info("Starting Flavr entitlements service...")
    app.state.startup_time = time.time()
    if settings.ENV.lower() != "production":
        # Production schemas are managed by migrations
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("flavr").info("Stopping Flavr entitlements service...")


app = FastAPI(title="Flavr - Entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(usage.router, prefix="/api", tags=["usage"])
app.include_router(admin.router, tags=["admin"])
app.include_router(health.root_router, tags=["health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("flavr.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
