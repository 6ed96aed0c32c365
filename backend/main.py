import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

from backend.core.config import settings, validate_config
from backend.core.logging import configure_logging
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from backend.api import accounts, agreements, grants, health, quotas, verification
from backend.features.store.service import get_store

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("creatorhub")
    logger.info("Starting CreatorHub entitlement service...", extra={"store_backend": settings.resolved_store_backend()})
    get_store()
    try:
        yield
    finally:
        logging.getLogger("creatorhub").info("Stopping CreatorHub entitlement service...")


app = FastAPI(title="CreatorHub - Entitlement & Lifecycle Engine", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(accounts.router)
app.include_router(quotas.router)
app.include_router(grants.router)
app.include_router(verification.router)
app.include_router(agreements.router)
app.include_router(health.root_router)
