"""FastAPI application for LeadBridge."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .. import __version__
from ..config import settings
from ..database import create_tables, dispose_engine
from .errors import register_error_handlers


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.getLogger("leadbridge").setLevel(logging.INFO if settings.oauth_log else logging.WARNING)
    # Auto-create tables for SQLite (local dev)
    if "sqlite" in settings.database_url:
        await create_tables()
    yield
    await dispose_engine()


app = FastAPI(title="LeadBridge", version=__version__, lifespan=lifespan)
register_error_handlers(app)

from .routers import health, installs, oauth  # noqa: E402

app.include_router(oauth.router)
app.include_router(installs.router)
app.include_router(health.router)
