"""Promptworks FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from server.config import settings
from server.db.database import init_db, close_db
from server.auth.middleware import AuthConfig, AuthMiddleware

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting Promptworks server...")
    await init_db()
    logger.info("Promptworks server ready")
    yield
    await close_db()
    logger.info("Promptworks server stopped")


app = FastAPI(
    title="Promptworks",
    description="Prompt management, evaluation and workflow orchestration",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(AuthMiddleware, config=AuthConfig.from_settings(settings))

# Import and register routers
from server.api.prompts import router as prompts_router
from server.api.eval import router as eval_router
from server.api.workflows import router as workflows_router
from server.api.settings import router as settings_router

app.include_router(prompts_router)
app.include_router(eval_router)
app.include_router(workflows_router)
app.include_router(settings_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "promptworks", "version": "0.1.0"}


@app.get("/")
async def root():
    return {"service": "promptworks", "docs": "/docs"}
