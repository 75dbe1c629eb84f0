"""Entry point for the realtime call bridge service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.dependencies import get_registry
from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from config.settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = get_registry()
    registry.start()
    try:
        yield
    finally:
        await registry.aclose()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Realtime Call Bridge",
    description="Bridges Twilio Media Streams calls to the OpenAI Realtime API.",
    lifespan=lifespan,
)
app.include_router(api_router)
app.include_router(twilio_router)
