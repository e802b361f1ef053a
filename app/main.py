from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.runtime import build_default_runtime


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    runtime = build_default_runtime()
    try:
        yield
    finally:
        runtime.shutdown()
        build_default_runtime.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Device Fleet Alerting",
        description="Heartbeat and sensor-range alerting with multicast push delivery.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()
