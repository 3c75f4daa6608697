from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from video_ingest.api.v1.router import api_router
from video_ingest.api.webhooks import provider as provider_webhook
from video_ingest.core.logging import configure_logging
from video_ingest.core.settings import get_settings
from video_ingest.db.session import get_db
from video_ingest.progress.hub import ProgressHub
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.event_processor import EventProcessor
from video_ingest.worker.reconcile import ReconciliationWorker

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    stop = asyncio.Event()
    task: asyncio.Task | None = None
    if settings.reconcile_in_process:
        task = asyncio.create_task(app.state.reconciler.run_forever(stop))
    try:
        yield
    finally:
        stop.set()
        if task is not None:
            await task
        await app.state.hub.close()
        await app.state.registry.aclose()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Lesson Video Ingest API", lifespan=lifespan)

    registry = ProviderRegistry(settings)
    hub = ProgressHub(queue_depth=int(settings.progress_subscriber_queue_depth))
    processor = EventProcessor(settings, registry, hub=hub)
    app.state.registry = registry
    app.state.hub = hub
    app.state.processor = processor
    app.state.reconciler = ReconciliationWorker(settings, registry, processor)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_router, prefix="/api/v1")
    app.include_router(provider_webhook.router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/health/db")
    async def health_db(db: AsyncSession = Depends(get_db)):
        await db.execute(text("SELECT 1"))
        return {"ok": True}

    return app


app = create_app()
