from __future__ import annotations

from fastapi import APIRouter

from video_ingest.api.v1 import progress, videos

api_router = APIRouter()
api_router.include_router(videos.router)
api_router.include_router(progress.router)
