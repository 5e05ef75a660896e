"""
Video Acquisition Service - FastAPI Backend
Main application entry point: keyword search, rendition selection and download jobs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, media, search, keywords
from services.keyword_pool import get_keyword_pool_manager
from services.video_queue import get_video_queue

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic_queue_cleanup() -> None:
    interval_minutes = max(int(settings.MEDIA_JOB_CLEANUP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            removed = await get_video_queue().cleanup()
            if removed:
                print(f"🧹 Video queue cleanup: evicted={removed}")
        except Exception as exc:
            print(f"⚠️ Video queue cleanup tick failed: {exc}")


async def _periodic_keyword_rotation() -> None:
    interval_minutes = max(int(settings.KEYWORD_ROTATION_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        try:
            result = await get_keyword_pool_manager().rotate()
            if not result.from_cache:
                print(
                    f"🔑 Keyword rotation {result.date}: {', '.join(result.keywords) or 'none'} "
                    f"(new={result.new_count} reused={result.reused_count})"
                )
        except Exception as exc:
            print(f"⚠️ Keyword rotation tick failed: {exc}")
        await asyncio.sleep(interval_minutes * 60)


async def _cancel(task) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Video Acquisition API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    queue = get_video_queue()
    await queue.start()
    print(f"🎬 Video job queue running ({settings.MEDIA_JOB_CONCURRENCY} workers, store={settings.MEDIA_JOB_STORE}).")

    cleanup_task = None
    rotation_task = None
    if int(settings.MEDIA_JOB_CLEANUP_INTERVAL_MINUTES) > 0:
        cleanup_task = asyncio.create_task(_periodic_queue_cleanup())
    if int(settings.KEYWORD_ROTATION_INTERVAL_MINUTES) > 0:
        rotation_task = asyncio.create_task(_periodic_keyword_rotation())
        print(
            "📅 Keyword rotation loop enabled "
            f"(every {int(settings.KEYWORD_ROTATION_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    await _cancel(cleanup_task)
    await _cancel(rotation_task)
    await queue.stop()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Video Acquisition API",
    description="Discover short-form videos by keyword and download their cheapest renditions",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(media.router, prefix="/media", tags=["Media"])
app.include_router(search.router, prefix="/search", tags=["Search"])
app.include_router(keywords.router, prefix="/keywords", tags=["Keywords"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Video Acquisition API",
        "version": "0.1.0",
        "status": "running"
    }
