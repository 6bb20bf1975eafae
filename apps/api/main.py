"""
Charter Media API - FastAPI Backend
Captain video ingestion, dispatch and normalization callbacks.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, blob, callbacks, videos, worker
from services.callbacks import CallbackReceiver
from services.dispatch import build_dispatch_backend
from services.object_store import build_object_store
from services.signatures import configured_keys
from services.video_queue import recover_stalled_videos


async def _periodic_stalled_sweep() -> None:
    interval_minutes = max(int(settings.STALLED_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            failed = await recover_stalled_videos()
            if failed:
                print(f"⏱️ Stalled sweep: marked {failed} videos failed (processing_timeout).")
        except Exception as exc:
            print(f"⚠️ Stalled sweep tick failed: {exc}")


def configure_pipeline(app: FastAPI) -> None:
    """Build the object store, dispatch backend and callback receiver once."""
    store = build_object_store(settings)
    app.state.object_store = store
    app.state.dispatcher = build_dispatch_backend(settings, store)
    app.state.callback_receiver = CallbackReceiver(
        signature_mode=settings.CALLBACK_SIGNATURE_MODE,
        signing_keys=configured_keys(settings.BROKER_CURRENT_SIGNING_KEY, settings.BROKER_NEXT_SIGNING_KEY),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Charter Media API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    print(
        f"🎬 Dispatch backend: {app.state.dispatcher.name}, "
        f"object store: {settings.OBJECT_STORE_BACKEND}, "
        f"callback signatures: {settings.CALLBACK_SIGNATURE_MODE}"
    )
    try:
        recovered = await recover_stalled_videos()
        if recovered:
            print(f"♻️ Marked {recovered} stalled videos failed after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled video recovery skipped: {exc}")
    sweep_task = None
    if int(settings.STALLED_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stalled_sweep())
        print(f"📅 Stalled sweep loop enabled (every {int(settings.STALLED_SWEEP_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Charter Media API",
    description="Captain video upload, normalization and delivery",
    version="0.1.0",
    lifespan=lifespan,
)
configure_pipeline(app)

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
app.include_router(blob.router, prefix="/blob", tags=["Blob"])
app.include_router(callbacks.router, prefix="/videos", tags=["Callbacks"])
app.include_router(worker.router, prefix="/videos", tags=["Worker"])
app.include_router(videos.router, prefix="/videos", tags=["Videos"])

if settings.OBJECT_STORE_BACKEND == "local":
    app.mount("/blobs", StaticFiles(directory=settings.BLOB_ROOT, check_dir=False), name="blobs")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Charter Media API",
        "version": "0.1.0",
        "status": "running"
    }
