from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from .routes_automations import router as automations_router
from .routes_ops import router as ops_router
from .routes_scheduler import router as scheduler_router
from .routes_videos import router as videos_router
from .settings import get_settings

logger = logging.getLogger("reelsmith")

app = FastAPI(title="reelsmith")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(automations_router)
app.include_router(videos_router)
app.include_router(scheduler_router)
app.include_router(ops_router)

# Finished videos; Instagram fetches them from here by public URL.
app.mount("/videos", StaticFiles(directory=f"{settings.media_root}/videos", check_dir=False), name="videos")


@app.on_event("startup")
async def startup_event():
    """Start scheduler on app startup."""
    from reelsmith.services.scheduler import automation_scheduler
    automation_scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop scheduler on app shutdown."""
    from reelsmith.services.scheduler import automation_scheduler
    automation_scheduler.stop()
