"""loopdash FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loopdash import config
from loopdash.live.broadcast import TailBroadcastService
from loopdash.log_store import EventLogStore
from loopdash.observability import initialize as initialize_observability, shutdown as shutdown_observability
from loopdash.routers.live import live_router
from loopdash.routers.sessions import checklist_router, sessions_router, transcripts_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("loopdash")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("loopdash backend starting up (log=%s)", config.LOG_FILE)
    initialize_observability(app)

    store = EventLogStore(config.LOG_FILE)
    app.state.log_store = store
    if config.ROTATE_ON_STARTUP:
        result = store.rotate(config.MAX_LOG_ENTRIES)
        if result.purged_count:
            logger.info("Startup rotation purged %d entries", result.purged_count)

    service = TailBroadcastService()
    app.state.tail_service = service

    yield

    logger.info("loopdash backend shutting down")
    await service.cleanup_all()
    shutdown_observability(app)


app = FastAPI(
    title="loopdash API",
    description="Live dashboard backend for self-looping Claude sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the Vite dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        f"http://localhost:{config.PORT}",
        f"http://127.0.0.1:{config.PORT}",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(transcripts_router)
app.include_router(checklist_router)
app.include_router(live_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    service = getattr(app.state, "tail_service", None)
    return {
        "status": "ok",
        "log_file": str(config.LOG_FILE),
        "log_exists": config.LOG_FILE.exists(),
        "active_watches": service.active_watch_count() if service else 0,
    }


def run() -> None:
    import uvicorn

    uvicorn.run("loopdash.main:app", host=config.HOST, port=config.PORT)
