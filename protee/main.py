"""
Protee backend — FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from protee.config.settings import settings
from protee.storage.database import init_db
from protee.api.routes import router
from protee.api.sync_routes import router as sync_router
from protee.sync.engine import init_sync_coordinator, shutdown_sync_coordinator
from protee.sync.errors import LocalStorageError

_handlers: list[logging.Handler] = [logging.StreamHandler()]
if settings.log_file:
    _handlers.append(logging.FileHandler(settings.log_file))

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=_handlers,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Protee backend starting...")
    init_db()
    coordinator = init_sync_coordinator()
    await coordinator.start_auto_sync()
    if coordinator.is_configured:
        logger.info("Sync engine ready (state: %s)", coordinator.snapshot().state.value)
    else:
        logger.info("Remote sync not configured; running local-only")
    logger.info("API ready at http://%s:%s", settings.api_host, settings.api_port)
    yield
    logger.info("Protee backend shutting down...")
    await shutdown_sync_coordinator()


app = FastAPI(
    title="Protee",
    description="Local-first protein tracking with background sync",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
app.include_router(sync_router)


@app.exception_handler(LocalStorageError)
async def local_storage_error(request: Request, exc: LocalStorageError):
    logger.error("Local storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Local storage failure"})


@app.get("/health")
def health():
    return {"status": "ok", "version": VERSION}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "protee.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
