"""
CRM Sync Client - local API
FastAPI Application Entry Point

Serves the offline-capable contact and task views from the local cache and
pushes mutations to the CRM API (queueing them while it is unreachable).

    python -m crmsync.main
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import settings
from crmsync.routes import contacts, sync, tasks
from crmsync.services.connectivity import ConnectivityMonitor
from crmsync.services.entities import KIND_CONTACT, KIND_TASK
from crmsync.services.errors import SyncError
from crmsync.services.gateway import get_remote_gateway
from crmsync.services.sync_coordinator import get_sync_coordinator

logger = logging.getLogger(__name__)

# Background services (initialized on startup)
_connectivity_monitor = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    global _connectivity_monitor

    coordinator = get_sync_coordinator()

    # Startup: warm local state (falls back to the cache when offline)
    for kind in (KIND_CONTACT, KIND_TASK):
        try:
            await coordinator.load(kind)
        except SyncError as e:
            logger.error(f"Initial load of {kind} failed: {e}")

    if settings.connectivity_monitor_enabled:
        _connectivity_monitor = ConnectivityMonitor(coordinator, get_remote_gateway())
        _connectivity_monitor.start()

    yield  # Application runs here

    # Shutdown
    if _connectivity_monitor:
        await _connectivity_monitor.stop()
        _connectivity_monitor = None


app = FastAPI(
    title="CRM Sync Client",
    description="Offline-first local API over the CRM REST backend",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for the local web UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync.router)
app.include_router(contacts.router)
app.include_router(tasks.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return request validation errors as 422 with a JSON-safe detail."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {k: v for k, v in error.items() if k != "ctx"}
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        sanitized_errors.append(sanitized)

    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
async def health_check():
    """Health check with the sync state."""
    status = get_sync_coordinator().status()
    return {
        "status": "healthy" if status["online"] is not False else "offline",
        "service": "crm-sync",
        "checks": status,
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
    uvicorn.run(app, host=settings.host, port=settings.port)
