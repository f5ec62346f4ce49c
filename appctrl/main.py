"""
App Controller — Status API

Main entrypoint. Sets up FastAPI with:
  - CORS for dashboard/CLI access
  - Rate limiting (slowapi)
  - Prometheus metrics (/metrics)
  - Health check (/health) with Redis status
  - App status routes (/api/apps)
"""

import logging
import uvicorn
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from appctrl import __version__
from appctrl.config import settings
from appctrl.events import _get_redis
from appctrl.models import ErrorResponse
from appctrl.routers.apps import limiter
from appctrl.routers.apps import router as apps_router
from appctrl.services.kubernetes_service import kube_config_status

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("status-api")


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Status API serving {settings.APP_PLURAL}.{settings.APP_GROUP} and "
        f"{settings.PKGR_PLURAL}.{settings.PKGR_GROUP} (rate limit {settings.RATE_LIMIT}, "
        f"event stream {'on' if settings.REDIS_URL else 'off'})"
    )
    yield
    logger.info("Status API stopped")


# --- FastAPI app ---
app = FastAPI(
    title="App Controller Status API",
    description="Read model for App and PackageRepository reconciliation status",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_methods=["GET"],
    allow_headers=["*"],
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(apps_router, prefix="/api")


# --- Health check ---
@app.get("/health")
async def health():
    """Cluster config and event stream status; "degraded" when snapshots cannot be read."""
    kube_status = kube_config_status()

    event_stream = "disabled"
    r = _get_redis()
    if r:
        try:
            r.ping()
            event_stream = "connected"
        except Exception:
            event_stream = "disconnected"

    return {
        "status": "healthy" if kube_status == "loaded" else "degraded",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "kubeConfig": kube_status,
        "eventStream": event_stream,
        "watches": [
            f"{settings.APP_GROUP}/{settings.APP_VERSION}/{settings.APP_PLURAL}",
            f"{settings.PKGR_GROUP}/{settings.PKGR_VERSION}/{settings.PKGR_PLURAL}",
        ],
        "version": __version__,
    }


# --- Prometheus metrics endpoint ---
@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Expose Prometheus metrics."""
    return PlainTextResponse(
        content=generate_latest().decode("utf-8"),
        media_type=CONTENT_TYPE_LATEST,
    )


# --- Global exception handler ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(detail="Internal server error", code="STATUS_API_ERROR").model_dump(),
    )


# --- Entry point ---
if __name__ == "__main__":
    uvicorn.run(
        "appctrl.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info",
        reload=False,
    )
