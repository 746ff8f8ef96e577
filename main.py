"""
FiscalBridge - Application Entry Point
========================================
FastAPI app initialization, background dispatch scheduler, and router registration.
"""

import logging
import time as _time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from apscheduler.schedulers.background import BackgroundScheduler

from config import settings
from config.database import SessionLocal, Base, engine
from common.exceptions import ConfigurationError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
scheduler_logger = logging.getLogger("fiscal.scheduler")
http_logger = logging.getLogger("fiscal.http")

# ==========================================
# Import ALL models so Alembic/Base can see them
# ==========================================
from modules.websrm.models import (  # noqa: F401,E402
    FiscalQueueEntry, FiscalQueueEvent, FiscalReceipt, CircuitBreakerState,
)

# ==========================================
# Import routers
# ==========================================
from modules.websrm.routes import router as websrm_router  # noqa: E402
from modules.websrm.admin_routes import router as websrm_admin_router  # noqa: E402


# ==========================================
# Background Scheduler: WEB-SRM dispatch
# ==========================================
def _dispatch_websrm_queue():
    """Background job: deliver due WEB-SRM entries every WEBSRM_DISPATCH_INTERVAL seconds."""
    try:
        from modules.websrm.worker import get_worker
        summary = get_worker().run_once()
        if summary.get("claimed"):
            scheduler_logger.info(f"WEB-SRM dispatch: {summary}")
    except ConfigurationError as e:
        scheduler_logger.error(f"WEB-SRM dispatch disabled: {e.message}")
    except Exception as e:
        scheduler_logger.error(f"WEB-SRM dispatch error: {e}")


def _log_queue_metrics():
    """Background job: log queue depth per status every 5 minutes."""
    db = SessionLocal()
    try:
        from modules.websrm.queue_service import get_queue_service
        stats = get_queue_service().get_stats(db)
        scheduler_logger.info(
            f"WEB-SRM queue: pending={stats['pending']} failed={stats['failed']} "
            f"failed_permanent={stats['failed_permanent']} sent={stats['sent']} due={stats['due']}"
        )
        if stats["failed_permanent"]:
            scheduler_logger.warning(f"WEB-SRM queue: {stats['failed_permanent']} entries need an operator")
    except ConfigurationError as e:
        scheduler_logger.error(f"WEB-SRM metrics disabled: {e.message}")
    except Exception as e:
        scheduler_logger.error(f"WEB-SRM metrics error: {e}")
    finally:
        db.close()


scheduler = BackgroundScheduler()


@asynccontextmanager
async def lifespan(app):
    # Auto-create any missing tables (safe for existing tables)
    Base.metadata.create_all(bind=engine)

    scheduler.add_job(
        _dispatch_websrm_queue, 'interval', seconds=settings.WEBSRM_DISPATCH_INTERVAL,
        id='websrm_dispatch', max_instances=1, coalesce=True,
    )
    scheduler.add_job(_log_queue_metrics, 'interval', minutes=5, id='websrm_metrics')
    scheduler.start()
    scheduler_logger.info(
        f"Background scheduler started (dispatch: {settings.WEBSRM_DISPATCH_INTERVAL}s, metrics: 5m)"
    )
    yield
    scheduler.shutdown()
    scheduler_logger.info("Background scheduler stopped")


# ==========================================
# Create App
# ==========================================
app = FastAPI(
    title="FiscalBridge",
    description="WEB-SRM fiscal transaction adapter",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
    lifespan=lifespan,
)


# ==========================================
# Middleware: Request Log
# ==========================================
_SKIP_PATHS = ("/health",)


@app.middleware("http")
async def request_logger(request: Request, call_next):
    """Log method, path, status and latency. Bodies are never logged (PII)."""
    path = request.url.path
    if path in _SKIP_PATHS:
        return await call_next(request)
    start = _time.time()
    response = await call_next(request)
    elapsed_ms = int((_time.time() - start) * 1000)
    http_logger.info(f"{request.method} {path} → {response.status_code} ({elapsed_ms}ms)")
    return response


# ==========================================
# Register Routers
# ==========================================
app.include_router(websrm_router)
app.include_router(websrm_admin_router)


# ==========================================
# Health check
# ==========================================
@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": "1.0.0",
        "websrm_env": settings.WEBSRM_ENV,
        "network_enabled": settings.WEBSRM_NETWORK_ENABLED,
    }
