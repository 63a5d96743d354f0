"""
Workflow Execution & Reconciliation Engine — FastAPI Backend
Pulls Meta Ads spend and Pancake POS orders per tenant, reconciles them by
ad id, and exposes execution control (trigger / cancel / progress / logs).
Executions run on Celery workers; see recon_engine/worker.py.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from recon_engine.auth import require_auth
from recon_engine.config import get_settings
from recon_engine.database import check_db_connection, init_db
from recon_engine.routers import cron, integrations, workflows

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()

SERVICE_NAME = "Workflow Execution & Reconciliation Engine"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {SERVICE_NAME}...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=SERVICE_NAME,
    description="Multi-tenant ad-spend / POS order ingestion and reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(workflows.router, prefix="/api/workflows", tags=["Workflows"], dependencies=_auth)
app.include_router(integrations.router, prefix="/api/integrations", tags=["Integrations"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No auth, uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": SERVICE_NAME,
        "database": "connected" if db_ok else "disconnected",
    }
