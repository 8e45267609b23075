"""
Facebook Ads Orchestrator — FastAPI Backend
Creates and manages Facebook campaigns for Shopify shops through the Graph
Marketing API, and optimizes running campaigns with rule-based automation.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.config import get_settings
from app.database import init_db, check_db_connection
from app.auth import require_auth
from app.routers import accounts, campaigns, cron, insights, optimizer, webhooks

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Facebook Ads Orchestrator...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Facebook Ads Orchestrator",
    description="Facebook campaign creation, insights and rule-based optimization for Shopify shops",
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
app.include_router(accounts.router, prefix="/api/accounts", tags=["Accounts"], dependencies=_auth)
app.include_router(campaigns.router, prefix="/api/campaigns", tags=["Campaign Management"], dependencies=_auth)
app.include_router(insights.router, prefix="/api/insights", tags=["Insights"], dependencies=_auth)
app.include_router(optimizer.router, prefix="/api/optimizer", tags=["Optimizer"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No API key; guarded by CRON_SECRET
app.include_router(webhooks.router, prefix="/api")  # No API key; guarded by X-Hub-Signature-256


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Facebook Ads Orchestrator",
        "database": "connected" if db_ok else "disconnected",
    }
