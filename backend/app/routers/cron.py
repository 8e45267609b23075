"""
Cron / Scheduled Jobs — Endpoints for an external scheduler.

The scheduler calls these with X-Cron-Secret: <CRON_SECRET>. Each shop is
processed in its own database session so one shop's failure cannot roll back
another shop's changes.
"""

import hmac
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import select

from app.config import get_settings
from app.database import session_scope
from app.dependencies import build_optimizer
from app.models import ActivityLog, FacebookAccount
from app.services.token_service import get_graph_client_for_shop

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    authorization: Optional[str] = Header(None),
) -> None:
    """Verify request came from the scheduler with a valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not hmac.compare_digest(token.encode(), secret.encode()):
        raise HTTPException(401, "Invalid cron secret")


async def _connected_shops() -> list[str]:
    async with session_scope() as db:
        result = await db.execute(
            select(FacebookAccount.shop).where(FacebookAccount.is_active == True).distinct()
        )
        return sorted(result.scalars().all())


async def optimize_shop(shop: str) -> dict:
    """One shop's optimization pass, committed on its own."""
    async with session_scope() as db:
        _, client = await get_graph_client_for_shop(db, shop)
        results = await build_optimizer(client, db, shop).run_optimization()
        db.add(ActivityLog(
            shop=shop, action="optimization_run", category="optimizer",
            description=f"Scheduled optimization: {results['optimized']} actions, {results['errors']} errors",
            details=results,
            status="success" if not results["errors"] else "partial",
        ))
    return results


@router.post("/optimize")
async def cron_optimize(_: None = Depends(_require_cron_secret)):
    """
    Scheduled optimization for every shop with an active Facebook connection.
    POST https://your-app/api/cron/optimize
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    shops = await _connected_shops()
    summary = {"shops": len(shops), "processed": 0, "optimized": 0, "errors": 0, "failed_shops": []}
    for shop in shops:
        try:
            results = await optimize_shop(shop)
        except Exception as e:
            logger.error(f"Cron optimization failed for {shop}: {e}", exc_info=True)
            summary["failed_shops"].append(shop)
            continue
        summary["processed"] += results["processed"]
        summary["optimized"] += results["optimized"]
        summary["errors"] += results["errors"]
    logger.info(f"Cron optimization completed: {summary}")
    return {"status": "ok", "result": summary}
