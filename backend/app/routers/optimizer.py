"""
Optimizer Router — Rule-based campaign optimization.
Runs the shop's rules against live performance, previews recommendations,
and manages the rule set and the optimization log.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_shop
from app.database import get_db
from app.dependencies import ShopConnection, build_optimizer, get_connection, graph_http_error
from app.graph_client import GraphAPIError
from app.models import ActivityLog
from app.schemas import OptimizationRuleCreate, OptimizationRuleUpdate
from app.services import rule_service
from app.services.optimizer_service import OptimizationError
from app.utils import safe_error_detail

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/run")
async def run_optimization(
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Evaluate every active campaign and apply the actions of the rules that fire."""
    optimizer = build_optimizer(conn.client, db, conn.shop)
    try:
        results = await optimizer.run_optimization()
    except GraphAPIError as e:
        raise graph_http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Optimization run failed. Please try again."))

    db.add(ActivityLog(
        shop=conn.shop, action="optimization_run", category="optimizer",
        description=(
            f"Optimization processed {results['processed']} campaigns: "
            f"{results['optimized']} actions, {results['errors']} errors"
        ),
        details=results,
        status="success" if not results["errors"] else "partial",
    ))
    await db.flush()
    return results


@router.get("/recommendations")
async def get_recommendations(
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Which rules would fire now, and why. Changes nothing."""
    optimizer = build_optimizer(conn.client, db, conn.shop)
    recommendations = await optimizer.get_optimization_recommendations()
    return {"recommendations": recommendations, "count": len(recommendations)}


@router.post("/campaigns/{facebook_campaign_id}/evaluate")
async def evaluate_campaign(
    facebook_campaign_id: str,
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Run the active rules against a single campaign."""
    optimizer = build_optimizer(conn.client, db, conn.shop)
    campaign = await optimizer.store.get_campaign(facebook_campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found.")
    try:
        actions = await optimizer.evaluate_campaign(campaign)
    except OptimizationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GraphAPIError as e:
        raise graph_http_error(e)
    return {"campaignId": facebook_campaign_id, "actions": actions}


# ── Rules ─────────────────────────────────────────────────────────────

@router.get("/rules")
async def list_rules(
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    records = await rule_service.list_rule_records(db, shop)
    return {"rules": [rule_service.rule_to_dict(r) for r in records]}


@router.post("/rules")
async def create_rule(
    req: OptimizationRuleCreate,
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    try:
        record = await rule_service.create_rule(db, shop, req)
    except rule_service.RuleConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule_service.rule_to_dict(record)


@router.put("/rules/{rule_key}")
async def update_rule(
    rule_key: str,
    req: OptimizationRuleUpdate,
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    record = await rule_service.get_rule_record(db, shop, rule_key)
    if not record:
        raise HTTPException(status_code=404, detail="Rule not found.")
    try:
        record = await rule_service.update_rule(db, record, req)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule_service.rule_to_dict(record)


@router.delete("/rules/{rule_key}")
async def delete_rule(
    rule_key: str,
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    record = await rule_service.get_rule_record(db, shop, rule_key)
    if not record:
        raise HTTPException(status_code=404, detail="Rule not found.")
    await rule_service.delete_rule(db, record)
    return {"status": "deleted", "rule_key": rule_key}


# ── Log ───────────────────────────────────────────────────────────────

@router.get("/logs")
async def list_logs(
    campaign_id: Optional[str] = Query(None, description="Facebook campaign id"),
    limit: int = Query(100, ge=1, le=500),
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    logs = await rule_service.list_optimization_logs(db, shop, campaign_id=campaign_id, limit=limit)
    return {"logs": [rule_service.log_to_dict(log) for log in logs], "count": len(logs)}
