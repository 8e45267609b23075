"""
Insights Router — Performance data for campaigns, ad sets and ads.
"""

import logging
from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import ShopConnection, build_insights_service, get_connection, graph_http_error
from app.graph_client import GraphAPIError
from app.services.campaign_store import SqlCampaignStore
from app.services.insights_service import DatePreset, DateRange, InsightsWindow

logger = logging.getLogger(__name__)
router = APIRouter()


def _resolve_window(
    date_preset: Optional[str],
    since: Optional[str],
    until: Optional[str],
    lookback_hours: Optional[int] = None,
) -> InsightsWindow:
    """Explicit since/until, a preset or a lookback, in that order. Default last_7d."""
    if since or until:
        if not (since and until):
            raise HTTPException(status_code=400, detail="Provide both since and until (YYYY-MM-DD).")
        if date_preset:
            raise HTTPException(status_code=400, detail="Use either since/until or date_preset, not both.")
        try:
            return DateRange(date.fromisoformat(since), date.fromisoformat(until))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid date range: {e}")
    if date_preset:
        try:
            return DatePreset(date_preset)
        except ValueError:
            valid = ", ".join(p.value for p in DatePreset)
            raise HTTPException(status_code=400, detail=f"Unknown date_preset '{date_preset}'. Valid: {valid}")
    if lookback_hours:
        return DateRange.for_lookback(lookback_hours)
    return DatePreset.LAST_7D


@router.get("/{entity_id}")
async def get_insights(
    entity_id: str,
    date_preset: Optional[str] = Query(None),
    since: Optional[str] = Query(None),
    until: Optional[str] = Query(None),
    breakdowns: Optional[str] = Query(None, description="Comma-separated, e.g. age,gender"),
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Raw insights rows for a campaign, ad set or ad. An empty list means no data."""
    window = _resolve_window(date_preset, since, until)
    insights = build_insights_service(conn.client, SqlCampaignStore(db, conn.shop))
    breakdown_list = [b.strip() for b in breakdowns.split(",") if b.strip()] if breakdowns else None
    try:
        rows = await insights.get_advanced_insights(entity_id, window, breakdowns=breakdown_list)
    except GraphAPIError as e:
        raise graph_http_error(e)
    return {"entity_id": entity_id, "data": rows, "count": len(rows)}


@router.get("/{entity_id}/snapshot")
async def get_performance_snapshot(
    entity_id: str,
    date_preset: Optional[str] = Query(None),
    since: Optional[str] = Query(None),
    until: Optional[str] = Query(None),
    lookback_hours: Optional[int] = Query(None, gt=0, le=24 * 90),
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Normalized metrics including conversions and ROAS. ``snapshot`` is null when there is no data."""
    window = _resolve_window(date_preset, since, until, lookback_hours)
    insights = build_insights_service(conn.client, SqlCampaignStore(db, conn.shop))
    try:
        snapshot = await insights.get_performance_snapshot(entity_id, window)
    except GraphAPIError as e:
        raise graph_http_error(e)
    return {"entity_id": entity_id, "snapshot": snapshot.as_dict() if snapshot else None}
