"""
Campaign Management Router — Create, list, activate/pause, delete and sync
Facebook campaigns for a shop.
Every created object starts PAUSED; activation is an explicit status change.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.auth import get_shop
from app.database import get_db
from app.dependencies import ShopConnection, get_connection, graph_http_error
from app.graph_client import GraphAPIError
from app.models import Campaign, CampaignStatus
from app.schemas import CampaignCreateConfig, CampaignCreateRequest, StatusChangeRequest
from app.services import account_service
from app.services.campaign_store import (
    CampaignStateError, campaign_to_dict, change_campaign_status, delete_campaign,
    get_campaign_record, launch_campaign, sync_campaigns,
)
from app.services.token_service import AccountNotConnectedError, TokenExpiredError, get_graph_client_for_shop
from app.utils import parse_uuid

logger = logging.getLogger(__name__)
router = APIRouter()


async def _get_campaign(db: AsyncSession, shop: str, campaign_id: str) -> Campaign:
    campaign = await get_campaign_record(db, shop, parse_uuid(campaign_id, "campaign_id"))
    if not campaign:
        raise HTTPException(status_code=404, detail="Campaign not found.")
    return campaign


@router.post("")
@router.post("/")
async def create_campaign(
    req: CampaignCreateRequest,
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """
    Create Campaign -> Ad Set -> Creative -> Ad, all PAUSED.
    Responds 201 on success; 502 with the failed step and any IDs already
    created when a step fails.
    """
    try:
        ad_account = await account_service.resolve_ad_account(db, conn.account, req.ad_account_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

    config = CampaignCreateConfig.model_validate(req.model_dump(exclude={"ad_account_id"}))
    campaign, result = await launch_campaign(
        db, conn.shop, conn.account, ad_account.ad_account_id, conn.client, config,
        currency=ad_account.currency,
    )
    body = {**result.as_response(), "id": str(campaign.id), "status": campaign.status}
    return JSONResponse(status_code=201 if result.success else 502, content=body)


@router.get("")
@router.get("/")
async def list_campaigns(
    status: Optional[str] = Query(None, description="Filter by status: ACTIVE, PAUSED, FAILED"),
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    """List the shop's local campaign records, newest first."""
    query = select(Campaign).where(Campaign.shop == shop)
    if status:
        try:
            query = query.where(Campaign.status == CampaignStatus(status.upper()).value)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    result = await db.execute(query.order_by(Campaign.created_at.desc()))
    campaigns = result.scalars().all()
    return {"campaigns": [campaign_to_dict(c) for c in campaigns], "count": len(campaigns)}


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    return campaign_to_dict(await _get_campaign(db, shop, campaign_id))


@router.post("/{campaign_id}/status")
async def update_campaign_status(
    campaign_id: str,
    req: StatusChangeRequest,
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Activate or pause. Facebook is updated first; the local row follows."""
    campaign = await _get_campaign(db, conn.shop, campaign_id)
    try:
        status = CampaignStatus(req.status.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {req.status}")

    try:
        campaign = await change_campaign_status(db, conn.client, campaign, status)
    except CampaignStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GraphAPIError as e:
        raise graph_http_error(e)
    return {"status": "updated", "campaign": campaign_to_dict(campaign)}


@router.delete("/{campaign_id}")
async def remove_campaign(
    campaign_id: str,
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    """Delete on Facebook (status DELETED), then remove the local record."""
    campaign = await _get_campaign(db, shop, campaign_id)
    client = None
    if campaign.facebook_campaign_id:
        try:
            _, client = await get_graph_client_for_shop(db, shop)
        except AccountNotConnectedError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except TokenExpiredError as e:
            raise HTTPException(status_code=401, detail=str(e))

    try:
        await delete_campaign(db, client, campaign)
    except CampaignStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GraphAPIError as e:
        raise graph_http_error(e)
    return {"status": "deleted", "id": campaign_id}


@router.post("/sync")
async def sync_from_facebook(
    ad_account_id: Optional[str] = Query(None, description="Defaults to the shop's default ad account"),
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Pull campaigns from Facebook and upsert them locally."""
    try:
        ad_account = await account_service.resolve_ad_account(db, conn.account, ad_account_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    try:
        return await sync_campaigns(db, conn.shop, conn.account, ad_account.ad_account_id, conn.client)
    except GraphAPIError as e:
        raise graph_http_error(e)
