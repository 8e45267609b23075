"""
Accounts Router — Facebook connection, ad account discovery, default selection
and account health.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_shop
from app.database import get_db
from app.dependencies import ShopConnection, get_connection, graph_http_error
from app.graph_client import GraphAPIError
from app.schemas import ConnectAccountRequest
from app.services import account_service
from app.services.token_service import AccountNotConnectedError, get_active_account

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/connect")
async def connect_facebook(
    req: ConnectAccountRequest,
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    """Store a Facebook user token for the shop (exchanged for a long-lived one) and discover ad accounts."""
    try:
        account, ad_accounts = await account_service.connect_account(
            db, shop, req.access_token, exchange_for_long_lived=req.exchange_for_long_lived,
        )
    except GraphAPIError as e:
        raise graph_http_error(e)
    return {
        "status": "connected",
        "facebook_user": {"id": account.facebook_user_id, "name": account.facebook_user_name},
        "token_expires_at": account.token_expires_at.isoformat() if account.token_expires_at else None,
        "ad_accounts": [account_service.ad_account_to_dict(a) for a in ad_accounts],
    }


@router.get("/status")
async def connection_status(
    shop: str = Depends(get_shop),
    db: AsyncSession = Depends(get_db),
):
    """Whether the shop is connected, with its ad accounts and default."""
    try:
        account = await get_active_account(db, shop)
    except AccountNotConnectedError:
        return {"connected": False, "ad_accounts": [], "default_ad_account": None}

    ad_accounts = await account_service.list_ad_accounts(db, account)
    default = next((a for a in ad_accounts if a.is_default), None)
    return {
        "connected": True,
        "facebook_user": {"id": account.facebook_user_id, "name": account.facebook_user_name},
        "token_expires_at": account.token_expires_at.isoformat() if account.token_expires_at else None,
        "ad_accounts": [account_service.ad_account_to_dict(a) for a in ad_accounts],
        "default_ad_account": account_service.ad_account_to_dict(default) if default else None,
        "currency": default.currency if default else "USD",
    }


@router.post("/discover")
async def discover_ad_accounts(
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    """Re-read /me/adaccounts and upsert the results."""
    try:
        ad_accounts = await account_service.discover_ad_accounts(db, conn.account, conn.client)
    except GraphAPIError as e:
        raise graph_http_error(e)
    return {
        "ad_accounts": [account_service.ad_account_to_dict(a) for a in ad_accounts],
        "count": len(ad_accounts),
    }


@router.put("/default/{ad_account_id}")
async def set_default_ad_account(
    ad_account_id: str,
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    try:
        chosen = await account_service.set_default_ad_account(db, conn.account, ad_account_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "updated", "default_ad_account": account_service.ad_account_to_dict(chosen)}


@router.get("/health")
async def account_health(
    ad_account_id: Optional[str] = Query(None, description="Defaults to the shop's default ad account"),
    conn: ShopConnection = Depends(get_connection),
    db: AsyncSession = Depends(get_db),
):
    try:
        ad_account = await account_service.resolve_ad_account(db, conn.account, ad_account_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return await account_service.check_account_health(conn.client, ad_account.ad_account_id)


@router.get("/test")
async def test_connection(conn: ShopConnection = Depends(get_connection)):
    """Verify the stored token still works."""
    return await conn.client.test_connection()
