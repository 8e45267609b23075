"""
Token Service — Facebook user access tokens.
Exchanges short-lived login tokens for long-lived ones and hands out Graph
clients for a shop's active connection. Facebook user tokens cannot be
refreshed server-side; an expired token means the shop must reconnect.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import get_settings
from app.crypto import decrypt_token
from app.graph_client import FacebookGraphClient, GraphAPIError, create_graph_client, CONNECTION_ERROR_MESSAGE
from app.models import FacebookAccount

logger = logging.getLogger(__name__)

# Treat tokens as expired slightly early so a call never starts on a dying token
EXPIRY_BUFFER = timedelta(minutes=5)


class AccountNotConnectedError(Exception):
    """The shop has no active Facebook connection."""
    pass


class TokenExpiredError(Exception):
    """The stored Facebook token has expired; the shop must reconnect."""
    pass


async def exchange_for_long_lived_token(
    short_lived_token: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """
    Exchange a short-lived user token via fb_exchange_token.
    Returns dict with access_token, token_type and (usually) expires_in.
    """
    settings = get_settings()
    if not settings.facebook_app_id or not settings.facebook_app_secret:
        raise GraphAPIError("Facebook app credentials are not configured.")

    params = {
        "grant_type": "fb_exchange_token",
        "client_id": settings.facebook_app_id,
        "client_secret": settings.facebook_app_secret,
        "fb_exchange_token": short_lived_token,
    }
    url = f"{settings.graph_base_url}/oauth/access_token"
    client = http_client or httpx.AsyncClient(timeout=settings.graph_request_timeout)
    try:
        response = await client.get(url, params=params)
    except httpx.HTTPError as e:
        logger.error(f"Token exchange transport error: {type(e).__name__}")
        raise GraphAPIError(CONNECTION_ERROR_MESSAGE) from e
    finally:
        if http_client is None:
            await client.aclose()

    data = FacebookGraphClient.parse_response("GET", "/oauth/access_token", response)
    if not data.get("access_token"):
        raise GraphAPIError("Facebook did not return a long-lived token.")
    logger.info(f"Exchanged token for long-lived token, expires_in={data.get('expires_in')}")
    return data


def expiry_from_response(token_data: dict) -> Optional[datetime]:
    """Naive UTC expiry for an exchange response, None when Facebook gives none."""
    expires_in = token_data.get("expires_in")
    if not expires_in:
        return None
    return datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=int(expires_in))


def _make_aware(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (UTC). DB may return naive datetimes."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def token_is_expired(account: FacebookAccount, now: Optional[datetime] = None) -> bool:
    if not account.token_expires_at:
        return False
    now = now or datetime.now(timezone.utc)
    return now >= _make_aware(account.token_expires_at) - EXPIRY_BUFFER


async def get_active_account(db: AsyncSession, shop: str) -> FacebookAccount:
    result = await db.execute(
        select(FacebookAccount)
        .where(FacebookAccount.shop == shop, FacebookAccount.is_active == True)
        .order_by(FacebookAccount.updated_at.desc())
        .limit(1)
    )
    account = result.scalar_one_or_none()
    if not account:
        raise AccountNotConnectedError(f"No Facebook account connected for {shop}.")
    return account


async def get_graph_client_for_shop(
    db: AsyncSession,
    shop: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> tuple[FacebookAccount, FacebookGraphClient]:
    """
    The shop's active connection and a Graph client using its token.
    This is the main entry point; use this instead of create_graph_client directly.
    """
    account = await get_active_account(db, shop)
    if token_is_expired(account):
        logger.warning(f"Facebook token expired for {shop}; reconnect required")
        raise TokenExpiredError("Facebook access token has expired. Please reconnect your account.")
    return account, create_graph_client(decrypt_token(account.access_token), http_client=http_client)
