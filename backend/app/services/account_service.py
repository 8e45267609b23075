"""
Account Service — Facebook connection, ad account discovery and health.
"""

import logging
from typing import Optional
import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from app.crypto import encrypt_token
from app.graph_client import FacebookGraphClient, GraphAPIError, act_id, create_graph_client
from app.models import ActivityLog, AdAccount, FacebookAccount
from app.services.token_service import exchange_for_long_lived_token, expiry_from_response
from app.utils import safe_float, safe_int, utcnow

logger = logging.getLogger(__name__)

ACTIVE_ACCOUNT_STATUS = 1

# Graph account_status codes
ACCOUNT_STATUS_LABELS = {
    1: "ACTIVE",
    2: "DISABLED",
    3: "UNSETTLED",
    7: "PENDING_RISK_REVIEW",
    8: "PENDING_SETTLEMENT",
    9: "IN_GRACE_PERIOD",
    100: "PENDING_CLOSURE",
    101: "CLOSED",
    201: "ANY_ACTIVE",
    202: "ANY_CLOSED",
}

HEALTH_FIELDS = "name,currency,account_status,disable_reason,capabilities,spend_cap,amount_spent,balance"
SPEND_CAP_WARNING_PERCENT = 80.0


def ad_account_to_dict(ad_account: AdAccount) -> dict:
    return {
        "id": str(ad_account.id),
        "ad_account_id": ad_account.ad_account_id,
        "name": ad_account.name,
        "currency": ad_account.currency,
        "account_status": ad_account.account_status,
        "status_label": ACCOUNT_STATUS_LABELS.get(ad_account.account_status, "UNKNOWN"),
        "is_default": ad_account.is_default,
    }


async def connect_account(
    db: AsyncSession,
    shop: str,
    access_token: str,
    exchange_for_long_lived: bool = True,
    http_client: Optional[httpx.AsyncClient] = None,
) -> tuple[FacebookAccount, list[AdAccount]]:
    """
    Store a Facebook user connection for the shop and discover its ad accounts.
    Any previous connection for the shop is deactivated.
    """
    token, expires_at = access_token, None
    if exchange_for_long_lived:
        token_data = await exchange_for_long_lived_token(access_token, http_client=http_client)
        token, expires_at = token_data["access_token"], expiry_from_response(token_data)

    client = create_graph_client(token, http_client=http_client)
    me = await client.get_me()

    await db.execute(
        update(FacebookAccount)
        .where(FacebookAccount.shop == shop, FacebookAccount.is_active == True)
        .values(is_active=False, updated_at=utcnow())
    )
    account = FacebookAccount(
        shop=shop,
        facebook_user_id=me.get("id"),
        facebook_user_name=me.get("name"),
        access_token=encrypt_token(token),
        token_expires_at=expires_at,
        is_active=True,
    )
    db.add(account)
    await db.flush()

    ad_accounts = await discover_ad_accounts(db, account, client)
    db.add(ActivityLog(
        shop=shop, action="facebook_connected", category="accounts",
        description=f"Connected Facebook user {me.get('name') or me.get('id')} with {len(ad_accounts)} ad accounts",
        entity_type="facebook_account", entity_id=str(account.id),
    ))
    await db.flush()
    logger.info(f"Connected Facebook account for {shop}: {len(ad_accounts)} ad accounts")
    return account, ad_accounts


async def list_ad_accounts(db: AsyncSession, account: FacebookAccount) -> list[AdAccount]:
    result = await db.execute(
        select(AdAccount)
        .where(AdAccount.facebook_account_id == account.id)
        .order_by(AdAccount.is_default.desc(), AdAccount.name)
    )
    return list(result.scalars().all())


async def discover_ad_accounts(
    db: AsyncSession,
    account: FacebookAccount,
    client: FacebookGraphClient,
) -> list[AdAccount]:
    """
    Upsert /me/adaccounts. If no default exists yet, the first active
    account (or failing that the first one) becomes the default.
    """
    remote_accounts = await client.get_ad_accounts()
    stored = {a.ad_account_id: a for a in await list_ad_accounts(db, account)}

    for remote in remote_accounts:
        remote_id = remote.get("id") or remote.get("account_id")
        if not remote_id:
            logger.warning(f"Skipping ad account without an id for {account.shop}")
            continue
        external_id = act_id(remote_id)
        ad_account = stored.get(external_id)
        if ad_account is None:
            ad_account = AdAccount(facebook_account_id=account.id, ad_account_id=external_id, is_default=False)
            db.add(ad_account)
            stored[external_id] = ad_account
        ad_account.name = remote.get("name")
        ad_account.currency = remote.get("currency") or "USD"
        ad_account.account_status = safe_int(remote.get("account_status"), None)
        ad_account.raw_data = remote
        ad_account.updated_at = utcnow()

    ad_accounts = list(stored.values())
    if ad_accounts and not any(a.is_default for a in ad_accounts):
        active = [a for a in ad_accounts if a.account_status == ACTIVE_ACCOUNT_STATUS]
        (active or ad_accounts)[0].is_default = True

    await db.flush()
    logger.info(f"Discovered {len(remote_accounts)} ad accounts for {account.shop}")
    return ad_accounts


async def get_default_ad_account(db: AsyncSession, account: FacebookAccount) -> Optional[AdAccount]:
    result = await db.execute(
        select(AdAccount).where(
            AdAccount.facebook_account_id == account.id,
            AdAccount.is_default == True,
        )
    )
    return result.scalars().first()


async def set_default_ad_account(db: AsyncSession, account: FacebookAccount, ad_account_id: str) -> AdAccount:
    """Exactly one default per connection: the chosen one."""
    external_id = act_id(ad_account_id)
    ad_accounts = await list_ad_accounts(db, account)
    chosen = next((a for a in ad_accounts if a.ad_account_id == external_id), None)
    if chosen is None:
        raise LookupError(f"Ad account {external_id} is not available for this connection.")
    for ad_account in ad_accounts:
        ad_account.is_default = ad_account is chosen
    db.add(ActivityLog(
        shop=account.shop, action="default_ad_account_set", category="accounts",
        description=f"Default ad account set to {external_id}",
        entity_type="ad_account", entity_id=external_id,
    ))
    await db.flush()
    return chosen


async def check_account_health(client: FacebookGraphClient, ad_account_id: str) -> dict:
    """
    Account status, spend cap usage and campaign-creation capability.
    Graph failures are reported as status "error" rather than raised.
    """
    try:
        info = await client.get_ad_account(ad_account_id, HEALTH_FIELDS)
    except GraphAPIError as e:
        logger.warning(f"Account health check failed for {act_id(ad_account_id)}: {e}")
        return {
            "status": "error",
            "issues": [f"Unable to check account health: {e}"],
            "recommendations": ["Verify the Facebook account connection"],
        }

    issues, recommendations = [], []
    account_status = safe_int(info.get("account_status"), None)
    if account_status != ACTIVE_ACCOUNT_STATUS:
        issues.append(f"Ad account is not active ({ACCOUNT_STATUS_LABELS.get(account_status, 'UNKNOWN')})")
        if info.get("disable_reason"):
            issues.append(f"Disable reason: {info['disable_reason']}")

    # spend_cap "0" means no cap
    spend_cap = safe_float(info.get("spend_cap"))
    amount_spent = safe_float(info.get("amount_spent"))
    spent_percent = None
    if spend_cap > 0:
        spent_percent = amount_spent / spend_cap * 100
        if spent_percent > SPEND_CAP_WARNING_PERCENT:
            issues.append("Approaching spending limit")
            recommendations.append("Consider increasing your spending limit")

    capabilities = info.get("capabilities") or []
    if "CAN_CREATE_CAMPAIGNS" not in capabilities:
        issues.append("Cannot create campaigns")
        recommendations.append("Contact Facebook support to restore campaign creation capability")

    return {
        "status": "healthy" if not issues else "issues_detected",
        "ad_account_id": act_id(ad_account_id),
        "account_status": ACCOUNT_STATUS_LABELS.get(account_status, "UNKNOWN"),
        "spend_cap_used_percent": round(spent_percent, 1) if spent_percent is not None else None,
        "issues": issues,
        "recommendations": recommendations,
    }


async def resolve_ad_account(
    db: AsyncSession,
    account: FacebookAccount,
    ad_account_id: Optional[str] = None,
) -> AdAccount:
    """The requested ad account, or the connection's default when none is given."""
    if ad_account_id:
        external_id = act_id(ad_account_id)
        chosen = next((a for a in await list_ad_accounts(db, account) if a.ad_account_id == external_id), None)
        if chosen is None:
            raise LookupError(f"Ad account {external_id} is not available for this connection.")
        return chosen
    default = await get_default_ad_account(db, account)
    if default is None:
        raise LookupError("No default ad account. Discover ad accounts and choose a default first.")
    return default
