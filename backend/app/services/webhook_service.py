"""
Webhook Service — Facebook Marketing API webhooks.
Verifies the subscription handshake and X-Hub-Signature-256, then mirrors
campaign status changes into the local campaigns table.
"""

import hashlib
import hmac
import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import get_settings
from app.graph_client import act_id
from app.models import ActivityLog, AdAccount, Campaign, CampaignStatus, FacebookAccount
from app.utils import utcnow

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_signature(payload: bytes, signature: Optional[str], app_secret: Optional[str] = None) -> bool:
    """Constant-time check of X-Hub-Signature-256 against HMAC-SHA256(app secret, raw body)."""
    app_secret = app_secret if app_secret is not None else get_settings().facebook_app_secret
    if not app_secret:
        logger.error("Webhook signature check failed: FACEBOOK_APP_SECRET not configured")
        return False
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    expected = hmac.new(app_secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature[len(SIGNATURE_PREFIX):].encode())


def handle_verification(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    verify_token: Optional[str] = None,
) -> Optional[str]:
    """The challenge to echo back, or None when the handshake is rejected."""
    verify_token = verify_token if verify_token is not None else get_settings().facebook_webhook_verify_token
    if mode == "subscribe" and verify_token and token and hmac.compare_digest(token.encode(), verify_token.encode()):
        logger.info("Facebook webhook verified")
        return challenge
    logger.warning("Facebook webhook verification rejected")
    return None


async def _shop_for_ad_account(db: AsyncSession, ad_account_id: str) -> Optional[str]:
    result = await db.execute(
        select(FacebookAccount.shop)
        .join(AdAccount, AdAccount.facebook_account_id == FacebookAccount.id)
        .where(AdAccount.ad_account_id == act_id(ad_account_id), FacebookAccount.is_active == True)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def handle_campaign_change(db: AsyncSession, object_id: str, value: dict) -> int:
    """Apply a ``campaigns`` change; returns the number of local rows updated."""
    campaign_id = value.get("campaign_id") or value.get("id")
    try:
        status = CampaignStatus(value.get("status"))
    except ValueError:
        logger.info(f"Ignoring campaign change with unsupported status {value.get('status')!r}")
        return 0
    if not campaign_id or status is CampaignStatus.FAILED:
        return 0

    shop = await _shop_for_ad_account(db, object_id)
    if not shop:
        logger.info(f"No shop connected to ad account {object_id}; ignoring webhook")
        return 0

    result = await db.execute(
        select(Campaign).where(Campaign.shop == shop, Campaign.facebook_campaign_id == str(campaign_id))
    )
    campaigns = result.scalars().all()
    for campaign in campaigns:
        campaign.status = status.value
        campaign.last_sync_at = utcnow()
    if campaigns:
        db.add(ActivityLog(
            shop=shop, action="campaign_status_webhook", category="webhooks",
            description=f"Campaign {campaign_id} status changed to {status.value} on Facebook",
            entity_type="campaign", entity_id=str(campaign_id),
            details=value,
        ))
    await db.flush()
    return len(campaigns)


async def process_event(db: AsyncSession, event: dict) -> dict:
    """Dispatch each change in the payload by field. Unhandled fields are logged only."""
    processed = ignored = 0
    for entry in event.get("entry") or []:
        object_id = str(entry.get("id") or "")
        for change in entry.get("changes") or []:
            field = change.get("field")
            if field == "campaigns":
                await handle_campaign_change(db, object_id, change.get("value") or {})
                processed += 1
            else:
                logger.info(f"Unhandled webhook field: {field}")
                ignored += 1
    return {"processed": processed, "ignored": ignored}
