"""
Campaign Store — Local mirror of a shop's Facebook campaigns.
Remote first, local second: every helper here changes Facebook before it
touches the database, so a failed Graph call leaves local rows unchanged.
"""

import logging
import uuid
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.graph_client import FacebookGraphClient, act_id
from app.models import (
    ActivityLog, BudgetLevel, BudgetType, Campaign, CampaignStatus,
    FacebookAccount, OptimizationLog, ShopOrder,
)
from app.schemas import CampaignCreateConfig
from app.services.campaign_creation_service import CampaignCreationResult, CampaignCreationService
from app.services.optimizer_service import OptimizationRule
from app.services import rule_service
from app.utils import safe_float, utcnow

logger = logging.getLogger(__name__)

# Orders considered for the average order value
AOV_ORDER_SAMPLE = 100

MANUAL_STATUSES = (CampaignStatus.ACTIVE, CampaignStatus.PAUSED)


class CampaignStateError(Exception):
    """The requested change is not valid for the campaign's current state."""
    pass


class SqlCampaignStore:
    """Shop-scoped persistence used by the optimization engine."""

    def __init__(self, db: AsyncSession, shop: str):
        self.db = db
        self.shop = shop

    async def list_active_campaigns(self) -> list[Campaign]:
        result = await self.db.execute(
            select(Campaign).where(
                Campaign.shop == self.shop,
                Campaign.status == CampaignStatus.ACTIVE.value,
                Campaign.facebook_campaign_id.is_not(None),
            ).order_by(Campaign.created_at)
        )
        return list(result.scalars().all())

    async def get_campaign(self, facebook_campaign_id: str) -> Optional[Campaign]:
        result = await self.db.execute(
            select(Campaign).where(
                Campaign.shop == self.shop,
                Campaign.facebook_campaign_id == facebook_campaign_id,
            )
        )
        return result.scalar_one_or_none()

    # Each write runs in its own savepoint: a failed flush for one campaign
    # rolls back that write only and leaves the session usable for the rest
    # of the batch.

    async def mirror_status(self, facebook_campaign_id: str, status: CampaignStatus) -> None:
        async with self.db.begin_nested():
            campaign = await self.get_campaign(facebook_campaign_id)
            if campaign:
                campaign.status = CampaignStatus(status).value
                campaign.updated_at = utcnow()
                await self.db.flush()

    async def mirror_budget(self, facebook_campaign_id: str, budget: float) -> None:
        async with self.db.begin_nested():
            campaign = await self.get_campaign(facebook_campaign_id)
            if campaign:
                campaign.budget = budget
                campaign.updated_at = utcnow()
                await self.db.flush()

    async def record_optimization(self, entry: dict) -> OptimizationLog:
        log = OptimizationLog(shop=self.shop, **entry)
        async with self.db.begin_nested():
            self.db.add(log)
            await self.db.flush()
        return log

    async def average_order_value(self) -> Optional[float]:
        """Mean total of the shop's most recent orders, None without history."""
        result = await self.db.execute(
            select(ShopOrder.total_price)
            .where(ShopOrder.shop == self.shop)
            .order_by(ShopOrder.created_at.desc())
            .limit(AOV_ORDER_SAMPLE)
        )
        totals = [safe_float(total) for total in result.scalars().all()]
        if not totals:
            return None
        return sum(totals) / len(totals)

    async def load_rules(self) -> list[OptimizationRule]:
        return await rule_service.load_rules(self.db, self.shop)


# ══════════════════════════════════════════════════════════════════════
#  LIFECYCLE — create, activate/pause, delete, sync
# ══════════════════════════════════════════════════════════════════════

def campaign_to_dict(campaign: Campaign) -> dict:
    return {
        "id": str(campaign.id),
        "name": campaign.name,
        "objective": campaign.objective,
        "status": campaign.status,
        "budget": campaign.budget,
        "budget_type": campaign.budget_type,
        "budget_level": campaign.budget_level,
        "currency": campaign.currency,
        "ad_account_id": campaign.ad_account_id,
        "facebook_campaign_id": campaign.facebook_campaign_id,
        "facebook_ad_set_id": campaign.facebook_ad_set_id,
        "facebook_creative_id": campaign.facebook_creative_id,
        "facebook_ad_id": campaign.facebook_ad_id,
        "failed_step": campaign.failed_step,
        "error_message": campaign.error_message,
        "last_sync_at": campaign.last_sync_at.isoformat() if campaign.last_sync_at else None,
        "created_at": campaign.created_at.isoformat() if campaign.created_at else None,
    }


async def launch_campaign(
    db: AsyncSession,
    shop: str,
    account: FacebookAccount,
    ad_account_id: str,
    client: FacebookGraphClient,
    config: CampaignCreateConfig,
    currency: Optional[str] = None,
) -> tuple[Campaign, CampaignCreationResult]:
    """
    Record the campaign locally, build the remote tree, then store the ids.
    The external ids are written only when all four steps succeeded;
    otherwise the row is FAILED and the partial ids go to the activity log.
    """
    campaign = Campaign(
        id=uuid.uuid4(),
        shop=shop,
        facebook_account_id=account.id,
        ad_account_id=act_id(ad_account_id),
        name=config.campaign_name,
        objective=config.objective.value,
        status=CampaignStatus.PAUSED.value,
        budget=config.budget,
        budget_type=config.budget_type.value,
        budget_level=config.budget_level.value,
        currency=currency or "USD",
        targeting=config.targeting,
        ad_copy=config.ad_copy.model_dump(),
    )
    db.add(campaign)
    await db.flush()

    result = await CampaignCreationService(client).create_complete_campaign(ad_account_id, config)

    if result.success:
        campaign.facebook_campaign_id = result.campaign_id
        campaign.facebook_ad_set_id = result.ad_set_id
        campaign.facebook_creative_id = result.creative_id
        campaign.facebook_ad_id = result.ad_id
        campaign.last_sync_at = utcnow()
        db.add(ActivityLog(
            shop=shop, action="campaign_created", category="campaigns",
            description=f"Created campaign '{config.campaign_name}' (paused)",
            entity_type="campaign", entity_id=result.campaign_id,
            details=result.as_response(),
        ))
    else:
        campaign.status = CampaignStatus.FAILED.value
        campaign.failed_step = result.failed_step.value if result.failed_step else None
        campaign.error_message = result.error
        db.add(ActivityLog(
            shop=shop, action="campaign_creation_failed", category="campaigns",
            description=result.error,
            entity_type="campaign", entity_id=str(campaign.id),
            details=result.as_response(),
            status="error",
        ))
    campaign.updated_at = utcnow()
    await db.flush()
    return campaign, result


async def get_campaign_record(db: AsyncSession, shop: str, campaign_id) -> Optional[Campaign]:
    result = await db.execute(
        select(Campaign).where(Campaign.shop == shop, Campaign.id == campaign_id)
    )
    return result.scalar_one_or_none()


async def change_campaign_status(
    db: AsyncSession,
    client: FacebookGraphClient,
    campaign: Campaign,
    status: CampaignStatus,
) -> Campaign:
    """
    Activate or pause. Activation turns on the ad and ad set before the
    campaign (all three were created paused); pausing the campaign alone
    stops delivery.
    """
    status = CampaignStatus(status)
    if status not in MANUAL_STATUSES:
        raise CampaignStateError(f"Status must be one of: {', '.join(s.value for s in MANUAL_STATUSES)}")
    if not campaign.facebook_campaign_id:
        raise CampaignStateError("Campaign was never created on Facebook.")

    if status is CampaignStatus.ACTIVE:
        for object_id in (campaign.facebook_ad_id, campaign.facebook_ad_set_id):
            if object_id:
                await client.update_status(object_id, status)
    await client.update_status(campaign.facebook_campaign_id, status)

    previous = campaign.status
    campaign.status = status.value
    campaign.updated_at = utcnow()
    db.add(ActivityLog(
        shop=campaign.shop, action="campaign_status_changed", category="campaigns",
        description=f"Campaign {campaign.facebook_campaign_id} status {previous} → {status.value}",
        entity_type="campaign", entity_id=campaign.facebook_campaign_id,
    ))
    await db.flush()
    logger.info(f"Campaign {campaign.facebook_campaign_id} status {previous} -> {status.value}")
    return campaign


async def delete_campaign(db: AsyncSession, client: Optional[FacebookGraphClient], campaign: Campaign) -> None:
    """Mark DELETED on Facebook, then drop the local row."""
    if campaign.facebook_campaign_id:
        if client is None:
            raise CampaignStateError("A Facebook connection is required to delete this campaign.")
        await client.update_status(campaign.facebook_campaign_id, CampaignStatus.DELETED)

    db.add(ActivityLog(
        shop=campaign.shop, action="campaign_deleted", category="campaigns",
        description=f"Deleted campaign '{campaign.name}'",
        entity_type="campaign", entity_id=campaign.facebook_campaign_id or str(campaign.id),
    ))
    await db.delete(campaign)
    await db.flush()
    logger.info(f"Deleted campaign {campaign.facebook_campaign_id or campaign.id} for {campaign.shop}")


def _remote_budget(remote: dict) -> tuple[Optional[float], Optional[BudgetType]]:
    """Graph budgets are minor units; only campaign-level (CBO) budgets appear here."""
    if remote.get("daily_budget"):
        return safe_float(remote["daily_budget"]) / 100, BudgetType.DAILY
    if remote.get("lifetime_budget"):
        return safe_float(remote["lifetime_budget"]) / 100, BudgetType.LIFETIME
    return None, None


def _local_status(remote_status: Optional[str]) -> Optional[str]:
    try:
        return CampaignStatus(remote_status).value
    except ValueError:
        # ARCHIVED, IN_PROCESS, WITH_ISSUES ... keep what we have
        return None


async def sync_campaigns(
    db: AsyncSession,
    shop: str,
    account: FacebookAccount,
    ad_account_id: str,
    client: FacebookGraphClient,
) -> dict:
    """Pull the ad account's campaigns and upsert them by (shop, facebook_campaign_id)."""
    remote_campaigns = await client.get_campaigns(ad_account_id)

    result = await db.execute(
        select(Campaign).where(Campaign.shop == shop, Campaign.facebook_campaign_id.is_not(None))
    )
    existing = {c.facebook_campaign_id: c for c in result.scalars().all()}

    created = updated = 0
    now = utcnow()
    for remote in remote_campaigns:
        remote_id = str(remote.get("id") or "")
        if not remote_id:
            continue
        budget, budget_type = _remote_budget(remote)
        status = _local_status(remote.get("status"))

        campaign = existing.get(remote_id)
        if campaign is None:
            campaign = Campaign(
                shop=shop,
                facebook_account_id=account.id,
                ad_account_id=act_id(ad_account_id),
                facebook_campaign_id=remote_id,
                name=remote.get("name") or remote_id,
                status=status or CampaignStatus.PAUSED.value,
                # No campaign budget on Facebook means the ad sets hold it
                budget_level=(BudgetLevel.CAMPAIGN if budget is not None else BudgetLevel.AD_SET).value,
            )
            db.add(campaign)
            existing[remote_id] = campaign
            created += 1
        else:
            updated += 1
            if status:
                campaign.status = status
            if remote.get("name"):
                campaign.name = remote["name"]

        campaign.objective = remote.get("objective") or campaign.objective
        if budget is not None:
            campaign.budget = budget
            campaign.budget_type = budget_type.value
        campaign.last_sync_at = now
        campaign.updated_at = now

    db.add(ActivityLog(
        shop=shop, action="campaigns_synced", category="campaigns",
        description=f"Synced {len(remote_campaigns)} campaigns from {act_id(ad_account_id)}",
        details={"created": created, "updated": updated},
    ))
    await db.flush()
    logger.info(f"Campaign sync for {shop}: {created} created, {updated} updated")
    return {"synced": created + updated, "created": created, "updated": updated}
