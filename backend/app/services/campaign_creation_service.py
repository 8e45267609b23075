"""
Campaign Creation Service — Builds a complete Facebook campaign tree.
Creates campaign → ad set → creative → ad in sequence, passing each new ID
into the next step. Every object is created PAUSED; activation is a
separate, explicit call.

Facebook offers no multi-object transaction. If a later step fails, the
objects already created stay on Facebook; the result names the failed step
and carries the IDs created so far so an operator can clean up.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from app.graph_client import FacebookGraphClient, GraphAPIError, act_id, budget_fields
from app.models import BudgetLevel, CampaignStatus, CreationStep
from app.schemas import CampaignCreateConfig

logger = logging.getLogger(__name__)

STEP_LABELS = {
    CreationStep.CAMPAIGN: "Campaign",
    CreationStep.AD_SET: "Ad set",
    CreationStep.CREATIVE: "Creative",
    CreationStep.AD: "Ad",
}

# Lowest-cost bidding on whichever level owns the budget
DEFAULT_BID_STRATEGY = "LOWEST_COST_WITHOUT_CAP"


def _extract_id(result: dict) -> Optional[str]:
    """Graph returns {"id": "..."} for created objects."""
    if not isinstance(result, dict):
        return None
    value = result.get("id")
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _extract_image_hash(result: dict) -> Optional[str]:
    """adimages returns {"images": {"<filename>": {"hash": "..."}}}."""
    images = result.get("images") if isinstance(result, dict) else None
    if isinstance(images, dict):
        for image in images.values():
            if isinstance(image, dict) and image.get("hash"):
                return image["hash"]
    return None


@dataclass
class CampaignCreationResult:
    success: bool = False
    campaign_id: Optional[str] = None
    ad_set_id: Optional[str] = None
    creative_id: Optional[str] = None
    ad_id: Optional[str] = None
    image_hash: Optional[str] = None
    failed_step: Optional[CreationStep] = None
    error: Optional[str] = None

    def as_response(self) -> dict:
        def ref(object_id):
            return {"id": object_id} if object_id else None

        return {
            "success": self.success,
            "campaign": ref(self.campaign_id),
            "adSet": ref(self.ad_set_id),
            "creative": ref(self.creative_id),
            "ad": ref(self.ad_id),
            "error": self.error,
            "failedStep": self.failed_step.value if self.failed_step else None,
        }


class CampaignCreationService:
    """Executes full campaign creation in sequence via the Graph API."""

    def __init__(self, client: FacebookGraphClient):
        self.client = client

    async def create_complete_campaign(
        self,
        ad_account_id: str,
        config: CampaignCreateConfig,
    ) -> CampaignCreationResult:
        """
        Create the four-object tree. Not idempotent: two calls with the same
        config create two trees.
        """
        result = CampaignCreationResult()
        account = act_id(ad_account_id)
        logger.info(f"Creating complete campaign '{config.campaign_name}' in {account}")

        # 1. Campaign
        campaign_id = await self._create(
            result, CreationStep.CAMPAIGN,
            self.client.create_campaign, account, self.build_campaign_payload(config),
        )
        if not campaign_id:
            return result
        result.campaign_id = campaign_id

        # 2. Ad set
        ad_set_id = await self._create(
            result, CreationStep.AD_SET,
            self.client.create_ad_set, account, self.build_ad_set_payload(config, campaign_id),
        )
        if not ad_set_id:
            return result
        result.ad_set_id = ad_set_id

        # 3. Creative (image upload is best-effort; the link preview is used without it)
        if config.image_url:
            result.image_hash = await self._upload_image(account, config.image_url)
        creative_id = await self._create(
            result, CreationStep.CREATIVE,
            self.client.create_ad_creative, account, self.build_creative_payload(config, result.image_hash),
        )
        if not creative_id:
            return result
        result.creative_id = creative_id

        # 4. Ad
        ad_id = await self._create(
            result, CreationStep.AD,
            self.client.create_ad, account, self.build_ad_payload(config, ad_set_id, creative_id),
        )
        if not ad_id:
            return result
        result.ad_id = ad_id

        result.success = True
        logger.info(
            f"Complete campaign created: campaign={campaign_id} ad_set={ad_set_id} "
            f"creative={creative_id} ad={ad_id}"
        )
        return result

    async def _create(self, result: CampaignCreationResult, step: CreationStep, call, *args) -> Optional[str]:
        """Run one creation call; on failure record the step and message on ``result``."""
        label = STEP_LABELS[step]
        try:
            response = await call(*args)
        except GraphAPIError as e:
            logger.error(
                f"{label} creation failed: {e} (code={e.code}, subcode={e.subcode}, fbtrace_id={e.fbtrace_id}); "
                f"already created: campaign={result.campaign_id} ad_set={result.ad_set_id} creative={result.creative_id}"
            )
            result.failed_step = step
            result.error = f"{label} creation failed: {e}"
            return None

        object_id = _extract_id(response)
        if not object_id:
            logger.error(f"{label} creation returned no ID: keys={list(response or {})}")
            result.failed_step = step
            result.error = f"{label} creation failed: Facebook did not return an ID."
            return None
        logger.info(f"Created {step.value}: {object_id}")
        return object_id

    async def _upload_image(self, account: str, image_url: str) -> Optional[str]:
        try:
            image_hash = _extract_image_hash(await self.client.upload_image(account, image_url))
        except GraphAPIError as e:
            logger.warning(f"Image upload failed, continuing without image: {e}")
            return None
        if not image_hash:
            logger.warning("Image upload returned no hash, continuing without image")
        return image_hash

    # ── Payload builders ─────────────────────────────────────────────

    @staticmethod
    def build_campaign_payload(config: CampaignCreateConfig) -> dict:
        payload = {
            "name": config.campaign_name,
            "objective": config.objective.value,
            "status": CampaignStatus.PAUSED.value,
            "special_ad_categories": list(config.special_ad_categories),
        }
        if config.budget_level is BudgetLevel.CAMPAIGN:
            payload.update(budget_fields(config.budget, config.budget_type))
            payload["bid_strategy"] = DEFAULT_BID_STRATEGY
        return payload

    @staticmethod
    def build_ad_set_payload(config: CampaignCreateConfig, campaign_id: str) -> dict:
        payload = {
            "name": config.ad_set_name,
            "campaign_id": campaign_id,
            "optimization_goal": config.optimization_goal,
            "billing_event": config.billing_event,
            "targeting": config.targeting,
            "status": CampaignStatus.PAUSED.value,
        }
        if config.start_time:
            payload["start_time"] = config.start_time
        if config.end_time:
            payload["end_time"] = config.end_time
        if config.budget_level is BudgetLevel.AD_SET:
            payload.update(budget_fields(config.budget, config.budget_type))
            payload["bid_strategy"] = DEFAULT_BID_STRATEGY
        return payload

    @staticmethod
    def build_creative_payload(config: CampaignCreateConfig, image_hash: Optional[str] = None) -> dict:
        copy = config.ad_copy
        link_data = {
            "link": config.link_url,
            "message": copy.primary_text,
            "name": copy.headline,
            "call_to_action": {
                "type": copy.call_to_action,
                "value": {"link": config.link_url},
            },
        }
        if copy.description:
            link_data["description"] = copy.description
        if image_hash:
            link_data["image_hash"] = image_hash

        payload = {
            "name": config.creative_name,
            "object_story_spec": {
                "page_id": config.page_id,
                "link_data": link_data,
            },
        }
        if config.instagram_actor_id:
            payload["instagram_actor_id"] = config.instagram_actor_id
        return payload

    @staticmethod
    def build_ad_payload(config: CampaignCreateConfig, ad_set_id: str, creative_id: str) -> dict:
        return {
            "name": config.ad_name,
            "adset_id": ad_set_id,
            "creative": {"creative_id": creative_id},
            "status": CampaignStatus.PAUSED.value,
        }
