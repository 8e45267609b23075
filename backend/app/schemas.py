"""
Request models shared by routers and services.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models import BudgetLevel, BudgetType, CampaignObjective


class AdCopy(BaseModel):
    primary_text: str = Field(min_length=1)
    headline: str = Field(min_length=1)
    description: Optional[str] = None
    call_to_action: str = "LEARN_MORE"


class CampaignCreateConfig(BaseModel):
    """
    Everything needed to build Campaign -> AdSet -> Creative -> Ad.
    There is deliberately no status field: unknown keys (including any
    caller-supplied "status") are dropped and everything is created PAUSED.
    """
    model_config = ConfigDict(extra="ignore")

    # Campaign level
    campaign_name: str = Field(min_length=1, max_length=400)
    objective: CampaignObjective
    special_ad_categories: list[str] = Field(default_factory=list)
    budget: float = Field(gt=0)
    budget_type: BudgetType = BudgetType.DAILY
    budget_level: BudgetLevel = BudgetLevel.CAMPAIGN

    # Ad set level
    ad_set_name: str = Field(min_length=1)
    optimization_goal: str = "LINK_CLICKS"
    billing_event: str = "IMPRESSIONS"
    targeting: dict[str, Any] = Field(default_factory=lambda: {"geo_locations": {"countries": ["US"]}})
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    # Creative level
    creative_name: str = Field(min_length=1)
    ad_copy: AdCopy
    link_url: str = Field(min_length=1)
    page_id: str = Field(min_length=1)
    image_url: Optional[str] = None
    instagram_actor_id: Optional[str] = None

    # Ad level
    ad_name: str = Field(min_length=1)

    @model_validator(mode="after")
    def _lifetime_budget_needs_end_time(self) -> "CampaignCreateConfig":
        if self.budget_type is BudgetType.LIFETIME and not self.end_time:
            raise ValueError("end_time is required for a LIFETIME budget")
        return self


class CampaignCreateRequest(CampaignCreateConfig):
    ad_account_id: Optional[str] = None  # defaults to the shop's default ad account


class StatusChangeRequest(BaseModel):
    status: str


class OptimizationRuleCreate(BaseModel):
    rule_key: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9_]+$")
    name: str = Field(min_length=1)
    metric: str
    operator: str
    threshold: float
    lookback_hours: int = Field(24, gt=0, le=24 * 90)
    action_type: str
    percentage: Optional[float] = Field(None, gt=0, lt=100)
    is_active: bool = True


class OptimizationRuleUpdate(BaseModel):
    name: Optional[str] = None
    threshold: Optional[float] = None
    lookback_hours: Optional[int] = Field(None, gt=0, le=24 * 90)
    percentage: Optional[float] = Field(None, gt=0, lt=100)
    is_active: Optional[bool] = None


class ConnectAccountRequest(BaseModel):
    access_token: str = Field(min_length=1)
    exchange_for_long_lived: bool = True
