"""
Facebook Ads Orchestrator — Database Models
Local mirror of remote Facebook objects plus optimization rules and audit logs.
Remote state is authoritative; rows here are written only after Graph calls succeed.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from app.database import Base


def _utcnow() -> datetime:
    """Naive UTC now, matching DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class CampaignStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    FAILED = "FAILED"  # local only, never sent to Facebook
    DELETED = "DELETED"


class CampaignObjective(str, enum.Enum):
    AWARENESS = "OUTCOME_AWARENESS"
    TRAFFIC = "OUTCOME_TRAFFIC"
    ENGAGEMENT = "OUTCOME_ENGAGEMENT"
    LEADS = "OUTCOME_LEADS"
    APP_PROMOTION = "OUTCOME_APP_PROMOTION"
    SALES = "OUTCOME_SALES"


class BudgetType(str, enum.Enum):
    DAILY = "DAILY"
    LIFETIME = "LIFETIME"


class BudgetLevel(str, enum.Enum):
    CAMPAIGN = "CAMPAIGN"  # campaign budget optimization
    AD_SET = "AD_SET"


class CreationStep(str, enum.Enum):
    CAMPAIGN = "campaign"
    AD_SET = "ad_set"
    CREATIVE = "creative"
    AD = "ad"


class Metric(str, enum.Enum):
    IMPRESSIONS = "impressions"
    CLICKS = "clicks"
    SPEND = "spend"
    REACH = "reach"
    CONVERSIONS = "conversions"
    FREQUENCY = "frequency"
    CTR = "ctr"
    CPC = "cpc"
    CPM = "cpm"
    ROAS = "roas"


class ComparisonOperator(str, enum.Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"


class OptimizationActionType(str, enum.Enum):
    PAUSE = "pause"
    INCREASE_BUDGET = "increase_budget"
    DECREASE_BUDGET = "decrease_budget"
    CHANGE_BID = "change_bid"


class ActionOutcome(str, enum.Enum):
    EXECUTED = "executed"
    NOT_IMPLEMENTED = "not_implemented"


# ══════════════════════════════════════════════════════════════════════
#  FACEBOOK ACCOUNTS — One connected Facebook user per shop
# ══════════════════════════════════════════════════════════════════════

class FacebookAccount(Base):
    """Facebook user connection for a shop. Access token is Fernet-encrypted."""
    __tablename__ = "facebook_accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    facebook_user_id: Mapped[str] = mapped_column(String(255), nullable=True)
    facebook_user_name: Mapped[str] = mapped_column(String(512), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ad_accounts: Mapped[list["AdAccount"]] = relationship("AdAccount", back_populates="facebook_account", cascade="all, delete-orphan")
    campaigns: Mapped[list["Campaign"]] = relationship("Campaign", back_populates="facebook_account", passive_deletes=True)

    __table_args__ = (
        Index("ix_facebook_accounts_shop", "shop"),
        Index("ix_facebook_accounts_is_active", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AD ACCOUNTS — Billable act_{id} accounts discovered via Graph
# ══════════════════════════════════════════════════════════════════════

class AdAccount(Base):
    """Ad accounts available to a Facebook connection. Exactly one is default."""
    __tablename__ = "ad_accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    facebook_account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("facebook_accounts.id", ondelete="CASCADE"), nullable=False)
    ad_account_id: Mapped[str] = mapped_column(String(255), nullable=False)  # act_123...
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    account_status: Mapped[int] = mapped_column(Integer, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_data: Mapped[dict] = mapped_column(JSON, nullable=True)
    discovered_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    facebook_account: Mapped["FacebookAccount"] = relationship("FacebookAccount", back_populates="ad_accounts")

    __table_args__ = (
        UniqueConstraint("facebook_account_id", "ad_account_id", name="uq_ad_account_per_connection"),
        Index("ix_ad_accounts_is_default", "is_default"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS — Local record of one Campaign -> AdSet -> Creative -> Ad tree
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    """
    A campaign created (or synced) by this app. ``facebook_campaign_id`` stays
    NULL until the whole remote chain has been created; a failed chain leaves
    status FAILED with ``failed_step`` / ``error_message`` for operators.
    """
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    facebook_account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("facebook_accounts.id", ondelete="SET NULL"), nullable=True)
    ad_account_id: Mapped[str] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    objective: Mapped[str] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=CampaignStatus.PAUSED.value)
    budget: Mapped[float] = mapped_column(Float, nullable=True)
    budget_type: Mapped[str] = mapped_column(String(20), default=BudgetType.DAILY.value)
    budget_level: Mapped[str] = mapped_column(String(20), default=BudgetLevel.CAMPAIGN.value)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    facebook_campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    facebook_ad_set_id: Mapped[str] = mapped_column(String(255), nullable=True)
    facebook_creative_id: Mapped[str] = mapped_column(String(255), nullable=True)
    facebook_ad_id: Mapped[str] = mapped_column(String(255), nullable=True)
    targeting: Mapped[dict] = mapped_column(JSON, nullable=True)
    ad_copy: Mapped[dict] = mapped_column(JSON, nullable=True)
    failed_step: Mapped[str] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    facebook_account: Mapped["FacebookAccount"] = relationship("FacebookAccount", back_populates="campaigns")

    __table_args__ = (
        UniqueConstraint("shop", "facebook_campaign_id", name="uq_campaign_per_shop"),
        Index("ix_campaigns_shop", "shop"),
        Index("ix_campaigns_status", "status"),
        Index("ix_campaigns_facebook_campaign_id", "facebook_campaign_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  OPTIMIZATION RULES — Per-shop rule set, seeded from the defaults
# ══════════════════════════════════════════════════════════════════════

class OptimizationRuleRecord(Base):
    """Stored optimization rule: condition (metric/operator/threshold/lookback) + action."""
    __tablename__ = "optimization_rules"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_key: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    metric: Mapped[str] = mapped_column(String(30), nullable=False)
    operator: Mapped[str] = mapped_column(String(10), nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    lookback_hours: Mapped[int] = mapped_column(Integer, default=24)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    percentage: Mapped[float] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("shop", "rule_key", name="uq_rule_key_per_shop"),
        Index("ix_optimization_rules_shop", "shop"),
        Index("ix_optimization_rules_is_active", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  OPTIMIZATION LOG — One row per triggered rule
# ══════════════════════════════════════════════════════════════════════

class OptimizationLog(Base):
    """Audit record of a rule firing: the metric that triggered it and the full snapshot."""
    __tablename__ = "optimization_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)  # Facebook campaign id
    rule_id: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    outcome: Mapped[str] = mapped_column(String(30), default=ActionOutcome.EXECUTED.value)
    trigger_metric: Mapped[str] = mapped_column(String(30), nullable=False)
    trigger_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_value: Mapped[float] = mapped_column(Float, nullable=False)
    previous_budget: Mapped[float] = mapped_column(Float, nullable=True)
    new_budget: Mapped[float] = mapped_column(Float, nullable=True)
    performance_data: Mapped[dict] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_optimization_logs_shop", "shop"),
        Index("ix_optimization_logs_campaign_id", "campaign_id"),
        Index("ix_optimization_logs_created_at", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SHOP ORDERS — Recent storefront orders (input for average order value)
# ══════════════════════════════════════════════════════════════════════

class ShopOrder(Base):
    """Storefront order totals, written by the order sync. Read here for AOV only."""
    __tablename__ = "shop_orders"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    total_price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("shop", "order_id", name="uq_order_per_shop"),
        Index("ix_shop_orders_shop_created", "shop", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOG — Comprehensive action logging
# ══════════════════════════════════════════════════════════════════════

class ActivityLog(Base):
    """Logs all actions taken in the system for audit trail."""
    __tablename__ = "activity_log"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # accounts, campaigns, optimizer, webhooks
    description: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="success")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_activity_log_shop", "shop"),
        Index("ix_activity_log_category", "category"),
        Index("ix_activity_log_created_at", "created_at"),
        Index("ix_activity_log_entity", "entity_type", "entity_id"),
    )
