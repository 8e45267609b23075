"""
Optimizer Service — Rule-based campaign optimization engine.
Evaluates each active campaign's recent performance against the shop's rules
and pauses campaigns or resizes budgets when a rule fires.

Facebook is changed first; the local record is mirrored only after the
Graph call succeeds. Every fired rule is written to the optimization log.
"""

import logging
import operator
from dataclasses import dataclass
from typing import Optional, Sequence

from app.graph_client import FacebookGraphClient
from app.models import (
    ActionOutcome, BudgetLevel, BudgetType, CampaignStatus, ComparisonOperator,
    Metric, OptimizationActionType,
)
from app.services.insights_service import DateRange, InsightsService, PerformanceSnapshot
from app.utils import round_half_up

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_PERCENTAGE = 20.0
MIN_BUDGET = 1.0


class OptimizationError(Exception):
    """An optimization action could not be carried out."""
    pass


@dataclass(frozen=True)
class RuleCondition:
    metric: Metric
    operator: ComparisonOperator
    threshold: float
    lookback_hours: int = 24


@dataclass(frozen=True)
class RuleAction:
    type: OptimizationActionType
    percentage: Optional[float] = None


@dataclass(frozen=True)
class OptimizationRule:
    id: str
    name: str
    condition: RuleCondition
    action: RuleAction
    is_active: bool = True


DEFAULT_RULES: tuple[OptimizationRule, ...] = (
    OptimizationRule(
        id="high_cpc_pause",
        name="Pause High CPC Campaigns",
        condition=RuleCondition(Metric.CPC, ComparisonOperator.GT, 5.0, 24),
        action=RuleAction(OptimizationActionType.PAUSE),
    ),
    OptimizationRule(
        id="low_ctr_pause",
        name="Pause Low CTR Campaigns",
        condition=RuleCondition(Metric.CTR, ComparisonOperator.LT, 0.5, 48),
        action=RuleAction(OptimizationActionType.PAUSE),
    ),
    OptimizationRule(
        id="high_roas_increase_budget",
        name="Increase Budget for High ROAS",
        condition=RuleCondition(Metric.ROAS, ComparisonOperator.GT, 4.0, 24),
        action=RuleAction(OptimizationActionType.INCREASE_BUDGET, 20.0),
    ),
    OptimizationRule(
        id="low_roas_decrease_budget",
        name="Decrease Budget for Low ROAS",
        condition=RuleCondition(Metric.ROAS, ComparisonOperator.LT, 1.5, 48),
        action=RuleAction(OptimizationActionType.DECREASE_BUDGET, 30.0),
    ),
    OptimizationRule(
        id="high_frequency_pause",
        name="Pause High Frequency Campaigns",
        condition=RuleCondition(Metric.FREQUENCY, ComparisonOperator.GT, 3.0, 72),
        action=RuleAction(OptimizationActionType.PAUSE),
    ),
)

_COMPARATORS = {
    ComparisonOperator.GT: operator.gt,
    ComparisonOperator.LT: operator.lt,
    ComparisonOperator.EQ: operator.eq,
    ComparisonOperator.GTE: operator.ge,
    ComparisonOperator.LTE: operator.le,
}

OPERATOR_SYMBOLS = {
    ComparisonOperator.GT: ">",
    ComparisonOperator.LT: "<",
    ComparisonOperator.EQ: "==",
    ComparisonOperator.GTE: ">=",
    ComparisonOperator.LTE: "<=",
}


def check_optimization_rule(rule: OptimizationRule, snapshot: PerformanceSnapshot) -> bool:
    """True when ``metric <operator> threshold`` holds. Pure."""
    condition = rule.condition
    return _COMPARATORS[condition.operator](snapshot.value(condition.metric), condition.threshold)


def recommendation_reason(rule: OptimizationRule, snapshot: PerformanceSnapshot) -> str:
    condition = rule.condition
    value = snapshot.value(condition.metric)
    direction = "above" if condition.operator in (ComparisonOperator.GT, ComparisonOperator.GTE) else "below"
    if condition.metric is Metric.CPC:
        return f"Cost per click ({value:.2f}) is {direction} threshold ({condition.threshold})"
    if condition.metric is Metric.CTR:
        return f"Click-through rate ({value:.2f}%) is {direction} threshold ({condition.threshold}%)"
    if condition.metric is Metric.ROAS:
        return f"Return on ad spend ({value:.2f}) is {direction} threshold ({condition.threshold})"
    if condition.metric is Metric.FREQUENCY:
        return f"Ad frequency ({value:.2f}) is {direction} threshold ({condition.threshold})"
    return f"{condition.metric.value} ({value:.2f}) {OPERATOR_SYMBOLS[condition.operator]} {condition.threshold}"


def recommendation_impact(snapshot: PerformanceSnapshot) -> str:
    """Impact scales with money at stake."""
    if snapshot.spend > 100:
        return "high"
    if snapshot.spend > 50:
        return "medium"
    return "low"


class CampaignOptimizationService:
    """
    Runs the rule set for one shop.

    ``store`` is the shop-scoped persistence collaborator
    (``SqlCampaignStore`` in production) providing ``list_active_campaigns``,
    ``get_campaign``, ``mirror_status``, ``mirror_budget``,
    ``record_optimization`` and ``load_rules``.
    """

    def __init__(
        self,
        client: FacebookGraphClient,
        insights: InsightsService,
        store,
        rules: Optional[Sequence[OptimizationRule]] = None,
    ):
        self.client = client
        self.insights = insights
        self.store = store
        self._rules = list(rules) if rules is not None else None

    async def get_rules(self) -> list[OptimizationRule]:
        if self._rules is None:
            self._rules = await self.store.load_rules()
        return self._rules

    async def active_rules(self) -> list[OptimizationRule]:
        return [rule for rule in await self.get_rules() if rule.is_active]

    # ── Evaluation ───────────────────────────────────────────────────

    async def collect_snapshots(
        self, campaign_id: str, rules: Sequence[OptimizationRule]
    ) -> dict[int, Optional[PerformanceSnapshot]]:
        """One snapshot per distinct lookback window used by ``rules``."""
        snapshots = {}
        for hours in sorted({rule.condition.lookback_hours for rule in rules}):
            snapshots[hours] = await self.insights.get_performance_snapshot(
                campaign_id, DateRange.for_lookback(hours)
            )
        return snapshots

    @staticmethod
    def triggered_rules(
        rules: Sequence[OptimizationRule],
        snapshots: dict[int, Optional[PerformanceSnapshot]],
    ) -> list[tuple[OptimizationRule, PerformanceSnapshot]]:
        fired = []
        for rule in rules:
            snapshot = snapshots.get(rule.condition.lookback_hours)
            if snapshot is not None and check_optimization_rule(rule, snapshot):
                fired.append((rule, snapshot))
        return fired

    async def evaluate_campaign(
        self,
        campaign,
        rules: Optional[Sequence[OptimizationRule]] = None,
        actions: Optional[list] = None,
    ) -> list[dict]:
        """
        Evaluate and act on one campaign. Executed actions are appended to
        ``actions`` as they happen, so a failure part-way still leaves the
        earlier ones visible to the caller.
        """
        if rules is None:
            rules = await self.active_rules()
        if actions is None:
            actions = []
        campaign_id = campaign.facebook_campaign_id

        snapshots = await self.collect_snapshots(campaign_id, rules)
        if all(snapshot is None for snapshot in snapshots.values()):
            logger.info(f"No performance data for campaign {campaign_id}")
            return actions

        for rule, snapshot in self.triggered_rules(rules, snapshots):
            logger.info(f"Optimization rule triggered: {rule.name} for campaign {campaign_id}")
            outcome = await self.execute_action(rule, campaign, snapshot)
            if outcome is ActionOutcome.EXECUTED:
                actions.append({
                    "campaignId": campaign_id,
                    "ruleId": rule.id,
                    "ruleName": rule.name,
                    "actionType": rule.action.type.value,
                })
        return actions

    # ── Actions ──────────────────────────────────────────────────────

    async def execute_action(
        self,
        rule: OptimizationRule,
        campaign,
        snapshot: PerformanceSnapshot,
    ) -> ActionOutcome:
        action = rule.action.type
        campaign_id = campaign.facebook_campaign_id
        previous_budget = new_budget = None

        if action is OptimizationActionType.PAUSE:
            await self.pause_campaign(campaign_id)
        elif action in (OptimizationActionType.INCREASE_BUDGET, OptimizationActionType.DECREASE_BUDGET):
            previous_budget, new_budget = await self.adjust_budget(campaign_id, rule.action)
        elif action is OptimizationActionType.CHANGE_BID:
            logger.warning(
                f"Rule '{rule.name}' requested change_bid for campaign {campaign_id}; "
                f"bid changes are not implemented, nothing was changed"
            )
            await self._record(rule, campaign_id, snapshot, ActionOutcome.NOT_IMPLEMENTED)
            return ActionOutcome.NOT_IMPLEMENTED
        else:
            raise OptimizationError(f"Unknown optimization action: {action}")

        await self._record(rule, campaign_id, snapshot, ActionOutcome.EXECUTED, previous_budget, new_budget)
        return ActionOutcome.EXECUTED

    async def pause_campaign(self, campaign_id: str) -> None:
        await self.client.update_status(campaign_id, CampaignStatus.PAUSED)
        await self.store.mirror_status(campaign_id, CampaignStatus.PAUSED)
        logger.info(f"Paused campaign {campaign_id}")

    async def adjust_budget(self, campaign_id: str, action: RuleAction) -> tuple[float, float]:
        """Resize the budget by ``action.percentage``; returns (previous, new)."""
        record = await self.store.get_campaign(campaign_id)
        if record is None or not record.budget:
            raise OptimizationError(f"Campaign {campaign_id} has no budget to adjust")

        percentage = action.percentage if action.percentage is not None else DEFAULT_BUDGET_PERCENTAGE
        if action.type is OptimizationActionType.INCREASE_BUDGET:
            factor = 1 + percentage / 100
        else:
            factor = 1 - percentage / 100
        current = float(record.budget)
        new_budget = max(round_half_up(current * factor), MIN_BUDGET)

        # The budget lives on the campaign (CBO) or on its ad set
        target_id = campaign_id
        if record.budget_level == BudgetLevel.AD_SET.value:
            if not record.facebook_ad_set_id:
                raise OptimizationError(f"Campaign {campaign_id} has an ad set budget but no ad set id")
            target_id = record.facebook_ad_set_id

        await self.client.update_budget(target_id, new_budget, BudgetType(record.budget_type))
        await self.store.mirror_budget(campaign_id, new_budget)
        logger.info(f"Budget for campaign {campaign_id}: {current} -> {new_budget}")
        return current, new_budget

    async def _record(
        self,
        rule: OptimizationRule,
        campaign_id: str,
        snapshot: PerformanceSnapshot,
        outcome: ActionOutcome,
        previous_budget: Optional[float] = None,
        new_budget: Optional[float] = None,
    ) -> None:
        await self.store.record_optimization({
            "campaign_id": campaign_id,
            "rule_id": rule.id,
            "rule_name": rule.name,
            "action_type": rule.action.type.value,
            "outcome": outcome.value,
            "trigger_metric": rule.condition.metric.value,
            "trigger_value": snapshot.value(rule.condition.metric),
            "threshold_value": rule.condition.threshold,
            "previous_budget": previous_budget,
            "new_budget": new_budget,
            "performance_data": snapshot.as_dict(),
        })

    # ── Batch / review ───────────────────────────────────────────────

    async def run_optimization(self) -> dict:
        """
        Evaluate every active campaign in turn. A campaign that throws is
        counted in ``errors`` and the batch moves on.
        """
        results = {"processed": 0, "optimized": 0, "errors": 0, "actions": []}
        campaigns = await self.store.list_active_campaigns()
        rules = await self.active_rules()
        logger.info(f"Starting optimization: {len(campaigns)} active campaigns, {len(rules)} active rules")

        for campaign in campaigns:
            results["processed"] += 1
            try:
                await self.evaluate_campaign(campaign, rules, results["actions"])
            except Exception as e:
                logger.error(f"Error processing campaign {campaign.facebook_campaign_id}: {e}", exc_info=True)
                results["errors"] += 1

        results["optimized"] = len(results["actions"])
        logger.info(
            f"Optimization completed: processed={results['processed']} "
            f"optimized={results['optimized']} errors={results['errors']}"
        )
        return results

    async def get_optimization_recommendations(self) -> list[dict]:
        """Which rules would fire, and why, without changing anything."""
        recommendations = []
        campaigns = await self.store.list_active_campaigns()
        rules = await self.active_rules()

        for campaign in campaigns:
            campaign_id = campaign.facebook_campaign_id
            try:
                snapshots = await self.collect_snapshots(campaign_id, rules)
            except Exception as e:
                logger.error(f"Could not evaluate campaign {campaign_id} for recommendations: {e}")
                continue

            items = [
                {
                    "ruleId": rule.id,
                    "rule": rule.name,
                    "action": rule.action.type.value,
                    "metric": rule.condition.metric.value,
                    "value": snapshot.value(rule.condition.metric),
                    "threshold": rule.condition.threshold,
                    "reason": recommendation_reason(rule, snapshot),
                    "impact": recommendation_impact(snapshot),
                }
                for rule, snapshot in self.triggered_rules(rules, snapshots)
            ]
            if items:
                recommendations.append({
                    "campaignId": campaign_id,
                    "campaignName": campaign.name,
                    "recommendations": items,
                })
        return recommendations
