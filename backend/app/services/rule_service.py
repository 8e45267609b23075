"""
Rule Service — Per-shop optimization rules and the optimization log.
A shop's rules are seeded from DEFAULT_RULES the first time the rule endpoints
read them; after that the stored rows are the source of truth. The optimizer
itself never writes rules.
"""

import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.models import (
    ComparisonOperator, Metric, OptimizationActionType,
    OptimizationLog, OptimizationRuleRecord,
)
from app.schemas import OptimizationRuleCreate, OptimizationRuleUpdate
from app.services.optimizer_service import DEFAULT_RULES, OptimizationRule, RuleAction, RuleCondition
from app.utils import utcnow

logger = logging.getLogger(__name__)

BUDGET_ACTIONS = (OptimizationActionType.INCREASE_BUDGET, OptimizationActionType.DECREASE_BUDGET)


class RuleConflictError(Exception):
    pass


def rule_from_record(record: OptimizationRuleRecord) -> OptimizationRule:
    return OptimizationRule(
        id=record.rule_key,
        name=record.name,
        condition=RuleCondition(
            metric=Metric(record.metric),
            operator=ComparisonOperator(record.operator),
            threshold=record.threshold,
            lookback_hours=record.lookback_hours,
        ),
        action=RuleAction(
            type=OptimizationActionType(record.action_type),
            percentage=record.percentage,
        ),
        is_active=record.is_active,
    )


def record_from_rule(shop: str, rule: OptimizationRule) -> OptimizationRuleRecord:
    return OptimizationRuleRecord(
        shop=shop,
        rule_key=rule.id,
        name=rule.name,
        metric=rule.condition.metric.value,
        operator=rule.condition.operator.value,
        threshold=rule.condition.threshold,
        lookback_hours=rule.condition.lookback_hours,
        action_type=rule.action.type.value,
        percentage=rule.action.percentage,
        is_active=rule.is_active,
    )


def rule_to_dict(record: OptimizationRuleRecord) -> dict:
    return {
        "id": str(record.id),
        "rule_key": record.rule_key,
        "name": record.name,
        "metric": record.metric,
        "operator": record.operator,
        "threshold": record.threshold,
        "lookback_hours": record.lookback_hours,
        "action_type": record.action_type,
        "percentage": record.percentage,
        "is_active": record.is_active,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


def log_to_dict(log: OptimizationLog) -> dict:
    return {
        "id": str(log.id),
        "campaign_id": log.campaign_id,
        "rule_id": log.rule_id,
        "rule_name": log.rule_name,
        "action_type": log.action_type,
        "outcome": log.outcome,
        "trigger_metric": log.trigger_metric,
        "trigger_value": log.trigger_value,
        "threshold_value": log.threshold_value,
        "previous_budget": log.previous_budget,
        "new_budget": log.new_budget,
        "performance_data": log.performance_data,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


async def _stored_rules(db: AsyncSession, shop: str) -> list[OptimizationRuleRecord]:
    result = await db.execute(
        select(OptimizationRuleRecord)
        .where(OptimizationRuleRecord.shop == shop)
        .order_by(OptimizationRuleRecord.created_at)
    )
    return list(result.scalars().all())


async def list_rule_records(db: AsyncSession, shop: str) -> list[OptimizationRuleRecord]:
    """All rules for the shop, seeding the defaults on first read."""
    records = await _stored_rules(db, shop)
    if records:
        return records

    records = [record_from_rule(shop, rule) for rule in DEFAULT_RULES]
    db.add_all(records)
    await db.flush()
    logger.info(f"Seeded {len(records)} default optimization rules for {shop}")
    return records


async def load_rules(db: AsyncSession, shop: str) -> list[OptimizationRule]:
    """Rules for the optimizer. Read-only: a shop without stored rows gets DEFAULT_RULES."""
    records = await _stored_rules(db, shop)
    if not records:
        return list(DEFAULT_RULES)
    return [rule_from_record(record) for record in records]


def _validate_action(action_type: OptimizationActionType, percentage: Optional[float]) -> None:
    if action_type in BUDGET_ACTIONS and percentage is None:
        raise ValueError(f"{action_type.value} requires a percentage")


async def create_rule(db: AsyncSession, shop: str, payload: OptimizationRuleCreate) -> OptimizationRuleRecord:
    metric = Metric(payload.metric)
    operator = ComparisonOperator(payload.operator)
    action_type = OptimizationActionType(payload.action_type)
    _validate_action(action_type, payload.percentage)

    # Make sure defaults exist first so a custom rule doesn't suppress seeding
    existing = await list_rule_records(db, shop)
    if any(record.rule_key == payload.rule_key for record in existing):
        raise RuleConflictError(f"Rule '{payload.rule_key}' already exists")

    record = OptimizationRuleRecord(
        shop=shop,
        rule_key=payload.rule_key,
        name=payload.name,
        metric=metric.value,
        operator=operator.value,
        threshold=payload.threshold,
        lookback_hours=payload.lookback_hours,
        action_type=action_type.value,
        percentage=payload.percentage,
        is_active=payload.is_active,
    )
    db.add(record)
    await db.flush()
    logger.info(f"Created optimization rule {payload.rule_key} for {shop}")
    return record


async def get_rule_record(db: AsyncSession, shop: str, rule_key: str) -> Optional[OptimizationRuleRecord]:
    await list_rule_records(db, shop)
    result = await db.execute(
        select(OptimizationRuleRecord).where(
            OptimizationRuleRecord.shop == shop,
            OptimizationRuleRecord.rule_key == rule_key,
        )
    )
    return result.scalar_one_or_none()


async def update_rule(
    db: AsyncSession,
    record: OptimizationRuleRecord,
    payload: OptimizationRuleUpdate,
) -> OptimizationRuleRecord:
    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is not None or field == "percentage":
            setattr(record, field, value)
    _validate_action(OptimizationActionType(record.action_type), record.percentage)
    record.updated_at = utcnow()
    await db.flush()
    logger.info(f"Updated optimization rule {record.rule_key} for {record.shop}: {sorted(changes)}")
    return record


async def delete_rule(db: AsyncSession, record: OptimizationRuleRecord) -> None:
    await db.delete(record)
    await db.flush()
    logger.info(f"Deleted optimization rule {record.rule_key} for {record.shop}")


async def list_optimization_logs(
    db: AsyncSession,
    shop: str,
    campaign_id: Optional[str] = None,
    limit: int = 100,
) -> list[OptimizationLog]:
    query = select(OptimizationLog).where(OptimizationLog.shop == shop)
    if campaign_id:
        query = query.where(OptimizationLog.campaign_id == campaign_id)
    query = query.order_by(OptimizationLog.created_at.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
