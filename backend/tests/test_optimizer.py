"""
Tests for the rule-based optimization engine.
"""

import pytest
from unittest.mock import AsyncMock

from app.graph_client import GraphAPIError
from app.models import (
    ActionOutcome, BudgetType, CampaignStatus, ComparisonOperator, Metric, OptimizationActionType,
)
from app.services.insights_service import PerformanceSnapshot
from app.services.optimizer_service import (
    DEFAULT_RULES, CampaignOptimizationService, OptimizationRule, RuleAction, RuleCondition,
    check_optimization_rule, recommendation_impact,
)
from conftest import FakeCampaignStore, make_campaign


@pytest.fixture
def anyio_backend():
    return "asyncio"


def rule(rule_id, metric, operator, threshold, action, percentage=None, lookback=24, active=True):
    return OptimizationRule(
        id=rule_id,
        name=rule_id.replace("_", " ").title(),
        condition=RuleCondition(Metric(metric), ComparisonOperator(operator), threshold, lookback),
        action=RuleAction(OptimizationActionType(action), percentage),
        is_active=active,
    )


def snapshot(entity_id="cmp-1", **metrics):
    return PerformanceSnapshot(entity_id=entity_id, **metrics)


def build_service(store, snapshots, rules=None):
    """
    ``snapshots`` maps campaign id -> PerformanceSnapshot, None (no data) or
    an exception to raise from the insights fetch.
    """
    client = AsyncMock()
    insights = AsyncMock()

    async def fetch(campaign_id, window):
        value = snapshots.get(campaign_id)
        if isinstance(value, Exception):
            raise value
        return value

    insights.get_performance_snapshot.side_effect = fetch
    service = CampaignOptimizationService(client, insights, store, rules=rules)
    return service, client, insights


# ── Rule checks ───────────────────────────────────────────────────────

@pytest.mark.parametrize("operator, value, expected", [
    ("gt", 6.0, True), ("gt", 5.0, False),
    ("gte", 5.0, True), ("lt", 4.9, True),
    ("lte", 5.0, True), ("eq", 5.0, True), ("eq", 5.1, False),
])
def test_check_rule_operators(operator, value, expected):
    r = rule("cpc_rule", "cpc", operator, 5.0, "pause")
    assert check_optimization_rule(r, snapshot(cpc=value)) is expected


def test_default_rules():
    by_id = {r.id: r for r in DEFAULT_RULES}
    assert set(by_id) == {
        "high_cpc_pause", "low_ctr_pause", "high_roas_increase_budget",
        "low_roas_decrease_budget", "high_frequency_pause",
    }
    assert by_id["high_roas_increase_budget"].action.percentage == 20
    assert by_id["low_roas_decrease_budget"].action.percentage == 30
    assert by_id["high_frequency_pause"].condition.lookback_hours == 72


def test_recommendation_impact_thresholds():
    assert recommendation_impact(snapshot(spend=150)) == "high"
    assert recommendation_impact(snapshot(spend=75)) == "medium"
    assert recommendation_impact(snapshot(spend=50)) == "low"


# ── Actions ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_high_cpc_pauses_campaign_remote_then_local():
    store = FakeCampaignStore([make_campaign("cmp-1")])
    rules = [rule("high_cpc_pause", "cpc", "gt", 5.0, "pause")]
    service, client, _ = build_service(store, {"cmp-1": snapshot(cpc=6.0, spend=60)}, rules)

    results = await service.run_optimization()

    client.update_status.assert_awaited_once_with("cmp-1", CampaignStatus.PAUSED)
    assert store.status_changes == [("cmp-1", "PAUSED")]
    assert results["actions"] == [{
        "campaignId": "cmp-1", "ruleId": "high_cpc_pause",
        "ruleName": "High Cpc Pause", "actionType": "pause",
    }]
    assert results["optimized"] == 1
    log = store.logs[0]
    assert log["trigger_metric"] == "cpc"
    assert log["trigger_value"] == 6.0
    assert log["threshold_value"] == 5.0
    assert log["outcome"] == ActionOutcome.EXECUTED.value
    assert log["performance_data"]["cpc"] == 6.0


@pytest.mark.anyio
async def test_high_roas_increases_budget_by_twenty_percent():
    store = FakeCampaignStore([make_campaign("cmp-1", budget=100.0)])
    rules = [rule("high_roas_increase_budget", "roas", "gt", 4.0, "increase_budget", percentage=20)]
    service, client, _ = build_service(store, {"cmp-1": snapshot(roas=5.0, spend=20)}, rules)

    await service.run_optimization()

    client.update_budget.assert_awaited_once_with("cmp-1", 120.0, BudgetType.DAILY)
    assert store.budget_changes == [("cmp-1", 120.0)]
    assert store.logs[0]["previous_budget"] == 100.0
    assert store.logs[0]["new_budget"] == 120.0


@pytest.mark.anyio
async def test_low_roas_decrease_rounds_to_whole_units():
    store = FakeCampaignStore([make_campaign("cmp-1", budget=25.0)])
    rules = [rule("low_roas_decrease_budget", "roas", "lt", 1.5, "decrease_budget", percentage=30, lookback=48)]
    service, client, _ = build_service(store, {"cmp-1": snapshot(roas=0.5)}, rules)

    await service.run_optimization()

    # 25 * 0.7 = 17.5 -> 18
    client.update_budget.assert_awaited_once_with("cmp-1", 18.0, BudgetType.DAILY)


@pytest.mark.anyio
async def test_ad_set_budget_is_pushed_to_the_ad_set():
    campaign = make_campaign("cmp-1", budget=50.0, budget_level="AD_SET", facebook_ad_set_id="adset-9")
    store = FakeCampaignStore([campaign])
    rules = [rule("scale", "roas", "gt", 4.0, "increase_budget", percentage=10)]
    service, client, _ = build_service(store, {"cmp-1": snapshot(roas=6.0)}, rules)

    await service.run_optimization()

    client.update_budget.assert_awaited_once_with("adset-9", 55.0, BudgetType.DAILY)
    assert store.budget_changes == [("cmp-1", 55.0)]


@pytest.mark.anyio
async def test_remote_failure_leaves_local_budget_unchanged():
    store = FakeCampaignStore([make_campaign("cmp-1", budget=100.0)])
    rules = [rule("scale", "roas", "gt", 4.0, "increase_budget", percentage=20)]
    service, client, _ = build_service(store, {"cmp-1": snapshot(roas=5.0)}, rules)
    client.update_budget.side_effect = GraphAPIError("Facebook API rate limit exceeded.", code=4)

    results = await service.run_optimization()

    assert results["errors"] == 1
    assert results["optimized"] == 0
    assert store.budget_changes == []
    assert store.campaigns["cmp-1"].budget == 100.0
    assert store.logs == []


@pytest.mark.anyio
async def test_change_bid_is_logged_but_not_executed():
    store = FakeCampaignStore([make_campaign("cmp-1")])
    rules = [rule("bid_down", "cpc", "gt", 2.0, "change_bid", percentage=10)]
    service, client, _ = build_service(store, {"cmp-1": snapshot(cpc=3.0)}, rules)

    results = await service.run_optimization()

    assert results["optimized"] == 0
    assert results["actions"] == []
    assert client.update_status.await_count == 0
    assert client.update_budget.await_count == 0
    assert store.logs[0]["outcome"] == ActionOutcome.NOT_IMPLEMENTED.value


@pytest.mark.anyio
async def test_no_data_means_no_action():
    store = FakeCampaignStore([make_campaign("cmp-1")])
    rules = [rule("low_ctr_pause", "ctr", "lt", 0.5, "pause")]
    service, client, _ = build_service(store, {"cmp-1": None}, rules)

    results = await service.run_optimization()

    assert results == {"processed": 1, "optimized": 0, "errors": 0, "actions": []}
    client.update_status.assert_not_awaited()


@pytest.mark.anyio
async def test_one_snapshot_per_distinct_lookback():
    store = FakeCampaignStore([make_campaign("cmp-1")])
    rules = [
        rule("a", "cpc", "gt", 100, "pause", lookback=24),
        rule("b", "ctr", "lt", 0.0, "pause", lookback=24),
        rule("c", "frequency", "gt", 100, "pause", lookback=72),
    ]
    service, _, insights = build_service(store, {"cmp-1": snapshot()}, rules)

    await service.run_optimization()

    assert insights.get_performance_snapshot.await_count == 2


@pytest.mark.anyio
async def test_inactive_rules_are_skipped():
    store = FakeCampaignStore([make_campaign("cmp-1")])
    rules = [rule("high_cpc_pause", "cpc", "gt", 5.0, "pause", active=False)]
    service, client, insights = build_service(store, {"cmp-1": snapshot(cpc=9.0)}, rules)

    results = await service.run_optimization()

    assert results["optimized"] == 0
    client.update_status.assert_not_awaited()


# ── Batch ─────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_batch_continues_past_a_failing_campaign():
    store = FakeCampaignStore([make_campaign("cmp-1"), make_campaign("cmp-2"), make_campaign("cmp-3")])
    rules = [rule("high_cpc_pause", "cpc", "gt", 5.0, "pause")]
    snapshots = {
        "cmp-1": snapshot("cmp-1", cpc=6.0),
        "cmp-2": GraphAPIError("Facebook API is temporarily unavailable. Please try again later.", code=2),
        "cmp-3": snapshot("cmp-3", cpc=7.0),
    }
    service, client, _ = build_service(store, snapshots, rules)

    results = await service.run_optimization()

    assert results["processed"] == 3
    assert results["errors"] == 1
    assert results["optimized"] == 2
    assert [a["campaignId"] for a in results["actions"]] == ["cmp-1", "cmp-3"]


@pytest.mark.anyio
async def test_actions_before_a_failure_are_kept():
    store = FakeCampaignStore([make_campaign("cmp-1", budget=None)])
    rules = [
        rule("high_cpc_pause", "cpc", "gt", 5.0, "pause"),
        rule("scale", "roas", "gt", 4.0, "increase_budget", percentage=20),
    ]
    service, _, _ = build_service(store, {"cmp-1": snapshot(cpc=6.0, roas=5.0)}, rules)

    results = await service.run_optimization()

    assert results["errors"] == 1
    assert [a["actionType"] for a in results["actions"]] == ["pause"]


@pytest.mark.anyio
async def test_rules_loaded_from_store_when_not_given():
    store = FakeCampaignStore([make_campaign("cmp-1")], rules=[rule("high_cpc_pause", "cpc", "gt", 5.0, "pause")])
    service, client, _ = build_service(store, {"cmp-1": snapshot(cpc=6.0)})

    results = await service.run_optimization()

    assert results["optimized"] == 1


# ── Recommendations ───────────────────────────────────────────────────

@pytest.mark.anyio
async def test_recommendations_have_no_side_effects():
    store = FakeCampaignStore([make_campaign("cmp-1", name="Spring Sale"), make_campaign("cmp-2")])
    rules = [
        rule("high_cpc_pause", "cpc", "gt", 5.0, "pause"),
        rule("low_ctr_pause", "ctr", "lt", 0.5, "pause", lookback=48),
    ]
    snapshots = {"cmp-1": snapshot(cpc=6.0, ctr=0.2, spend=120), "cmp-2": snapshot("cmp-2", cpc=1.0, ctr=2.0)}
    service, client, _ = build_service(store, snapshots, rules)

    recommendations = await service.get_optimization_recommendations()

    assert len(recommendations) == 1
    entry = recommendations[0]
    assert entry["campaignId"] == "cmp-1"
    assert entry["campaignName"] == "Spring Sale"
    assert [r["action"] for r in entry["recommendations"]] == ["pause", "pause"]
    assert entry["recommendations"][0]["impact"] == "high"
    assert "Cost per click (6.00)" in entry["recommendations"][0]["reason"]
    client.update_status.assert_not_awaited()
    client.update_budget.assert_not_awaited()
    assert store.logs == []
