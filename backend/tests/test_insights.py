"""
Tests for insights normalization: conversions, ROAS and derived rates.
"""

from datetime import date, datetime, timezone

import httpx
import pytest
from unittest.mock import AsyncMock

from app.models import Metric
from app.services.insights_service import (
    DatePreset, DateRange, InsightsService, build_snapshot, compute_roas, extract_conversions,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def test_extract_conversions_counts_known_actions_only():
    actions = [
        {"action_type": "purchase", "value": "3"},
        {"action_type": "add_to_cart", "value": "5"},
        {"action_type": "complete_registration", "value": "1"},
        {"action_type": "link_click", "value": "40"},
        {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "3"},
    ]
    assert extract_conversions(actions) == 9


def test_extract_conversions_tolerates_missing_and_garbage():
    assert extract_conversions(None) == 0
    assert extract_conversions([]) == 0
    assert extract_conversions([{"action_type": "purchase", "value": "n/a"}, "oops"]) == 0


def test_roas_is_zero_without_spend():
    assert compute_roas(10, 50.0, 0) == 0.0


def test_roas_formula():
    assert compute_roas(4, 50.0, 40.0) == 5.0


def test_snapshot_uses_remote_rates_for_single_row():
    row = {
        "impressions": "1000", "clicks": "20", "spend": "30.00", "reach": "500",
        "ctr": "2.1", "cpc": "1.5", "cpm": "30", "frequency": "2.0",
        "actions": [{"action_type": "purchase", "value": "2"}],
        "date_start": "2024-05-01", "date_stop": "2024-05-07",
    }
    snapshot = build_snapshot("cmp-1", [row], average_order_value=60.0)
    assert snapshot.impressions == 1000
    assert snapshot.clicks == 20
    assert snapshot.ctr == 2.1
    assert snapshot.cpc == 1.5
    assert snapshot.conversions == 2
    assert snapshot.roas == pytest.approx(4.0)
    assert snapshot.value(Metric.FREQUENCY) == 2.0
    assert snapshot.date_start == "2024-05-01"


def test_snapshot_derives_rates_and_guards_division():
    snapshot = build_snapshot("cmp-1", [{"impressions": "0", "clicks": "0", "spend": "0"}], 50.0)
    assert snapshot.ctr == 0.0
    assert snapshot.cpc == 0.0
    assert snapshot.cpm == 0.0
    assert snapshot.frequency == 0.0
    assert snapshot.roas == 0.0


def test_snapshot_aggregates_multiple_rows():
    rows = [
        {"impressions": "500", "clicks": "10", "spend": "10", "reach": "250", "ctr": "9.9"},
        {"impressions": "500", "clicks": "10", "spend": "10", "reach": "250", "ctr": "9.9"},
    ]
    snapshot = build_snapshot("cmp-1", rows, 50.0)
    assert snapshot.impressions == 1000
    assert snapshot.ctr == pytest.approx(2.0)
    assert snapshot.cpc == pytest.approx(1.0)
    assert snapshot.cpm == pytest.approx(20.0)
    assert snapshot.frequency == pytest.approx(2.0)


def test_date_range_for_lookback():
    now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    assert DateRange.for_lookback(24, now) == DateRange(date(2024, 5, 9), date(2024, 5, 10))
    assert DateRange.for_lookback(72, now).as_param() == {"since": "2024-05-07", "until": "2024-05-10"}


def test_date_range_rejects_inverted_range():
    with pytest.raises(ValueError):
        DateRange(date(2024, 5, 10), date(2024, 5, 1))


@pytest.mark.anyio
async def test_snapshot_is_none_when_no_rows(make_graph_client):
    client = make_graph_client(lambda request: httpx.Response(200, json={"data": []}))
    service = InsightsService(client)
    assert await service.get_performance_snapshot("cmp-1", DatePreset.LAST_7D) is None


@pytest.mark.anyio
async def test_snapshot_uses_average_order_value_provider(make_graph_client):
    row = {"impressions": "100", "clicks": "10", "spend": "20",
           "actions": [{"action_type": "purchase", "value": "2"}]}
    client = make_graph_client(lambda request: httpx.Response(200, json={"data": [row]}))
    provider = AsyncMock(return_value=80.0)
    service = InsightsService(client, average_order_value=provider)

    snapshot = await service.get_performance_snapshot("cmp-1", DatePreset.LAST_7D)
    assert snapshot.roas == pytest.approx(8.0)
    provider.assert_awaited_once()


@pytest.mark.anyio
async def test_average_order_value_falls_back_to_default(make_graph_client):
    client = make_graph_client(lambda request: httpx.Response(200, json={"data": []}))

    failing = InsightsService(client, average_order_value=AsyncMock(side_effect=RuntimeError("db down")))
    assert await failing.average_order_value() == 50.0

    empty = InsightsService(client, average_order_value=AsyncMock(return_value=None), default_average_order_value=42.0)
    assert await empty.average_order_value() == 42.0


@pytest.mark.anyio
async def test_advanced_insights_passes_preset_and_breakdowns(make_graph_client):
    seen = {}

    def handler(request):
        seen["params"] = request.url.params
        return httpx.Response(200, json={"data": [{"age": "25-34", "impressions": "12"}]})

    service = InsightsService(make_graph_client(handler))
    rows = await service.get_advanced_insights("cmp-1", DatePreset.LAST_30D, breakdowns=["age"])
    assert rows == [{"age": "25-34", "impressions": "12"}]
    assert seen["params"]["date_preset"] == "last_30d"
    assert seen["params"]["breakdowns"] == "age"
    assert "time_range" not in seen["params"]
