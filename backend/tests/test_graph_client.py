"""
Tests for the Graph API client: retry/backoff, error translation, request
encoding and token hygiene.
"""

import logging
import httpx
import pytest
from unittest.mock import patch, AsyncMock

from app.graph_client import (
    GraphAPIError, ERROR_MESSAGES, GENERIC_ERROR_MESSAGE, TIMEOUT_ERROR_MESSAGE,
    backoff_delay, budget_fields, is_retryable, to_minor_units, translate_error, act_id,
)
from app.models import BudgetType, CampaignStatus
from conftest import form_of, graph_error


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ── Pure helpers ──────────────────────────────────────────────────────

def test_backoff_doubles_and_caps():
    assert [backoff_delay(n) for n in range(6)] == [1, 2, 4, 8, 16, 30]


def test_retryable_by_code_or_status():
    assert is_retryable(17, 400)
    assert is_retryable(None, 503)
    assert is_retryable(None, 429)
    assert not is_retryable(190, 400)
    assert not is_retryable(100, 400)


def test_translate_known_codes():
    assert translate_error(190) == ERROR_MESSAGES[190]
    assert translate_error(4, "Application request limit reached") == ERROR_MESSAGES[4]


def test_translate_invalid_parameter_keeps_remote_detail():
    message = translate_error(100, "Invalid parameter: targeting")
    assert message.startswith(ERROR_MESSAGES[100])
    assert "Invalid parameter: targeting" in message


def test_translate_subcode_takes_precedence():
    assert translate_error(100, "Invalid parameter", subcode=1487297) == ERROR_MESSAGES[1487297]


def test_translate_unknown_code_uses_remote_message_then_generic():
    assert translate_error(9999, "Something odd") == "Something odd"
    assert translate_error(9999) == GENERIC_ERROR_MESSAGE


def test_budget_fields_exactly_one_key_in_minor_units():
    assert budget_fields(25, BudgetType.DAILY) == {"daily_budget": 2500}
    assert budget_fields(99.99, BudgetType.LIFETIME) == {"lifetime_budget": 9999}
    assert to_minor_units(12.345) == 1235


def test_act_id_prefix():
    assert act_id("123") == "act_123"
    assert act_id("act_123") == "act_123"


# ── Retry behavior ────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_retryable_error_makes_four_attempts_with_backoff(make_graph_client):
    calls = []

    def handler(request):
        calls.append(request)
        return graph_error(2, "Service temporarily unavailable", status=500)

    client = make_graph_client(handler)
    with patch("app.graph_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(GraphAPIError) as exc_info:
            await client.get_me()

    assert len(calls) == 4
    assert [c.args[0] for c in sleep.await_args_list] == [1, 2, 4]
    assert exc_info.value.code == 2
    assert str(exc_info.value) == ERROR_MESSAGES[2]


@pytest.mark.anyio
async def test_rate_limit_then_success(make_graph_client):
    responses = [graph_error(17, "User request limit reached"), httpx.Response(200, json={"id": "1", "name": "A"})]

    def handler(request):
        return responses.pop(0)

    client = make_graph_client(handler)
    with patch("app.graph_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await client.get_me()

    assert result == {"id": "1", "name": "A"}
    sleep.assert_awaited_once_with(1.0)


@pytest.mark.anyio
async def test_http_429_is_retried_even_without_code(make_graph_client):
    responses = [httpx.Response(429, text="slow down"), httpx.Response(200, json={"id": "1"})]

    client = make_graph_client(lambda request: responses.pop(0))
    with patch("app.graph_client.asyncio.sleep", new_callable=AsyncMock):
        assert await client.get_me() == {"id": "1"}


@pytest.mark.anyio
async def test_non_retryable_error_fails_after_one_attempt(make_graph_client):
    calls = []

    def handler(request):
        calls.append(request)
        return graph_error(190, "Error validating access token", status=400)

    client = make_graph_client(handler)
    with patch("app.graph_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(GraphAPIError) as exc_info:
            await client.get_me()

    assert len(calls) == 1
    sleep.assert_not_awaited()
    assert exc_info.value.code == 190
    assert exc_info.value.fbtrace_id == "AbCdEf123"
    assert str(exc_info.value) == ERROR_MESSAGES[190]


@pytest.mark.anyio
async def test_error_body_with_200_status_is_an_error(make_graph_client):
    client = make_graph_client(lambda request: graph_error(200, "Permissions error", status=200))
    with pytest.raises(GraphAPIError) as exc_info:
        await client.get_me()
    assert exc_info.value.code == 200


@pytest.mark.anyio
async def test_user_message_preferred_for_unknown_codes(make_graph_client):
    client = make_graph_client(
        lambda request: graph_error(2446, "Raw message", user_msg="Your ad was rejected.")
    )
    with pytest.raises(GraphAPIError, match="Your ad was rejected."):
        await client.get_me()


@pytest.mark.anyio
async def test_timeout_is_not_retried(make_graph_client):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_graph_client(handler)
    with patch("app.graph_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(GraphAPIError, match=TIMEOUT_ERROR_MESSAGE):
            await client.create_campaign("123", {"name": "x"})
    assert len(calls) == 1
    sleep.assert_not_awaited()


@pytest.mark.anyio
async def test_zero_retries_means_single_attempt(make_graph_client):
    calls = []

    def handler(request):
        calls.append(request)
        return graph_error(1, status=500)

    client = make_graph_client(handler, max_retries=0)
    with pytest.raises(GraphAPIError):
        await client.get_me()
    assert len(calls) == 1


@pytest.mark.anyio
async def test_retries_are_capped_at_four_attempts(make_graph_client):
    calls = []

    def handler(request):
        calls.append(request)
        return graph_error(17, "User request limit reached")

    client = make_graph_client(handler, max_retries=6)
    with patch("app.graph_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(GraphAPIError) as exc_info:
            await client.get_me()

    assert len(calls) == 4
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]
    assert exc_info.value.code == 17


# ── Request encoding ──────────────────────────────────────────────────

@pytest.mark.anyio
async def test_get_sends_token_in_query(make_graph_client):
    seen = {}

    def handler(request):
        seen["request"] = request
        return httpx.Response(200, json={"id": "1"})

    client = make_graph_client(handler)
    await client.get_me()
    request = seen["request"]
    assert request.method == "GET"
    assert request.url.path == "/v23.0/me"
    assert request.url.params["access_token"] == "test-token-abc"


@pytest.mark.anyio
async def test_post_sends_form_body_with_json_encoded_objects(make_graph_client):
    seen = {}

    def handler(request):
        seen["request"] = request
        return httpx.Response(200, json={"id": "adset-1"})

    client = make_graph_client(handler)
    await client.create_ad_set("123", {
        "name": "Set",
        "targeting": {"geo_locations": {"countries": ["US"]}},
        "status": CampaignStatus.PAUSED,
        "end_time": None,
    })
    request = seen["request"]
    form = form_of(request)
    assert request.url.path == "/v23.0/act_123/adsets"
    assert "access_token" not in request.url.params
    assert form["access_token"] == "test-token-abc"
    assert form["targeting"] == '{"geo_locations":{"countries":["US"]}}'
    assert form["status"] == "PAUSED"
    assert "end_time" not in form


@pytest.mark.anyio
async def test_update_status_rejects_local_only_status(make_graph_client):
    client = make_graph_client(lambda request: httpx.Response(200, json={"success": True}))
    with pytest.raises(ValueError):
        await client.update_status("1", CampaignStatus.FAILED)


@pytest.mark.anyio
async def test_update_budget_posts_minor_units(make_graph_client):
    seen = {}

    def handler(request):
        seen["form"] = form_of(request)
        return httpx.Response(200, json={"success": True})

    client = make_graph_client(handler)
    await client.update_budget("cmp-1", 120, BudgetType.DAILY)
    assert seen["form"]["daily_budget"] == "12000"
    assert "lifetime_budget" not in seen["form"]


@pytest.mark.anyio
async def test_pagination_follows_after_cursor(make_graph_client):
    pages = {
        None: {"data": [{"id": "1"}, {"id": "2"}], "paging": {"cursors": {"after": "c1"}, "next": "https://next"}},
        "c1": {"data": [{"id": "3"}], "paging": {"cursors": {"after": "c2"}}},
    }

    def handler(request):
        return httpx.Response(200, json=pages[request.url.params.get("after")])

    client = make_graph_client(handler)
    accounts = await client.get_ad_accounts()
    assert [a["id"] for a in accounts] == ["1", "2", "3"]


@pytest.mark.anyio
async def test_insights_rejects_range_and_preset_together(make_graph_client):
    client = make_graph_client(lambda request: httpx.Response(200, json={"data": []}))
    with pytest.raises(ValueError):
        await client.get_insights("1", time_range={"since": "2024-01-01", "until": "2024-01-02"}, date_preset="last_7d")


@pytest.mark.anyio
async def test_insights_encodes_time_range_and_breakdowns(make_graph_client):
    seen = {}

    def handler(request):
        seen["params"] = request.url.params
        return httpx.Response(200, json={"data": [{"impressions": "10"}]})

    client = make_graph_client(handler)
    rows = await client.get_insights("cmp-1", time_range={"since": "2024-01-01", "until": "2024-01-07"},
                                     breakdowns=["age", "gender"])
    assert rows == [{"impressions": "10"}]
    assert seen["params"]["time_range"] == '{"since":"2024-01-01","until":"2024-01-07"}'
    assert seen["params"]["breakdowns"] == "age,gender"


# ── Token hygiene ─────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_access_token_never_logged(make_graph_client, caplog):
    responses = [graph_error(17, status=400), graph_error(190, status=400)]

    client = make_graph_client(lambda request: responses.pop(0))
    caplog.set_level(logging.DEBUG)
    with patch("app.graph_client.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(GraphAPIError):
            await client.create_campaign("123", {"name": "Spring Sale"})

    assert caplog.records
    assert "test-token-abc" not in caplog.text
    assert "test-token-abc" not in repr(client)


def test_client_requires_token():
    from app.graph_client import FacebookGraphClient
    with pytest.raises(ValueError):
        FacebookGraphClient("")
