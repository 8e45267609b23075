"""
Facebook Graph API Client
Authenticated calls to the Facebook Marketing API.
Retries transient failures with exponential backoff and translates Graph
error codes into messages that are safe to show to merchants.
"""

import asyncio
import enum
import json
import logging
from typing import Any, Optional

import httpx

from app.config import get_settings
from app.models import BudgetType, CampaignStatus
from app.utils import round_half_up

logger = logging.getLogger(__name__)

# httpx logs full request URLs at INFO, access_token query parameter included
logging.getLogger("httpx").setLevel(logging.WARNING)

# ── Retry policy ──────────────────────────────────────────────────────
# Graph codes for transient unavailability / throttling
RETRYABLE_ERROR_CODES = frozenset({1, 2, 4, 17, 341, 368})
RETRYABLE_HTTP_STATUSES = frozenset({429, 500, 503})
# Hard cap: at most four attempts per logical call
MAX_RETRIES = 3

INVALID_PARAMETER_CODE = 100

# ── Error translation ─────────────────────────────────────────────────
ERROR_MESSAGES: dict[int, str] = {
    1: "Facebook API is temporarily unavailable. Please try again later.",
    2: "Facebook service is temporarily unavailable. Please try again later.",
    4: "Facebook API rate limit exceeded. Please wait a moment and try again.",
    10: "You do not have permission to perform this action. Please check your Facebook account permissions.",
    17: "You have reached your Facebook API rate limit. Please try again later.",
    100: "Facebook rejected the request parameters.",
    190: "Your Facebook access token has expired or is invalid. Please reconnect your Facebook account.",
    200: "You do not have the required permissions for this action.",
    341: "Facebook API is temporarily unavailable due to maintenance.",
    368: "The Facebook ad account is temporarily restricted.",
    1487297: "Your Facebook ad account needs to be verified before you can create ads.",
    1487298: "Your Facebook ad account has spending limits that prevent ad creation.",
    1487299: "Your Facebook ad account is restricted and cannot create new ads.",
}
GENERIC_ERROR_MESSAGE = "An unexpected error occurred with the Facebook API."
TIMEOUT_ERROR_MESSAGE = "The Facebook API did not respond in time. Please try again."
CONNECTION_ERROR_MESSAGE = "Could not reach the Facebook API. Please try again later."

DEFAULT_INSIGHTS_FIELDS = (
    "impressions,clicks,spend,cpm,cpc,ctr,reach,frequency,actions,cost_per_action_type"
)

REMOTE_STATUSES = (CampaignStatus.ACTIVE, CampaignStatus.PAUSED, CampaignStatus.DELETED)


class GraphAPIError(Exception):
    """Raised for any failed Graph API call. ``str(exc)`` is user-facing."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        http_status: Optional[int] = None,
        fbtrace_id: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.http_status = http_status
        self.fbtrace_id = fbtrace_id
        self.retryable = retryable


def translate_error(
    code: Optional[int],
    remote_message: Optional[str] = None,
    subcode: Optional[int] = None,
) -> str:
    """Map a Graph error to a short user-facing message.

    Subcodes are checked first since they are the more specific signal
    (e.g. 1487297 arrives as code 100 with that subcode).
    """
    if subcode in ERROR_MESSAGES:
        return ERROR_MESSAGES[subcode]
    if code == INVALID_PARAMETER_CODE and remote_message:
        return f"{ERROR_MESSAGES[code]} {remote_message}"
    if code in ERROR_MESSAGES:
        return ERROR_MESSAGES[code]
    # Unknown code
    return remote_message or GENERIC_ERROR_MESSAGE


def is_retryable(code: Optional[int], http_status: Optional[int]) -> bool:
    return code in RETRYABLE_ERROR_CODES or http_status in RETRYABLE_HTTP_STATUSES


def backoff_delay(retry_number: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Delay before retry ``retry_number`` (0-based): base * 2^n, capped."""
    return min(base_delay * (2 ** retry_number), max_delay)


def to_minor_units(amount: float) -> int:
    """Currency amount -> integer cents, as Graph expects for budgets."""
    return int(round_half_up(float(amount) * 100))


def budget_fields(amount: float, budget_type: BudgetType) -> dict[str, int]:
    """Exactly one of daily_budget / lifetime_budget, never both."""
    budget_type = BudgetType(budget_type)
    if budget_type is BudgetType.DAILY:
        return {"daily_budget": to_minor_units(amount)}
    return {"lifetime_budget": to_minor_units(amount)}


def act_id(ad_account_id: str) -> str:
    """Normalize an ad account id to the act_{id} namespace."""
    ad_account_id = str(ad_account_id).strip()
    return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"


class FacebookGraphClient:
    """
    Thin async wrapper around the Graph API.
    One instance per access token; an ``httpx.AsyncClient`` may be injected
    (tests pass one backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        access_token: str,
        api_version: str = "v23.0",
        base_url: str = "https://graph.facebook.com",
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not access_token:
            raise ValueError("Facebook access token is required")
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.max_retries = min(max_retries, MAX_RETRIES)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._http = http_client

    def __repr__(self) -> str:
        return f"FacebookGraphClient(api_version={self.api_version!r})"

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    @staticmethod
    def _encode(values: Optional[dict]) -> dict[str, str]:
        """Flatten values for a query string / form body. Graph wants nested objects as JSON."""
        encoded = {}
        for key, value in (values or {}).items():
            if value is None:
                continue
            if isinstance(value, enum.Enum):
                value = value.value
            if isinstance(value, (dict, list, tuple)):
                encoded[key] = json.dumps(value, separators=(",", ":"))
            elif isinstance(value, bool):
                encoded[key] = "true" if value else "false"
            else:
                encoded[key] = str(value)
        return encoded

    async def request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """
        Perform one logical Graph call, retrying transient failures.
        GET sends the token as a query parameter; POST/DELETE send a
        form-encoded body with the token as a form field.
        """
        method = method.upper()
        url = self._url(path)
        query = self._encode(params)
        form = None
        if method == "GET":
            query["access_token"] = self.access_token
        else:
            form = self._encode(data)
            form["access_token"] = self.access_token

        logger.info(
            f"Graph call: {method} {path} params={sorted(k for k in query if k != 'access_token')} "
            f"fields={sorted(k for k in (form or {}) if k != 'access_token')}"
        )

        last_error = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = backoff_delay(attempt - 1, self.base_delay, self.max_delay)
                logger.warning(
                    f"Retrying Graph call {method} {path} in {delay:.1f}s "
                    f"(retry {attempt}/{self.max_retries}, code={last_error.code}, status={last_error.http_status})"
                )
                await asyncio.sleep(delay)
            try:
                return await self._send(method, url, path, query, form)
            except GraphAPIError as e:
                if not e.retryable:
                    raise
                last_error = e
        logger.error(f"Graph call {method} {path} failed after {self.max_retries} retries")
        raise last_error

    async def _send(self, method: str, url: str, path: str, query: dict, form: Optional[dict]) -> dict:
        try:
            if self._http is not None:
                response = await self._http.request(method, url, params=query, data=form, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as http:
                    response = await http.request(method, url, params=query, data=form)
        except httpx.TimeoutException as e:
            # Not retried: a timed-out POST may already exist remotely
            logger.error(f"Graph call timed out: {method} {path}")
            raise GraphAPIError(TIMEOUT_ERROR_MESSAGE) from e
        except httpx.HTTPError as e:
            logger.error(f"Graph call transport failure: {method} {path} - {type(e).__name__}")
            raise GraphAPIError(CONNECTION_ERROR_MESSAGE) from e
        return self.parse_response(method, path, response)

    @staticmethod
    def parse_response(method: str, path: str, response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            body = None

        error = body.get("error") if isinstance(body, dict) else None
        if response.is_success and not error:
            if isinstance(body, dict):
                return body
            return {"data": body}

        if not isinstance(error, dict):
            error = {}
        code = error.get("code")
        subcode = error.get("error_subcode")
        fbtrace_id = error.get("fbtrace_id")
        remote_message = error.get("error_user_msg") or error.get("message")
        retryable = is_retryable(code, response.status_code)

        logger.error(
            f"Graph API error: {method} {path} status={response.status_code} code={code} "
            f"subcode={subcode} type={error.get('type')} fbtrace_id={fbtrace_id} "
            f"retryable={retryable} message={error.get('message')!r}"
        )
        raise GraphAPIError(
            translate_error(code, remote_message, subcode),
            code=code,
            subcode=subcode,
            http_status=response.status_code,
            fbtrace_id=fbtrace_id,
            retryable=retryable,
        )

    # ── Paginated Query Helper ────────────────────────────────────────

    async def _paginated_get(self, path: str, params: dict, max_pages: int = 20) -> list[dict]:
        """Follow cursor pagination (paging.cursors.after) until exhausted."""
        items = []
        after = None
        for page in range(max_pages):
            page_params = dict(params)
            if after:
                page_params["after"] = after
            result = await self.request("GET", path, params=page_params)
            items.extend(result.get("data") or [])
            paging = result.get("paging") or {}
            after = (paging.get("cursors") or {}).get("after")
            if not paging.get("next") or not after:
                break
        logger.info(f"_paginated_get({path}) complete: {len(items)} items")
        return items

    # ── Account Methods ──────────────────────────────────────────────

    async def get_me(self) -> dict:
        return await self.request("GET", "/me", params={"fields": "id,name"})

    async def get_ad_accounts(self, user_id: str = "me") -> list[dict]:
        return await self._paginated_get(
            f"/{user_id}/adaccounts",
            {"fields": "id,name,account_id,currency,account_status,timezone_name"},
        )

    async def get_ad_account(self, ad_account_id: str, fields: str) -> dict:
        return await self.request("GET", f"/{act_id(ad_account_id)}", params={"fields": fields})

    async def get_pages(self, user_id: str = "me") -> list[dict]:
        return await self._paginated_get(f"/{user_id}/accounts", {"fields": "id,name,category"})

    async def test_connection(self) -> dict:
        """Test the token by reading the user and their ad accounts."""
        try:
            me = await self.get_me()
            accounts = await self.get_ad_accounts()
            return {"status": "connected", "user": me, "ad_accounts": len(accounts)}
        except GraphAPIError as e:
            return {"status": "error", "error": str(e)}

    # ── Campaign Structure ───────────────────────────────────────────

    async def create_campaign(self, ad_account_id: str, payload: dict) -> dict:
        return await self.request("POST", f"/{act_id(ad_account_id)}/campaigns", data=payload)

    async def create_ad_set(self, ad_account_id: str, payload: dict) -> dict:
        return await self.request("POST", f"/{act_id(ad_account_id)}/adsets", data=payload)

    async def upload_image(self, ad_account_id: str, image_url: str) -> dict:
        return await self.request("POST", f"/{act_id(ad_account_id)}/adimages", data={"url": image_url})

    async def create_ad_creative(self, ad_account_id: str, payload: dict) -> dict:
        return await self.request("POST", f"/{act_id(ad_account_id)}/adcreatives", data=payload)

    async def create_ad(self, ad_account_id: str, payload: dict) -> dict:
        return await self.request("POST", f"/{act_id(ad_account_id)}/ads", data=payload)

    async def get_campaigns(self, ad_account_id: str, limit: int = 100) -> list[dict]:
        return await self._paginated_get(
            f"/{act_id(ad_account_id)}/campaigns",
            {
                "fields": "id,name,objective,status,daily_budget,lifetime_budget,created_time,updated_time",
                "limit": limit,
            },
        )

    async def update_status(self, object_id: str, status: CampaignStatus) -> dict:
        """Set ACTIVE / PAUSED / DELETED on a campaign, ad set or ad."""
        status = CampaignStatus(status)
        if status not in REMOTE_STATUSES:
            raise ValueError(f"Status {status.value} cannot be sent to Facebook")
        return await self.request("POST", f"/{object_id}", data={"status": status})

    async def update_budget(self, object_id: str, amount: float, budget_type: BudgetType) -> dict:
        return await self.request("POST", f"/{object_id}", data=budget_fields(amount, budget_type))

    # ── Insights ─────────────────────────────────────────────────────

    async def get_insights(
        self,
        entity_id: str,
        time_range: Optional[dict[str, str]] = None,
        date_preset: Optional[str] = None,
        breakdowns: Optional[list[str]] = None,
        fields: str = DEFAULT_INSIGHTS_FIELDS,
    ) -> list[dict]:
        if time_range and date_preset:
            raise ValueError("Pass either time_range or date_preset, not both")
        params: dict[str, Any] = {"fields": fields}
        if time_range:
            params["time_range"] = time_range
        if date_preset:
            params["date_preset"] = date_preset
        if breakdowns:
            params["breakdowns"] = ",".join(breakdowns)
        return await self._paginated_get(f"/{entity_id}/insights", params)


def create_graph_client(
    access_token: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FacebookGraphClient:
    """Factory function applying the configured API version and retry policy."""
    settings = get_settings()
    return FacebookGraphClient(
        access_token=access_token,
        api_version=settings.facebook_api_version,
        base_url=settings.facebook_graph_url,
        timeout=settings.graph_request_timeout,
        max_retries=settings.graph_max_retries,
        base_delay=settings.graph_retry_base_delay,
        max_delay=settings.graph_retry_max_delay,
        http_client=http_client,
    )
