"""
Insights Service — Performance metrics for a campaign, ad set or ad.
Pulls rows from /{id}/insights and normalizes them into a PerformanceSnapshot.
Conversions come from the heterogeneous "actions" list; ROAS is derived
locally from conversions × average order value ÷ spend.
"""

import enum
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Union

from app.graph_client import FacebookGraphClient
from app.models import Metric
from app.utils import optional_float, safe_float, safe_int

logger = logging.getLogger(__name__)

CONVERSION_ACTION_TYPES = frozenset({"purchase", "complete_registration", "add_to_cart"})

DEFAULT_AVERAGE_ORDER_VALUE = 50.0

AverageOrderValueProvider = Callable[[], Awaitable[Optional[float]]]


class DatePreset(str, enum.Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_3D = "last_3d"
    LAST_7D = "last_7d"
    LAST_14D = "last_14d"
    LAST_28D = "last_28d"
    LAST_30D = "last_30d"
    LAST_90D = "last_90d"
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    MAXIMUM = "maximum"


@dataclass(frozen=True)
class DateRange:
    since: date
    until: date

    def __post_init__(self):
        if self.since > self.until:
            raise ValueError(f"since ({self.since}) is after until ({self.until})")

    @classmethod
    def for_lookback(cls, hours: int, now: Optional[datetime] = None) -> "DateRange":
        """Trailing window of ``hours`` ending today (Graph works in whole days)."""
        now = now or datetime.now(timezone.utc)
        return cls(since=(now - timedelta(hours=hours)).date(), until=now.date())

    def as_param(self) -> dict[str, str]:
        return {"since": self.since.isoformat(), "until": self.until.isoformat()}


InsightsWindow = Union[DateRange, DatePreset]


@dataclass
class PerformanceSnapshot:
    entity_id: str
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    reach: int = 0
    frequency: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    conversions: int = 0
    roas: float = 0.0
    date_start: Optional[str] = None
    date_stop: Optional[str] = None

    def value(self, metric: Metric) -> float:
        return float(getattr(self, Metric(metric).value))

    def as_dict(self) -> dict:
        return asdict(self)


def extract_conversions(actions: Optional[list]) -> int:
    """Sum the values of recognized conversion actions."""
    if not actions:
        return 0
    return sum(
        safe_int(action.get("value"))
        for action in actions
        if isinstance(action, dict) and action.get("action_type") in CONVERSION_ACTION_TYPES
    )


def compute_roas(conversions: int, average_order_value: float, spend: float) -> float:
    if spend <= 0:
        return 0.0
    return (conversions * average_order_value) / spend


def build_snapshot(entity_id: str, rows: list[dict], average_order_value: float) -> PerformanceSnapshot:
    """
    Aggregate insights rows into one snapshot. With a single row the rates
    Graph already computed (ctr/cpc/cpm/frequency) are used as-is; otherwise,
    or when Graph omitted them, they are derived from the totals.
    """
    impressions = sum(safe_int(r.get("impressions")) for r in rows)
    clicks = sum(safe_int(r.get("clicks")) for r in rows)
    spend = sum(safe_float(r.get("spend")) for r in rows)
    reach = sum(safe_int(r.get("reach")) for r in rows)
    conversions = sum(extract_conversions(r.get("actions")) for r in rows)

    remote = rows[0] if len(rows) == 1 else {}
    ctr = optional_float(remote.get("ctr"))
    cpc = optional_float(remote.get("cpc"))
    cpm = optional_float(remote.get("cpm"))
    frequency = optional_float(remote.get("frequency"))

    if ctr is None:
        ctr = (clicks / impressions) * 100 if impressions > 0 else 0.0
    if cpc is None:
        cpc = spend / clicks if clicks > 0 else 0.0
    if cpm is None:
        cpm = (spend / impressions) * 1000 if impressions > 0 else 0.0
    if frequency is None:
        frequency = impressions / reach if reach > 0 else 0.0

    return PerformanceSnapshot(
        entity_id=entity_id,
        impressions=impressions,
        clicks=clicks,
        spend=spend,
        reach=reach,
        frequency=frequency,
        ctr=ctr,
        cpc=cpc,
        cpm=cpm,
        conversions=conversions,
        roas=compute_roas(conversions, average_order_value, spend),
        date_start=rows[0].get("date_start"),
        date_stop=rows[-1].get("date_stop"),
    )


class InsightsService:
    def __init__(
        self,
        client: FacebookGraphClient,
        average_order_value: Optional[AverageOrderValueProvider] = None,
        default_average_order_value: float = DEFAULT_AVERAGE_ORDER_VALUE,
    ):
        self.client = client
        self._average_order_value = average_order_value
        self.default_average_order_value = default_average_order_value

    async def get_advanced_insights(
        self,
        entity_id: str,
        window: InsightsWindow,
        breakdowns: Optional[list[str]] = None,
    ) -> list[dict]:
        """Raw insights rows for an entity. Empty list means no data for the window."""
        if isinstance(window, DatePreset):
            return await self.client.get_insights(entity_id, date_preset=window.value, breakdowns=breakdowns)
        return await self.client.get_insights(entity_id, time_range=window.as_param(), breakdowns=breakdowns)

    async def get_performance_snapshot(
        self,
        entity_id: str,
        window: InsightsWindow,
    ) -> Optional[PerformanceSnapshot]:
        """
        Normalized metrics, or None when Graph has no rows for the window
        ("no data yet" is not the same as a measured zero).
        """
        rows = await self.get_advanced_insights(entity_id, window)
        if not rows:
            logger.info(f"No insights rows for {entity_id} in {window}")
            return None

        spend = sum(safe_float(r.get("spend")) for r in rows)
        has_conversions = any(extract_conversions(r.get("actions")) for r in rows)
        aov = await self.average_order_value() if spend > 0 and has_conversions else 0.0
        return build_snapshot(entity_id, rows, aov)

    async def average_order_value(self) -> float:
        if self._average_order_value is None:
            return self.default_average_order_value
        try:
            value = await self._average_order_value()
        except Exception as e:
            logger.warning(f"Average order value lookup failed, using default: {e}")
            return self.default_average_order_value
        if value is None or value <= 0:
            return self.default_average_order_value
        return value
