"""
Shared fakes: a Graph client backed by httpx.MockTransport and an in-memory
campaign store for the optimization engine.
"""

import json
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from app.graph_client import FacebookGraphClient
from app.models import ActivityLog


def graph_error(code, message="Remote error", status=400, subcode=None, user_msg=None):
    error = {"message": message, "type": "OAuthException", "code": code, "fbtrace_id": "AbCdEf123"}
    if subcode is not None:
        error["error_subcode"] = subcode
    if user_msg:
        error["error_user_msg"] = user_msg
    return httpx.Response(status, json={"error": error})


def form_of(request: httpx.Request) -> dict:
    """Decode a form-encoded Graph POST body into a flat dict."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def json_field(request: httpx.Request, name: str):
    return json.loads(form_of(request)[name])


@pytest.fixture
def make_graph_client():
    """Build a FacebookGraphClient whose HTTP traffic goes to ``handler``."""
    def _make(handler, **kwargs):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return FacebookGraphClient("test-token-abc", http_client=http, **kwargs)
    return _make


class FakeCampaignStore:
    """In-memory stand-in for SqlCampaignStore."""

    def __init__(self, campaigns=(), rules=None, aov=None):
        self.campaigns = {c.facebook_campaign_id: c for c in campaigns}
        self.rules = rules
        self.aov = aov
        self.logs = []
        self.status_changes = []
        self.budget_changes = []

    async def list_active_campaigns(self):
        return [c for c in self.campaigns.values() if c.status == "ACTIVE"]

    async def get_campaign(self, facebook_campaign_id):
        return self.campaigns.get(facebook_campaign_id)

    async def mirror_status(self, facebook_campaign_id, status):
        self.status_changes.append((facebook_campaign_id, status.value))
        self.campaigns[facebook_campaign_id].status = status.value

    async def mirror_budget(self, facebook_campaign_id, budget):
        self.budget_changes.append((facebook_campaign_id, budget))
        self.campaigns[facebook_campaign_id].budget = budget

    async def record_optimization(self, entry):
        self.logs.append(entry)

    async def average_order_value(self):
        return self.aov

    async def load_rules(self):
        return list(self.rules or [])


def make_campaign(facebook_campaign_id, budget=100.0, status="ACTIVE", budget_level="CAMPAIGN",
                  budget_type="DAILY", facebook_ad_set_id=None, name=None):
    return SimpleNamespace(
        facebook_campaign_id=facebook_campaign_id,
        facebook_ad_set_id=facebook_ad_set_id or f"{facebook_campaign_id}-adset",
        name=name or f"Campaign {facebook_campaign_id}",
        status=status,
        budget=budget,
        budget_type=budget_type,
        budget_level=budget_level,
    )


class FakeResult:
    """The slice of a SQLAlchemy Result the services use."""

    def __init__(self, rows=()):
        self.rows = list(rows)

    def scalars(self):
        return self

    def all(self):
        return list(self.rows)

    def first(self):
        return self.rows[0] if self.rows else None

    def scalar_one_or_none(self):
        return self.rows[0] if self.rows else None


class FakeSavepoint:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.session.savepoints.append("rolled_back" if exc_type else "released")
        return False


class FakeSession:
    """
    Records what the helpers add and delete; nothing is persisted.
    ``execute`` answers from ``results`` in order, then with empty results.
    """

    def __init__(self, results=(), fail_flush=0):
        self.results = list(results)
        self.fail_flush = fail_flush
        self.added = []
        self.deleted = []
        self.savepoints = []
        self.flushes = 0

    def add(self, obj):
        self.added.append(obj)

    def add_all(self, objs):
        self.added.extend(objs)

    async def flush(self):
        if self.fail_flush:
            self.fail_flush -= 1
            raise RuntimeError("flush failed")
        self.flushes += 1

    async def delete(self, obj):
        self.deleted.append(obj)

    async def execute(self, statement):
        return FakeResult(self.results.pop(0) if self.results else ())

    def begin_nested(self):
        return FakeSavepoint(self)

    def activity(self):
        return [obj for obj in self.added if isinstance(obj, ActivityLog)]
