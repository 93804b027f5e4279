"""
Shared fixtures: a temporary repository and an in-memory stand-in for the
remote API served through ``httpx.MockTransport``.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from usage_monitor.api.client import EVENTS_PATH, INVOICE_PATH, USAGE_PATH, UsageApiClient
from usage_monitor.storage.models import EventKind, UsageEvent, UsageSnapshot
from usage_monitor.storage.repository import UsageRepository

CYCLE_START = datetime(2025, 1, 18, 10, 0, tzinfo=timezone.utc)


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def raw_event(
    index: int,
    kind: str = "USAGE_EVENT_KIND_INCLUDED_IN_PRO",
    model: str = "claude-4-sonnet",
    start: datetime = CYCLE_START,
    cost: Optional[str] = None,
) -> Dict[str, Any]:
    """One record in the shape of ``usageEventsDisplay`` entries."""
    record = {
        "timestamp": str(epoch_ms(start + timedelta(minutes=index + 1))),
        "model": model,
        "kind": kind,
        "maxMode": False,
        "tokenUsage": {
            "inputTokens": 100 + index,
            "outputTokens": 50,
            "cacheWriteTokens": 10,
            "cacheReadTokens": 1000,
            "totalCents": 19.09,
        },
    }
    if cost is not None:
        record["usageBasedCosts"] = cost
    return record


def make_event(
    event_date: datetime,
    kind: EventKind = EventKind.INCLUDED,
    model: str = "claude-4-sonnet",
    total_tokens: int = 1000,
    billing_cycle: str = "2025-01-18",
    fetched_at: Optional[datetime] = None,
    cost: float = 0.19,
) -> UsageEvent:
    return UsageEvent(
        event_date=event_date,
        billing_cycle=billing_cycle,
        kind=kind,
        model=model,
        input_with_cache_write=100,
        input_without_cache_write=200,
        cache_read=total_tokens - 400,
        output_tokens=100,
        total_tokens=total_tokens,
        cost=cost,
        fetched_at=fetched_at or event_date,
    )


def make_snapshot(
    timestamp: datetime,
    used: int = 100,
    limit: int = 500,
    on_demand: bool = False,
    spend_cents: int = 0,
    cycle_start: datetime = CYCLE_START,
) -> UsageSnapshot:
    return UsageSnapshot(
        timestamp=timestamp,
        billing_cycle_start=cycle_start,
        requests_used=used,
        requests_limit=limit,
        usage_percentage=used / limit * 100,
        is_on_demand=on_demand,
        on_demand_spend_cents=spend_cents,
    )


class FakeApi:
    """Serves the usage, invoice and events endpoints from in-memory data.

    ``usage_responses`` and ``invoice_responses`` are queues consumed one
    per request; an int entry is returned as that HTTP status, a dict as a
    JSON body. When a queue is empty ``usage`` / ``invoice`` are served.
    """

    def __init__(self):
        self.usage: Dict[str, Any] = {
            "gpt-4": {
                "numRequests": 100,
                "numRequestsTotal": 100,
                "maxRequestUsage": 500,
                "numTokens": 123456,
            },
            "startOfMonth": "2025-01-18T10:00:00.000Z",
        }
        self.invoice: Dict[str, Any] = {"items": []}
        self.events: List[Dict[str, Any]] = []
        self.total: Optional[int] = None
        self.fail_pages: Dict[int, int] = {}
        self.usage_responses: List[Any] = []
        self.invoice_responses: List[Any] = []
        self.requests: List[httpx.Request] = []
        self.served_page_sizes: List[int] = []

    def _respond(self, queue: List[Any], default: Dict[str, Any]) -> httpx.Response:
        entry = queue.pop(0) if queue else default
        if isinstance(entry, int):
            return httpx.Response(entry, text="upstream error")
        return httpx.Response(200, json=entry)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == USAGE_PATH:
            return self._respond(self.usage_responses, self.usage)
        if path == INVOICE_PATH:
            return self._respond(self.invoice_responses, self.invoice)
        if path == EVENTS_PATH:
            body = json.loads(request.content)
            page, size = body["page"], body["pageSize"]
            if page in self.fail_pages:
                return httpx.Response(self.fail_pages[page], text="page failed")
            chunk = self.events[(page - 1) * size:page * size]
            self.served_page_sizes.append(len(chunk))
            payload: Dict[str, Any] = {"usageEventsDisplay": chunk}
            if page == 1 and self.total is not None:
                payload["totalUsageEventsCount"] = self.total
            return httpx.Response(200, json=payload)
        return httpx.Response(404, text="not found")

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def payloads_to(self, path: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests_to(path)]

    def client(self, token: str = "test-token", **kwargs) -> UsageApiClient:
        return UsageApiClient(token, transport=httpx.MockTransport(self.handler), **kwargs)


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def repository(tmp_path) -> UsageRepository:
    repo = UsageRepository(str(tmp_path / "metrics.db"))
    repo.initialize_schema()
    return repo
