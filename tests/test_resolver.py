"""
Unit tests for multi-source usage resolution.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import CYCLE_START
from usage_monitor.api.client import CoarseUsage
from usage_monitor.api.events import RawEvent
from usage_monitor.api.invoice import InvoiceData, InvoiceLine
from usage_monitor.core.errors import CredentialError, TransportError
from usage_monitor.core.resolver import assign_cycles, fetch_cycle_invoice, resolve_usage
from usage_monitor.storage.models import EventKind

NOW = datetime(2025, 2, 3, 9, 30, tzinfo=timezone.utc)


def coarse(used: int = 0, limit: int = 500, on_demand: bool = False) -> CoarseUsage:
    return CoarseUsage(
        requests_used=used,
        requests_limit=limit,
        usage_percentage=used / limit * 100,
        billing_cycle_start=CYCLE_START,
        is_on_demand=on_demand,
        raw_response="{}",
    )


def included(minutes: int, tokens: int = 1000, kind: EventKind = EventKind.INCLUDED) -> RawEvent:
    return RawEvent(
        event_date=CYCLE_START + timedelta(minutes=minutes),
        kind=kind,
        model="claude-4-sonnet",
        input_with_cache_write=0,
        input_without_cache_write=tokens,
        cache_read=0,
        output_tokens=0,
        total_tokens=tokens,
        cost=0.1,
    )


def resolve(usage, invoice=0, persisted_cents=0, events=(), persisted_included=0):
    return resolve_usage(
        usage,
        invoice_total_cents=invoice,
        persisted_item_cents=persisted_cents,
        fetched_events=list(events),
        persisted_included=persisted_included,
        cycle_anchor=CYCLE_START,
        fetched_at=NOW,
    )


class TestResolveUsage:
    """Test the resolution rules."""

    def test_consistent_sources_pass_through(self):
        result = resolve(coarse(used=120))
        assert result.usage.requests_used == 120
        assert result.usage.usage_percentage == pytest.approx(24.0)
        assert result.usage.is_on_demand is False
        assert result.usage.on_demand_spend_cents == 0
        assert result.warnings == ()

    def test_spend_marks_cycle_on_demand(self):
        result = resolve(coarse(used=500), invoice=1250)
        assert result.usage.is_on_demand is True
        assert result.usage.on_demand_spend_cents == 1250
        assert result.usage.requests_used == 500

    def test_included_count_from_persisted_events(self):
        """A zero coarse counter during on-demand is replaced by the ledger count."""
        result = resolve(coarse(used=0), invoice=1250, persisted_included=42)
        assert result.usage.requests_used == 42
        assert result.usage.usage_percentage == pytest.approx(8.4)
        assert [w.rule for w in result.warnings] == ["included-count"]

    def test_no_included_evidence_assumes_limit_reached(self):
        result = resolve(coarse(used=0), invoice=1250)
        assert result.usage.requests_used == 500
        assert result.usage.usage_percentage == 100.0

    def test_fetched_events_counted_by_natural_key(self):
        """Duplicates and non-included events do not inflate the count."""
        events = [
            included(1), included(1), included(2), included(3),
            included(4, kind=EventKind.ON_DEMAND),
        ]
        result = resolve(coarse(used=0, on_demand=True), events=events, persisted_included=2)
        assert result.usage.requests_used == 3

    def test_events_outside_the_cycle_are_not_counted(self):
        events = [included(1), included(-60 * 24 * 3)]
        result = resolve(coarse(used=0, on_demand=True), events=events)
        assert result.usage.requests_used == 1

    def test_larger_persisted_spend_wins(self):
        result = resolve(coarse(used=500), invoice=800, persisted_cents=1250)
        assert result.usage.on_demand_spend_cents == 1250
        assert "monotonic-spend" in [w.rule for w in result.warnings]

    def test_inputs_are_not_mutated(self):
        usage = coarse(used=0)
        events = [included(1)]
        resolve(usage, invoice=100, events=events)
        assert usage.requests_used == 0
        assert len(events) == 1

    def test_snapshot_carries_resolved_values(self):
        result = resolve(coarse(used=0), invoice=1250, persisted_included=42)
        snapshot = result.usage.to_snapshot(NOW)
        assert snapshot.timestamp == NOW
        assert snapshot.requests_used == 42
        assert snapshot.on_demand_spend_cents == 1250
        assert snapshot.billing_cycle == "2025-01-18"


class TestAssignCycles:
    """Test per-event cycle assignment."""

    def test_each_event_gets_its_own_cycle(self):
        events = assign_cycles([included(1), included(-60)], CYCLE_START, NOW)
        assert events[0].billing_cycle == "2025-01-18"
        assert events[1].billing_cycle == "2024-12-18"
        assert all(e.fetched_at == NOW for e in events)


class FakeInvoiceClient:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def get_monthly_invoice(self, month, year, cycle_start=None):
        self.calls.append((month, year, cycle_start))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestFetchCycleInvoice:
    """Test the current-month fallback."""

    DATA = InvoiceData(items=[InvoiceLine("42 gpt-4o requests", 168)])

    def test_cycle_month_first(self):
        client = FakeInvoiceClient([self.DATA])
        assert fetch_cycle_invoice(client, CYCLE_START, NOW) is self.DATA
        assert client.calls == [(1, 2025, CYCLE_START)]

    def test_falls_back_to_current_month(self):
        client = FakeInvoiceClient([TransportError("boom", status_code=500), self.DATA])
        assert fetch_cycle_invoice(client, CYCLE_START, NOW) is self.DATA
        assert client.calls[1] == (2, 2025, None)

    def test_same_month_failure_is_raised(self):
        client = FakeInvoiceClient([TransportError("boom")])
        with pytest.raises(TransportError):
            fetch_cycle_invoice(client, CYCLE_START, CYCLE_START + timedelta(days=2))
        assert len(client.calls) == 1

    def test_credential_error_is_not_retried(self):
        client = FakeInvoiceClient([CredentialError("rejected"), self.DATA])
        with pytest.raises(CredentialError):
            fetch_cycle_invoice(client, CYCLE_START, NOW)
        assert len(client.calls) == 1
