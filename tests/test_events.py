"""
Unit tests for usage event decoding and the paginated fetcher.
"""

import threading

import pytest

from conftest import CYCLE_START, epoch_ms, raw_event
from usage_monitor.api.client import EVENTS_PATH
from usage_monitor.api.events import decode_event_record, decode_event_records, fetch_usage_events
from usage_monitor.core.errors import (
    CredentialError,
    CycleCancelled,
    TransportError,
    TruncatedFetchError,
)
from usage_monitor.storage.models import EventKind

START_MS = epoch_ms(CYCLE_START)
END_MS = START_MS + 31 * 24 * 3600 * 1000


class TestDecodeEvent:
    """Test decoding of individual event records."""

    def test_api_record(self):
        """Nested token usage and the cents-based cost are decoded."""
        event = decode_event_record(raw_event(0))
        assert event.kind == EventKind.INCLUDED
        assert event.model == "claude-4-sonnet"
        assert event.input_without_cache_write == 100
        assert event.input_with_cache_write == 10
        assert event.cache_read == 1000
        assert event.output_tokens == 50
        assert event.total_tokens == 1160
        assert event.cost == pytest.approx(0.1909)

    def test_currency_cost_preferred(self):
        """A formatted currency amount wins over the token-derived cost."""
        record = raw_event(0, kind="USAGE_EVENT_KIND_USAGE_BASED", cost="$0.43")
        event = decode_event_record(record)
        assert event.kind == EventKind.ON_DEMAND
        assert event.cost == pytest.approx(0.43)

    def test_dash_cost_falls_back_to_token_cents(self):
        record = raw_event(0, kind="USAGE_EVENT_KIND_USAGE_BASED", cost="-")
        assert decode_event_record(record).cost == pytest.approx(0.1909)

    def test_included_events_keep_their_cost(self):
        """Included does not mean free."""
        record = {"Date": "2025-01-20T08:00:00.000Z", "Kind": "Included", "Model": "gpt-4o", "Cost": "0.25"}
        event = decode_event_record(record)
        assert event.kind == EventKind.INCLUDED
        assert event.cost == pytest.approx(0.25)

    def test_csv_style_record(self):
        """Human-readable column names decode like API keys."""
        record = {
            "Date": "2025-01-20T08:00:00.000Z",
            "Kind": "Errored, No Charge",
            "Model": "gpt-4o",
            "Input (w/ Cache Write)": "10",
            "Input (w/o Cache Write)": "20",
            "Cache Read": "30",
            "Output Tokens": "40",
            "Total Tokens": "",
        }
        event = decode_event_record(record)
        assert event.kind == EventKind.ERRORED_NO_CHARGE
        assert event.total_tokens == 100

    def test_explicit_total_wins_over_sum(self):
        record = {"date": "2025-01-20T08:00:00Z", "outputTokens": 5, "totalTokens": 900}
        assert decode_event_record(record).total_tokens == 900

    def test_malformed_fields_default(self):
        """A bad counter degrades to zero instead of dropping the event."""
        record = raw_event(0)
        record["tokenUsage"]["outputTokens"] = "many"
        event = decode_event_record(record)
        assert event is not None
        assert event.output_tokens == 0

    def test_oversized_counter_defaults_instead_of_raising(self):
        record = raw_event(0)
        record["totalTokens"] = "1e400"
        record["tokenUsage"]["outputTokens"] = float("inf")
        event = decode_event_record(record)
        assert event.output_tokens == 0
        assert event.total_tokens == (
            event.input_with_cache_write + event.input_without_cache_write + event.cache_read
        )

    def test_out_of_range_timestamp_is_skipped(self):
        record = raw_event(0)
        record["timestamp"] = "99999999999999999"
        assert decode_event_record(record) is None

    def test_record_without_timestamp_is_skipped(self):
        records = [raw_event(0), {"model": "gpt-4o", "kind": "Included"}, raw_event(1)]
        assert len(decode_event_records(records)) == 2


class TestFetchUsageEvents:
    """Test the pagination contract of the event fetcher."""

    def _fetch(self, fake_api, **kwargs):
        with fake_api.client() as client:
            return fetch_usage_events(client, START_MS, END_MS, **kwargs)

    def test_reported_total_sets_page_count(self, fake_api):
        """808 events at 100 per page take 9 pages, the last holding 8."""
        fake_api.events = [raw_event(i) for i in range(808)]
        fake_api.total = 808

        events = self._fetch(fake_api, page_size=100)

        payloads = fake_api.payloads_to(EVENTS_PATH)
        assert len(payloads) == 9
        assert [p["page"] for p in payloads] == list(range(1, 10))
        assert fake_api.served_page_sizes == [100] * 8 + [8]
        assert len(events) == 808

    def test_request_payload(self, fake_api):
        fake_api.events = [raw_event(0)]
        self._fetch(fake_api, page_size=50)
        payload = fake_api.payloads_to(EVENTS_PATH)[0]
        assert payload == {
            "teamId": 0,
            "startDate": str(START_MS),
            "endDate": str(END_MS),
            "page": 1,
            "pageSize": 50,
        }

    def test_exact_multiple_stops_at_total(self, fake_api):
        """No extra request is made once the reported total is reached."""
        fake_api.events = [raw_event(i) for i in range(200)]
        fake_api.total = 200
        self._fetch(fake_api, page_size=100)
        assert len(fake_api.requests_to(EVENTS_PATH)) == 2

    def test_short_page_stops_without_total(self, fake_api):
        """Without a reported total, the first short page ends the fetch."""
        fake_api.events = [raw_event(i) for i in range(250)]
        events = self._fetch(fake_api, page_size=100)
        assert len(fake_api.requests_to(EVENTS_PATH)) == 3
        assert len(events) == 250

    def test_short_page_stops_even_below_total(self, fake_api):
        """A server reporting more than it serves cannot cause extra requests."""
        fake_api.events = [raw_event(i) for i in range(150)]
        fake_api.total = 1000
        events = self._fetch(fake_api, page_size=100)
        assert len(fake_api.requests_to(EVENTS_PATH)) == 2
        assert len(events) == 150

    def test_non_positive_total_is_ignored(self, fake_api):
        fake_api.events = [raw_event(i) for i in range(120)]
        fake_api.total = 0
        events = self._fetch(fake_api, page_size=100)
        assert len(events) == 120

    def test_failure_after_first_page_truncates(self, fake_api):
        """A later page failing yields a truncation error with the partial list."""
        fake_api.events = [raw_event(i) for i in range(250)]
        fake_api.total = 250
        fake_api.fail_pages = {2: 502}

        with pytest.raises(TruncatedFetchError) as excinfo:
            self._fetch(fake_api, page_size=100)

        assert excinfo.value.page == 2
        assert len(excinfo.value.partial) == 100
        assert excinfo.value.status_code == 502

    def test_failure_on_first_page_propagates(self, fake_api):
        fake_api.fail_pages = {1: 500}
        with pytest.raises(TransportError) as excinfo:
            self._fetch(fake_api)
        assert not isinstance(excinfo.value, TruncatedFetchError)

    def test_rejected_token_on_later_page_stays_credential_error(self, fake_api):
        fake_api.events = [raw_event(i) for i in range(150)]
        fake_api.fail_pages = {2: 401}
        with pytest.raises(CredentialError):
            self._fetch(fake_api, page_size=100)

    def test_cancel_is_checked_before_each_page(self, fake_api):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CycleCancelled):
            self._fetch(fake_api, cancel=cancel)
        assert fake_api.requests_to(EVENTS_PATH) == []

    def test_max_pages_bounds_the_fetch(self, fake_api):
        fake_api.events = [raw_event(i) for i in range(1000)]
        with pytest.raises(TruncatedFetchError) as excinfo:
            self._fetch(fake_api, page_size=10, max_pages=3)
        assert len(fake_api.requests_to(EVENTS_PATH)) == 3
        assert len(excinfo.value.partial) == 30

    def test_malformed_record_does_not_fail_the_page(self, fake_api):
        bad = raw_event(1)
        bad["totalTokens"] = "1e400"
        bad["tokenUsage"]["cacheReadTokens"] = "NaN"
        fake_api.events = [raw_event(0), bad]

        events = self._fetch(fake_api)

        assert len(events) == 2
        assert events[1].cache_read == 0

    def test_empty_first_page_ends_fetch(self, fake_api):
        fake_api.events = []
        assert self._fetch(fake_api) == []
        assert len(fake_api.requests_to(EVENTS_PATH)) == 1
