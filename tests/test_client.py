"""
Unit tests for the HTTP client.
"""

from datetime import datetime, timezone

import httpx
import pytest

from conftest import CYCLE_START
from usage_monitor.api.client import INVOICE_PATH, USAGE_PATH, UsageApiClient
from usage_monitor.core.errors import CredentialError, SchemaError, TransportError


class TestRequests:
    """Test status handling shared by every endpoint."""

    def test_bearer_token_is_sent(self, fake_api):
        with fake_api.client("secret-token") as client:
            client.get_usage("user_123")
        request = fake_api.requests_to(USAGE_PATH)[0]
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.url.params["user"] == "user_123"

    @pytest.mark.parametrize("status", [401, 403])
    def test_rejected_token_raises_credential_error(self, fake_api, status):
        fake_api.usage_responses = [status]
        with fake_api.client() as client:
            with pytest.raises(CredentialError):
                client.get_usage("user_123")

    def test_server_error_raises_transport_error(self, fake_api):
        fake_api.usage_responses = [503]
        with fake_api.client() as client:
            with pytest.raises(TransportError) as excinfo:
                client.get_usage("user_123")
        assert excinfo.value.status_code == 503

    def test_invalid_json_raises_transport_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        with UsageApiClient("token", transport=transport) as client:
            with pytest.raises(TransportError):
                client.get_usage("user_123")

    def test_network_failure_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with UsageApiClient("token", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TransportError):
                client.get_usage("user_123")

    def test_empty_token_is_rejected(self):
        with pytest.raises(CredentialError):
            UsageApiClient("")


class TestGetUsage:
    """Test decoding of the coarse usage counters."""

    def test_counts_and_percentage(self, fake_api):
        fake_api.usage["gpt-4"]["numRequestsTotal"] = 150
        with fake_api.client() as client:
            usage = client.get_usage("user_123")
        assert usage.requests_used == 150
        assert usage.requests_limit == 500
        assert usage.usage_percentage == pytest.approx(30.0)
        assert usage.billing_cycle_start == CYCLE_START
        assert usage.is_on_demand is False
        assert '"startOfMonth"' in usage.raw_response

    def test_falls_back_to_num_requests(self, fake_api):
        fake_api.usage["gpt-4"]["numRequestsTotal"] = 0
        fake_api.usage["gpt-4"]["numRequests"] = 42
        with fake_api.client() as client:
            assert client.get_usage("user_123").requests_used == 42

    def test_null_limit_uses_default(self, fake_api):
        fake_api.usage["gpt-4"]["maxRequestUsage"] = None
        with fake_api.client(default_request_limit=250) as client:
            usage = client.get_usage("user_123")
        assert usage.requests_limit == 250
        assert usage.usage_percentage == pytest.approx(40.0)

    def test_limit_reached_sets_on_demand(self, fake_api):
        fake_api.usage["gpt-4"]["numRequestsTotal"] = 500
        with fake_api.client() as client:
            assert client.get_usage("user_123").is_on_demand is True

    @pytest.mark.parametrize("start", [None, "yesterday"])
    def test_unusable_cycle_start_raises(self, fake_api, start):
        fake_api.usage["startOfMonth"] = start
        with fake_api.client() as client:
            with pytest.raises(SchemaError):
                client.get_usage("user_123")


class TestGetMonthlyInvoice:
    """Test the invoice payload fallbacks."""

    ITEMS = {"items": [{"description": "10 gpt-4o requests", "cents": 40}]}

    def test_cycle_filter_payload_first(self, fake_api):
        fake_api.invoice = self.ITEMS
        with fake_api.client() as client:
            data = client.get_monthly_invoice(1, 2025, cycle_start=CYCLE_START)

        payloads = fake_api.payloads_to(INVOICE_PATH)
        assert payloads == [{
            "year": 2025,
            "cycleFilterType": "CYCLE_TYPE_START_TIME",
            "startTimeMs": str(int(CYCLE_START.timestamp() * 1000)),
        }]
        assert data.total_on_demand_cents == 40

    def test_empty_response_tries_next_payload(self, fake_api):
        fake_api.invoice_responses = [{"items": []}, self.ITEMS]
        with fake_api.client() as client:
            data = client.get_monthly_invoice(1, 2025, cycle_start=CYCLE_START)
        payloads = fake_api.payloads_to(INVOICE_PATH)
        assert len(payloads) == 2
        assert payloads[1] == {"month": 1, "year": 2025}
        assert len(data.items) == 1

    def test_failed_attempts_fall_through(self, fake_api):
        fake_api.invoice_responses = [500, 500, self.ITEMS]
        with fake_api.client() as client:
            data = client.get_monthly_invoice(1, 2025, cycle_start=CYCLE_START)
        assert fake_api.payloads_to(INVOICE_PATH)[2]["includeUsageEvents"] is True
        assert data.is_on_demand

    def test_all_attempts_failing_raises_last_error(self, fake_api):
        fake_api.invoice_responses = [500, 502]
        with fake_api.client() as client:
            with pytest.raises(TransportError) as excinfo:
                client.get_monthly_invoice(1, 2025)
        assert excinfo.value.status_code == 502

    def test_all_attempts_empty_returns_empty_invoice(self, fake_api):
        with fake_api.client() as client:
            data = client.get_monthly_invoice(1, 2025, cycle_start=CYCLE_START)
        assert data.is_empty
        assert len(fake_api.payloads_to(INVOICE_PATH)) == 3

    def test_rejected_token_is_not_retried(self, fake_api):
        fake_api.invoice_responses = [401, self.ITEMS]
        with fake_api.client() as client:
            with pytest.raises(CredentialError):
                client.get_monthly_invoice(1, 2025, cycle_start=datetime(2025, 1, 18, tzinfo=timezone.utc))
        assert len(fake_api.payloads_to(INVOICE_PATH)) == 1
