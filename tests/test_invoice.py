"""
Unit tests for invoice parsing.
"""

from datetime import datetime, timezone

import pytest

from conftest import raw_event
from usage_monitor.api.invoice import (
    InvoiceData,
    InvoiceLine,
    build_invoice_items,
    parse_invoice_line,
    parse_invoice_response,
)
from usage_monitor.core.errors import InvoiceParseError

FETCHED_AT = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)


class TestParseInvoiceLine:
    """Test extraction of model and count from descriptions."""

    def test_token_based_format(self):
        parsed = parse_invoice_line("150 token-based usage calls to claude-4-sonnet, totalling: $12.50")
        assert parsed.model == "claude-4-sonnet"
        assert parsed.count == 150
        assert parsed.amount_cents == 1250

    def test_token_based_without_amount(self):
        parsed = parse_invoice_line("3 token-based usage calls to gpt-4.1")
        assert parsed.model == "gpt-4.1"
        assert parsed.count == 3
        assert parsed.amount_cents is None

    def test_requests_format(self):
        parsed = parse_invoice_line("42 gpt-4o requests")
        assert parsed.model == "gpt-4o"
        assert parsed.count == 42

    def test_singular_request(self):
        assert parse_invoice_line("1 o3 request").count == 1

    @pytest.mark.parametrize("description", [
        "Mid-month usage paid for January",
        "Pro subscription credit",
        "",
    ])
    def test_unrecognised_description_raises(self, description):
        with pytest.raises(InvoiceParseError) as excinfo:
            parse_invoice_line(description)
        assert excinfo.value.description == description


class TestInvoiceData:
    """Test invoice totals and response decoding."""

    def test_mid_month_payment_excluded_from_total(self):
        data = InvoiceData(items=[
            InvoiceLine("150 token-based usage calls to claude-4-sonnet, totalling: $12.50", 1250),
            InvoiceLine("Mid-month usage paid", 2000),
            InvoiceLine("Credit", -300),
        ])
        assert data.total_on_demand_cents == 1250
        assert data.is_on_demand

    def test_empty_invoice(self):
        data = InvoiceData()
        assert data.is_empty
        assert data.total_on_demand_cents == 0
        assert not data.is_on_demand

    def test_parse_response(self):
        body = {
            "items": [
                {"description": "42 gpt-4o requests", "cents": "168"},
                {"description": "", "cents": 5},
            ],
            "hasUnpaidMidMonthInvoice": True,
            "usageEvents": [raw_event(0), raw_event(1)],
        }
        data = parse_invoice_response(body)
        assert len(data.items) == 1
        assert data.items[0].cents == 168
        assert data.has_unpaid_mid_month_invoice is True
        assert len(data.usage_events) == 2

    def test_alternative_item_key(self):
        data = parse_invoice_response({"invoiceItems": [{"description": "2 o3 requests", "amountCents": 80}]})
        assert data.total_on_demand_cents == 80

    def test_non_object_body_is_empty(self):
        assert parse_invoice_response(["unexpected"]).is_empty


class TestBuildInvoiceItems:
    """Test conversion of invoice lines into stored items."""

    def test_unparseable_lines_are_skipped(self):
        data = InvoiceData(items=[
            InvoiceLine("150 token-based usage calls to claude-4-sonnet, totalling: $12.50", 1250),
            InvoiceLine("Mid-month usage paid", 2000),
            InvoiceLine("10 gpt-4o requests (free)", 0),
        ])
        skipped = []
        items = build_invoice_items(data, "2025-01-18", FETCHED_AT, skipped=skipped)

        assert [item.model_name for item in items] == ["claude-4-sonnet", "gpt-4o"]
        assert items[0].request_count == 150
        assert items[0].cost_cents == 1250
        assert items[0].billing_cycle == "2025-01-18"
        assert items[1].is_discounted is True
        assert skipped == ["Mid-month usage paid"]
