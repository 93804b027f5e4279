"""
Invoice response parsing.

Invoice line items only carry a free-text description and an amount in
cents; the model name and request count have to be read out of the text.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional

from usage_monitor.core.errors import InvoiceParseError
from usage_monitor.core.fields import decode, field as field_spec
from usage_monitor.storage.models import InvoiceItem

from .events import RawEvent, decode_event_records

MID_MONTH_PAYMENT_MARKER = "mid-month usage paid"

_TOKEN_BASED_PATTERN = re.compile(
    r"^(\d+)\s+token-based usage calls to\s+([^,]+?)"
    r"(?:,\s+totalling:?\s*\$([\d,]+(?:\.\d+)?)|\s*$)",
    re.IGNORECASE,
)
_REQUESTS_PATTERN = re.compile(r"^(\d+)\s+([\w.\-]+)\s+requests?\b", re.IGNORECASE)

LINE_FIELDS = (
    field_spec("description", "description", "Description"),
    field_spec("cents", "cents", "Cents", "amountCents", "amount_cents", kind="int"),
)


@dataclass(frozen=True)
class InvoiceLine:
    """Raw invoice line as returned by the API."""
    description: str
    cents: int

    @property
    def is_mid_month_payment(self) -> bool:
        return MID_MONTH_PAYMENT_MARKER in self.description.lower()

    @property
    def is_discounted(self) -> bool:
        text = self.description.lower()
        return "discount" in text or "free" in text


@dataclass(frozen=True)
class ParsedInvoiceLine:
    """Model and request count read from an invoice line description."""
    model: str
    count: int
    amount_cents: Optional[int] = None


@dataclass(frozen=True)
class InvoiceData:
    """One invoice response: line items plus any embedded usage events."""
    items: List[InvoiceLine] = field(default_factory=list)
    has_unpaid_mid_month_invoice: bool = False
    usage_events: List[RawEvent] = field(default_factory=list)

    @property
    def total_on_demand_cents(self) -> int:
        """Billed on-demand spend, excluding mid-month payment pseudo-items."""
        return sum(
            item.cents for item in self.items
            if item.cents > 0 and not item.is_mid_month_payment
        )

    @property
    def is_on_demand(self) -> bool:
        return self.total_on_demand_cents > 0

    @property
    def is_empty(self) -> bool:
        return not self.items and not self.usage_events


def parse_invoice_line(description: str) -> ParsedInvoiceLine:
    """Extract model name and request count from an invoice description.

    Two formats are recognised, in order:
    ``"<N> token-based usage calls to <model>, totalling: $<amount>"`` and
    ``"<N> <model> requests"``.

    Args:
        description: Free-text invoice line description

    Returns:
        ParsedInvoiceLine with model, count and, when present, the amount

    Raises:
        InvoiceParseError: If the description matches neither format
    """
    text = description.strip()
    match = _TOKEN_BASED_PATTERN.match(text)
    if match:
        amount_cents = None
        if match.group(3):
            amount_cents = round(float(match.group(3).replace(",", "")) * 100)
        return ParsedInvoiceLine(
            model=match.group(2).strip(),
            count=int(match.group(1)),
            amount_cents=amount_cents,
        )

    match = _REQUESTS_PATTERN.match(text)
    if match:
        return ParsedInvoiceLine(model=match.group(2), count=int(match.group(1)))

    raise InvoiceParseError(description)


def parse_invoice_response(body: Any) -> InvoiceData:
    """Build ``InvoiceData`` from a decoded invoice response body."""
    if not isinstance(body, Mapping):
        return InvoiceData()

    raw_items = body.get("items")
    if not isinstance(raw_items, list):
        raw_items = body.get("invoiceItems") or body.get("lineItems") or []

    items = []
    for raw in raw_items:
        values = decode(raw, LINE_FIELDS)
        if values["description"]:
            items.append(InvoiceLine(description=values["description"], cents=values["cents"]))

    raw_events = body.get("usageEvents")
    if raw_events is None:
        raw_events = body.get("usage_events")

    unpaid = body.get("hasUnpaidMidMonthInvoice", body.get("has_unpaid_mid_month_invoice", False))
    return InvoiceData(
        items=items,
        has_unpaid_mid_month_invoice=unpaid if isinstance(unpaid, bool) else str(unpaid).lower() == "true",
        usage_events=decode_event_records(raw_events),
    )


def build_invoice_items(
    data: InvoiceData,
    billing_cycle: str,
    fetched_at: datetime,
    skipped: Optional[List[str]] = None,
) -> List[InvoiceItem]:
    """Turn parseable invoice lines into storable items for one cycle.

    Lines that cannot be parsed (mid-month payments, credits, free text)
    are left out; their descriptions are appended to ``skipped`` when given.
    """
    items = []
    for line in data.items:
        try:
            parsed = parse_invoice_line(line.description)
        except InvoiceParseError:
            if skipped is not None:
                skipped.append(line.description)
            continue
        items.append(InvoiceItem(
            billing_cycle=billing_cycle,
            model_name=parsed.model,
            request_count=parsed.count,
            cost_cents=line.cents,
            is_discounted=line.is_discounted,
            fetched_at=fetched_at,
        ))
    return items
