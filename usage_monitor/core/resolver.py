"""
Multi-source usage resolution.

Three sources describe the same billing cycle and do not always agree:

- the coarse usage counter, trusted for the billing-cycle start;
- the invoice, trusted for on-demand spend;
- the event ledger, trusted for the real number of included requests when
  the coarse counter contradicts the on-demand flag.

``resolve_usage`` folds them into one ``UsageData`` view. It performs no
I/O and never mutates its inputs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Sequence, Tuple

from usage_monitor.api.client import CoarseUsage
from usage_monitor.api.events import RawEvent
from usage_monitor.api.invoice import InvoiceData
from usage_monitor.storage.models import EventKind, UsageEvent, UsageSnapshot

from .cycles import cycle_label, cycle_start_for
from .errors import CredentialError, MonitorError, ReconciliationWarning

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageData:
    """The single resolved usage view for one cycle."""
    billing_cycle_start: datetime
    requests_used: int
    requests_limit: int
    usage_percentage: float
    is_on_demand: bool
    on_demand_spend_cents: int
    raw_response: str = ""

    @property
    def billing_cycle(self) -> str:
        return cycle_label(self.billing_cycle_start)

    def to_snapshot(self, timestamp: datetime) -> UsageSnapshot:
        return UsageSnapshot(
            timestamp=timestamp,
            billing_cycle_start=self.billing_cycle_start,
            requests_used=self.requests_used,
            requests_limit=self.requests_limit,
            usage_percentage=self.usage_percentage,
            is_on_demand=self.is_on_demand,
            on_demand_spend_cents=self.on_demand_spend_cents,
            raw_response=self.raw_response,
        )


@dataclass(frozen=True)
class Resolution:
    """Result of resolving one cycle."""
    usage: UsageData
    events: Tuple[UsageEvent, ...] = ()
    warnings: Tuple[ReconciliationWarning, ...] = field(default_factory=tuple)


def assign_cycles(
    raw_events: Sequence[RawEvent],
    cycle_anchor: datetime,
    fetched_at: datetime,
) -> List[UsageEvent]:
    """Place each event in the billing cycle containing its own date."""
    return [
        raw.to_usage_event(cycle_label(cycle_start_for(raw.event_date, cycle_anchor)), fetched_at)
        for raw in raw_events
    ]


def resolve_usage(
    coarse: CoarseUsage,
    invoice_total_cents: int,
    persisted_item_cents: int,
    fetched_events: Sequence[RawEvent],
    persisted_included: int,
    cycle_anchor: datetime,
    fetched_at: datetime,
) -> Resolution:
    """Resolve the three usage sources into one view.

    Args:
        coarse: Counters from the usage endpoint
        invoice_total_cents: On-demand total from this poll's invoice
        persisted_item_cents: Sum of invoice items already stored for the cycle
        fetched_events: Events fetched during this poll
        persisted_included: Included events already stored for the cycle
        cycle_anchor: Start of any known billing cycle of the account
        fetched_at: Poll time stamped on the returned events

    Returns:
        Resolution with the usage view, the events to persist and any
        reconciliation warnings raised along the way
    """
    warnings: List[ReconciliationWarning] = []
    cycle = cycle_label(coarse.billing_cycle_start)
    events = assign_cycles(fetched_events, cycle_anchor, fetched_at)

    spend = max(invoice_total_cents, persisted_item_cents)
    if invoice_total_cents < persisted_item_cents:
        warnings.append(ReconciliationWarning(
            "monotonic-spend",
            f"invoice reports {invoice_total_cents} cents but {persisted_item_cents} "
            f"cents were already recorded for {cycle}; keeping the larger value",
        ))

    used = coarse.requests_used
    limit = coarse.requests_limit
    percentage = coarse.usage_percentage
    on_demand = coarse.is_on_demand or spend > 0

    if on_demand and (used == 0 or used < limit):
        fetched_included = len({
            e.natural_key for e in events
            if e.kind is EventKind.INCLUDED and e.billing_cycle == cycle
        })
        included = max(fetched_included, persisted_included)
        if included == 0:
            used = limit
            percentage = 100.0
        else:
            used = included
            percentage = included / limit * 100 if limit > 0 else 0.0
        warnings.append(ReconciliationWarning(
            "included-count",
            f"on-demand billing active but usage counter reports "
            f"{coarse.requests_used}/{limit}; using {used} included requests",
        ))

    for warning in warnings:
        logger.warning("Reconciliation: %s", warning)

    usage = UsageData(
        billing_cycle_start=coarse.billing_cycle_start,
        requests_used=used,
        requests_limit=limit,
        usage_percentage=percentage,
        is_on_demand=on_demand,
        on_demand_spend_cents=spend,
        raw_response=coarse.raw_response,
    )
    return Resolution(usage=usage, events=tuple(events), warnings=tuple(warnings))


def fetch_cycle_invoice(client, cycle_start: datetime, now: datetime) -> InvoiceData:
    """Fetch the invoice for the calendar month containing ``cycle_start``.

    When that fails and the current calendar month differs, the current
    month is tried instead. Cycles spanning a month boundary can be
    attributed to the wrong month by this fallback.

    Raises:
        CredentialError: The token was rejected
        MonitorError: Both lookups failed (the last error is re-raised)
    """
    try:
        return client.get_monthly_invoice(cycle_start.month, cycle_start.year, cycle_start=cycle_start)
    except CredentialError:
        raise
    except MonitorError as e:
        if (now.year, now.month) == (cycle_start.year, cycle_start.month):
            raise
        logger.warning(
            "Invoice lookup for %04d-%02d failed (%s); trying %04d-%02d",
            cycle_start.year, cycle_start.month, e, now.year, now.month,
        )
    return client.get_monthly_invoice(now.month, now.year)
