"""
Usage event decoding and the paginated event fetcher.

The events endpoint returns at most one page per request and only reports
the total number of events on the first page. The fetcher walks pages
until a short page arrives or the reported total is reached.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from usage_monitor.core.errors import CycleCancelled, TransportError, TruncatedFetchError
from usage_monitor.core.fields import decode, decode_field, field
from usage_monitor.storage.models import EventKind, UsageEvent

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 1000

# tokenUsage.totalCents is in cents: 19.09 means $0.1909
TOKEN_CENTS_DIVISOR = 100.0

EVENT_FIELDS = (
    field("timestamp_ms", "timestamp", "timestampMs", "timestamp_ms", kind="epoch_ms"),
    field("date", "date", "Date", "eventDate", "event_date", kind="datetime"),
    field("kind", "kind", "Kind"),
    field("model", "model", "Model"),
    field("max_mode", "maxMode", "Max Mode", "max_mode"),
    field(
        "input_with_cache_write",
        "tokenUsage.cacheWriteTokens", "inputWithCacheWrite", "Input (w/ Cache Write)",
        "InputWithCacheWrite", "input_with_cache_write",
        kind="int",
    ),
    field(
        "input_without_cache_write",
        "tokenUsage.inputTokens", "inputWithoutCacheWrite", "Input (w/o Cache Write)",
        "InputWithoutCacheWrite", "input_without_cache_write",
        kind="int",
    ),
    field(
        "cache_read",
        "tokenUsage.cacheReadTokens", "cacheRead", "Cache Read", "CacheRead", "cache_read",
        kind="int",
    ),
    field(
        "output_tokens",
        "tokenUsage.outputTokens", "outputTokens", "Output Tokens", "OutputTokens", "output_tokens",
        kind="int",
    ),
    field(
        "total_tokens",
        "totalTokens", "Total Tokens", "TotalTokens", "total_tokens", "tokenUsage.totalTokens",
        kind="int",
    ),
    field("currency_cost", "usageBasedCosts", "Usage Based Costs", "usage_based_costs", kind="money"),
    field("token_cents", "tokenUsage.totalCents", "tokenUsage.total_cents", kind="float"),
    field("direct_cost", "cost", "Cost", "totalCost", "total_cost", "costUSD", kind="money"),
)

TOTAL_COUNT_FIELD = field(
    "total", "totalUsageEventsCount", "total_usage_events_count", "totalCount", kind="int", default=None
)

_KIND_ALIASES = {
    "usage_event_kind_usage_based": EventKind.ON_DEMAND,
    "on-demand": EventKind.ON_DEMAND,
    "on demand": EventKind.ON_DEMAND,
    "usage-based": EventKind.ON_DEMAND,
    "usage_based": EventKind.ON_DEMAND,
    "usage_event_kind_errored_not_charged": EventKind.ERRORED_NO_CHARGE,
    "errored, no charge": EventKind.ERRORED_NO_CHARGE,
    "errored-no-charge": EventKind.ERRORED_NO_CHARGE,
    "errored_no_charge": EventKind.ERRORED_NO_CHARGE,
}

# Preference order of cost sources; the first positive value wins. Included
# events are priced the same way: they are not billed separately but still
# carry a cost.
COST_SOURCES = ("currency_cost", "token_cents", "direct_cost")


def normalize_kind(raw: str) -> EventKind:
    """Map any known spelling of an event kind to ``EventKind``.

    Unknown and empty kinds count as included usage.
    """
    return _KIND_ALIASES.get(raw.strip().lower(), EventKind.INCLUDED)


@dataclass(frozen=True)
class RawEvent:
    """A decoded event that has not been assigned to a billing cycle yet."""
    event_date: datetime
    kind: EventKind
    model: str
    input_with_cache_write: int
    input_without_cache_write: int
    cache_read: int
    output_tokens: int
    total_tokens: int
    cost: float
    max_mode: str = ""

    def to_usage_event(self, billing_cycle: str, fetched_at: datetime) -> UsageEvent:
        return UsageEvent(
            event_date=self.event_date,
            billing_cycle=billing_cycle,
            kind=self.kind,
            model=self.model,
            max_mode=self.max_mode,
            input_with_cache_write=self.input_with_cache_write,
            input_without_cache_write=self.input_without_cache_write,
            cache_read=self.cache_read,
            output_tokens=self.output_tokens,
            total_tokens=self.total_tokens,
            cost=self.cost,
            fetched_at=fetched_at,
        )


def _event_cost(values: Dict[str, Any]) -> float:
    for source in COST_SOURCES:
        amount = values[source]
        if source == "token_cents":
            amount = amount / TOKEN_CENTS_DIVISOR
        if amount > 0:
            return round(amount, 6)
    return 0.0


def decode_event_record(record: Mapping[str, Any]) -> Optional[RawEvent]:
    """Decode one raw event record.

    Malformed fields fall back to zero values. A record without any usable
    timestamp cannot be placed in a cycle or deduplicated, so it yields
    None instead.
    """
    values = decode(record, EVENT_FIELDS)
    event_date = values["timestamp_ms"] or values["date"]
    if event_date is None:
        logger.warning("Skipping usage event without a timestamp: %.200r", record)
        return None

    kind = normalize_kind(values["kind"])
    counters = (
        values["input_with_cache_write"],
        values["input_without_cache_write"],
        values["cache_read"],
        values["output_tokens"],
    )
    total_tokens = values["total_tokens"] if values["total_tokens"] > 0 else sum(counters)

    return RawEvent(
        event_date=event_date,
        kind=kind,
        model=values["model"] or "unknown",
        max_mode=values["max_mode"],
        input_with_cache_write=counters[0],
        input_without_cache_write=counters[1],
        cache_read=counters[2],
        output_tokens=counters[3],
        total_tokens=total_tokens,
        cost=_event_cost(values),
    )


def decode_event_records(records: Any) -> List[RawEvent]:
    """Decode a list of raw records, dropping the ones that cannot be placed."""
    if not isinstance(records, list):
        return []
    events = []
    for record in records:
        event = decode_event_record(record)
        if event is not None:
            events.append(event)
    return events


def fetch_usage_events(
    client,
    start_ms: int,
    end_ms: int,
    page_size: int = DEFAULT_PAGE_SIZE,
    cancel: Optional[threading.Event] = None,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> List[RawEvent]:
    """Fetch every usage event in ``[start_ms, end_ms)``.

    The total reported on page 1 is the only one trusted. Fetching stops on
    the first page shorter than ``page_size``, or once the number of records
    received reaches the reported total.

    Args:
        client: ``UsageApiClient`` (anything with ``get_usage_events_page``)
        start_ms: Range start in epoch milliseconds
        end_ms: Range end in epoch milliseconds
        page_size: Records requested per page
        cancel: Event checked before each request
        max_pages: Upper bound on requests against a misbehaving server

    Returns:
        Decoded events in the order the server returned them

    Raises:
        CredentialError: The token was rejected on any page
        TransportError: Page 1 failed
        TruncatedFetchError: A later page failed or ``max_pages`` was hit;
            the partial result is attached but must not be persisted
        CycleCancelled: ``cancel`` was set
    """
    if page_size <= 0:
        raise ValueError("page_size must be > 0")

    events: List[RawEvent] = []
    received = 0
    total: Optional[int] = None
    page = 1

    while True:
        if cancel is not None and cancel.is_set():
            raise CycleCancelled(f"event fetch cancelled before page {page}")
        if page > max_pages:
            raise TruncatedFetchError(
                f"stopped after {max_pages} pages without reaching the end",
                partial=events,
                page=page,
            )

        try:
            body = client.get_usage_events_page(start_ms, end_ms, page, page_size)
        except TruncatedFetchError:
            raise
        except TransportError as e:
            if page == 1:
                raise
            raise TruncatedFetchError(
                f"event fetch failed on page {page}: {e}",
                partial=events,
                page=page,
                status_code=e.status_code,
            ) from e

        if not isinstance(body, Mapping):
            body = {}
        if page == 1:
            reported = decode_field(body, TOTAL_COUNT_FIELD)
            total = reported if reported and reported > 0 else None
            logger.debug("Usage events reported by server: %s", total)

        records = body.get("usageEventsDisplay")
        if not isinstance(records, list):
            if page == 1:
                logger.debug("No usageEventsDisplay array in response")
            break

        received += len(records)
        events.extend(decode_event_records(records))

        if len(records) < page_size:
            break
        if total is not None and received >= total:
            break
        page += 1

    logger.info("Fetched %d usage events across %d page(s)", len(events), page)
    return events
