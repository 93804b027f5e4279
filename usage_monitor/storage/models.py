"""
Data models for storage layer.

Defines the four persisted record types and the aggregates read back from
them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from usage_monitor.core.cycles import cycle_label


class EventKind(Enum):
    """How an individual usage event was billed."""
    INCLUDED = "Included"
    ON_DEMAND = "On-Demand"
    ERRORED_NO_CHARGE = "Errored-No-Charge"


class AlertType(Enum):
    """Kinds of alerts the engine can raise."""
    THRESHOLD = "threshold"
    ON_DEMAND_SWITCH = "on-demand-switch"


@dataclass(frozen=True)
class UsageSnapshot:
    """One point-in-time usage measurement.

    Append-only: snapshots are written once per poll cycle and only ever
    removed by retention pruning.
    """
    timestamp: datetime
    billing_cycle_start: datetime
    requests_used: int
    requests_limit: int
    usage_percentage: float
    is_on_demand: bool
    on_demand_spend_cents: int
    raw_response: str = ""
    id: Optional[int] = None

    @property
    def billing_cycle(self) -> str:
        return cycle_label(self.billing_cycle_start)


@dataclass(frozen=True)
class InvoiceItem:
    """Aggregated billing line for one model within one billing cycle."""
    billing_cycle: str
    model_name: str
    request_count: int
    cost_cents: int
    is_discounted: bool
    fetched_at: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class UsageEvent:
    """One individually billed interaction.

    Identified by its natural key (event date, model, kind, total tokens);
    storing the same event twice is a no-op.
    """
    event_date: datetime
    billing_cycle: str
    kind: EventKind
    model: str
    input_with_cache_write: int
    input_without_cache_write: int
    cache_read: int
    output_tokens: int
    total_tokens: int
    cost: float
    fetched_at: datetime
    max_mode: str = ""
    id: Optional[int] = None

    @property
    def natural_key(self) -> Tuple[datetime, str, EventKind, int]:
        return (self.event_date, self.model, self.kind, self.total_tokens)


@dataclass(frozen=True)
class AlertRecord:
    """Ledger entry proving an alert was delivered."""
    alert_type: AlertType
    threshold_value: float
    billing_cycle: str
    timestamp: datetime


@dataclass(frozen=True)
class KindTotals:
    """Request, token and cost totals for one slice of events."""
    requests: int = 0
    tokens: int = 0
    cost: float = 0.0


@dataclass(frozen=True)
class UsageStats:
    """Per-kind and per-model totals for one billing cycle."""
    billing_cycle: str
    by_kind: Dict[str, KindTotals] = field(default_factory=dict)
    by_model: Dict[str, KindTotals] = field(default_factory=dict)

    def _kind(self, kind: EventKind) -> KindTotals:
        return self.by_kind.get(kind.value, KindTotals())

    @property
    def total_requests(self) -> int:
        return sum(t.requests for t in self.by_kind.values())

    @property
    def total_tokens(self) -> int:
        return sum(t.tokens for t in self.by_kind.values())

    @property
    def total_cost(self) -> float:
        return sum(t.cost for t in self.by_kind.values())

    @property
    def included_requests(self) -> int:
        return self._kind(EventKind.INCLUDED).requests

    @property
    def on_demand_requests(self) -> int:
        return self._kind(EventKind.ON_DEMAND).requests

    @property
    def included_cost(self) -> float:
        return self._kind(EventKind.INCLUDED).cost

    @property
    def on_demand_cost(self) -> float:
        return self._kind(EventKind.ON_DEMAND).cost


@dataclass(frozen=True)
class AggregateStats:
    """Cycle aggregate in the shape of the dashboard CSV export."""
    total_events: int = 0
    total_tokens: int = 0
    input_with_cache_write: int = 0
    input_without_cache_write: int = 0
    cache_read: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    max_single_request: float = 0.0

    @property
    def avg_cost_per_request(self) -> float:
        if self.total_events == 0:
            return 0.0
        return self.total_cost / self.total_events


@dataclass(frozen=True)
class ModelTokenTotals:
    """Input and output token totals for one model in a cycle."""
    model: str
    input_tokens: int
    output_tokens: int
    cost: float


@dataclass(frozen=True)
class CycleSummary:
    """Peak usage and invoice total for one billing cycle."""
    billing_cycle: str
    max_used: int = 0
    limit: int = 0
    max_percentage: float = 0.0
    total_on_demand_cents: int = 0

    @property
    def total_on_demand_usd(self) -> float:
        return self.total_on_demand_cents / 100.0
