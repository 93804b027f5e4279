"""
Poll cycle coordination.

A cycle fetches everything it needs first, resolves it, writes it in one
transaction, and only then evaluates alerts. At most one cycle runs at a
time, whether it was started by the timer or by a manual refresh.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from usage_monitor.api.client import UsageApiClient
from usage_monitor.api.events import RawEvent, fetch_usage_events
from usage_monitor.api.invoice import InvoiceData, build_invoice_items
from usage_monitor.storage.models import UsageSnapshot

from .cycles import cycle_end, cycle_label, shift_months, to_millis, utcnow
from .errors import (
    CredentialError,
    CycleCancelled,
    MonitorError,
    PersistenceError,
    ReconciliationWarning,
    SchemaError,
    TransportError,
    TruncatedFetchError,
)
from .resolver import fetch_cycle_invoice, resolve_usage

logger = logging.getLogger(__name__)

BACKFILL_CYCLES = 3


class CycleState(Enum):
    """Phase the coordinator is currently in."""
    IDLE = "idle"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    PERSISTING = "persisting"
    ALERTING = "alerting"


class CycleStatus(Enum):
    """How a requested cycle ended."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one ``run_cycle`` call."""
    status: CycleStatus
    snapshot: Optional[UsageSnapshot] = None
    events_stored: int = 0
    thresholds_alerted: Tuple[float, ...] = ()
    switch_alerted: bool = False
    warnings: Tuple[ReconciliationWarning, ...] = ()
    backfilled: Tuple[str, ...] = ()
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status is CycleStatus.COMPLETED


class _ClientSession:
    """API client for one cycle, rebuilt once if the token is rejected."""

    def __init__(self, credentials, factory: Callable[[str], UsageApiClient]):
        self._credentials = credentials
        self._factory = factory
        self._refreshed = False
        self.client: Optional[UsageApiClient] = None

    def __enter__(self) -> "_ClientSession":
        try:
            token = self._credentials.get()
        except CredentialError as e:
            logger.warning("No usable token (%s); refreshing credentials", e)
            self._refreshed = True
            self._credentials.invalidate()
            token = self._credentials.get()
        self.client = self._factory(token)
        return self

    def __exit__(self, *exc_info) -> None:
        if self.client is not None:
            self.client.close()

    def _reconnect(self) -> None:
        self._refreshed = True
        self._credentials.invalidate()
        token = self._credentials.get()
        self.client.close()
        self.client = self._factory(token)

    def call(self, operation: Callable[[UsageApiClient], object]):
        """Run ``operation`` against the client, retrying once on a rejected token."""
        try:
            return operation(self.client)
        except CredentialError as e:
            if self._refreshed:
                raise
            logger.warning("Token rejected (%s); refreshing and retrying", e)
            self._reconnect()
            return operation(self.client)


class PollCoordinator:
    """Runs poll cycles against the API, the repository and the alert engine."""

    def __init__(
        self,
        config,
        repository,
        credentials,
        alert_engine,
        client_factory: Callable[..., UsageApiClient] = UsageApiClient,
        clock: Callable[[], datetime] = utcnow,
        stop_event: Optional[threading.Event] = None,
    ):
        """Initialize the coordinator.

        Args:
            config: ``MonitorConfig``
            repository: ``UsageRepository``
            credentials: ``CredentialCache`` owned by this coordinator
            alert_engine: ``AlertEngine``
            client_factory: Builds a client from a token and the API settings
            clock: Returns the current UTC time
            stop_event: Shutdown signal checked at every I/O boundary
        """
        self.config = config
        self.repository = repository
        self.credentials = credentials
        self.alert_engine = alert_engine
        self._client_factory = client_factory
        self._clock = clock
        self._stop = stop_event or threading.Event()
        self._cycle_lock = threading.Lock()
        self._state = CycleState.IDLE

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def stop(self) -> None:
        self._stop.set()

    def refresh(self) -> CycleResult:
        """Manual refresh; dropped if a cycle is already running."""
        return self.run_cycle()

    def run_cycle(self, blocking: bool = False) -> CycleResult:
        """Run one poll cycle.

        Args:
            blocking: Wait for a running cycle to finish instead of
                dropping this request

        Returns:
            CycleResult; failures are reported here, never raised
        """
        if not self._cycle_lock.acquire(blocking=blocking):
            logger.info("Poll cycle already in progress; request dropped")
            return CycleResult(status=CycleStatus.SKIPPED)
        try:
            return self._run_cycle()
        except CycleCancelled as e:
            logger.info("Poll cycle cancelled: %s", e)
            return CycleResult(status=CycleStatus.CANCELLED, error=e)
        except MonitorError as e:
            logger.error("Poll cycle failed: %s", e)
            return CycleResult(status=CycleStatus.FAILED, error=e)
        except Exception as e:
            logger.exception("Unexpected error during poll cycle")
            return CycleResult(status=CycleStatus.FAILED, error=e)
        finally:
            self._state = CycleState.IDLE
            self._cycle_lock.release()

    def run_forever(self) -> None:
        """Run a cycle now and then every poll interval until ``stop_event`` is set."""
        interval = self.config.poll_interval
        logger.info("Monitoring started; polling every %.0f seconds", interval)
        while not self._stop.is_set():
            self.run_cycle()
            if self._stop.wait(interval):
                break
        logger.info("Monitoring stopped")

    def _check_cancel(self, boundary: str) -> None:
        if self._stop.is_set():
            raise CycleCancelled(f"stop requested before {boundary}")

    def _new_client(self, token: str) -> UsageApiClient:
        api = self.config.api
        return self._client_factory(
            token,
            base_url=api.base_url,
            timeout=api.timeout_seconds,
            default_request_limit=api.default_request_limit,
        )

    def _run_cycle(self) -> CycleResult:
        now = self._clock()
        first_run = self.repository.get_latest_snapshot() is None

        self._state = CycleState.FETCHING
        self._check_cancel("authentication")
        with _ClientSession(self.credentials, self._new_client) as session:
            self._check_cancel("usage request")
            coarse = session.call(lambda c: c.get_usage(self.config.api.account_id))
            cycle_start = coarse.billing_cycle_start
            billing_cycle = cycle_label(cycle_start)
            logger.info(
                "Billing cycle %s: %d/%d requests (%.1f%%)",
                billing_cycle, coarse.requests_used, coarse.requests_limit, coarse.usage_percentage,
            )

            self._check_cancel("invoice request")
            invoice = self._fetch_invoice(session, cycle_start, now)
            raw_events = invoice.usage_events
            if not raw_events:
                self._check_cancel("usage events request")
                raw_events = self._fetch_events(session, cycle_start)

            self._state = CycleState.RESOLVING
            resolution = resolve_usage(
                coarse,
                invoice.total_on_demand_cents,
                self.repository.invoice_total_cents(billing_cycle),
                raw_events,
                self.repository.get_usage_stats(billing_cycle).included_requests,
                cycle_start,
                now,
            )
            skipped: List[str] = []
            items = build_invoice_items(invoice, billing_cycle, now, skipped)
            if skipped:
                logger.debug("Skipped %d unparseable invoice lines: %s", len(skipped), skipped)
            snapshot = resolution.usage.to_snapshot(now)

            self._state = CycleState.PERSISTING
            self._check_cancel("persisting")
            stored = self.repository.record_poll(snapshot, items or None, resolution.events)
            logger.info(
                "Recorded snapshot for %s: %.1f%% used, on-demand=%s, $%.2f spend, %d new events",
                billing_cycle, snapshot.usage_percentage, snapshot.is_on_demand,
                snapshot.on_demand_spend_cents / 100, stored,
            )

            self._state = CycleState.ALERTING
            previous = self.repository.get_previous_snapshot()
            thresholds = self.alert_engine.check_thresholds(snapshot.usage_percentage, billing_cycle)
            switched = False
            if self.config.alerts.on_demand_critical:
                switched = self.alert_engine.check_on_demand_switch(previous, snapshot)

            self._prune(now)

            backfilled: Tuple[str, ...] = ()
            if first_run:
                backfilled = self._backfill(session, cycle_start, now)

        return CycleResult(
            status=CycleStatus.COMPLETED,
            snapshot=snapshot,
            events_stored=stored,
            thresholds_alerted=tuple(thresholds),
            switch_alerted=switched,
            warnings=resolution.warnings,
            backfilled=backfilled,
        )

    def _fetch_invoice(self, session: _ClientSession, cycle_start: datetime, now: datetime) -> InvoiceData:
        try:
            return session.call(lambda c: fetch_cycle_invoice(c, cycle_start, now))
        except (TransportError, SchemaError) as e:
            logger.warning("Invoice data unavailable, treating as empty: %s", e)
            return InvoiceData()

    def _fetch_events(self, session: _ClientSession, cycle_start: datetime) -> List[RawEvent]:
        start_ms = to_millis(cycle_start)
        end_ms = to_millis(cycle_end(cycle_start))
        try:
            return session.call(lambda c: fetch_usage_events(
                c, start_ms, end_ms,
                page_size=self.config.api.page_size,
                cancel=self._stop,
            ))
        except TruncatedFetchError as e:
            logger.warning(
                "Usage event fetch truncated at page %d; discarding %d partial events: %s",
                e.page, len(e.partial), e,
            )
        except (TransportError, SchemaError) as e:
            logger.warning("Usage events unavailable, using stored events: %s", e)
        return []

    def _prune(self, now: datetime) -> None:
        try:
            self.repository.prune(self.config.database.retention_days, now)
        except PersistenceError as e:
            logger.error("Retention prune failed: %s", e)

    def _backfill(self, session: _ClientSession, cycle_start: datetime, now: datetime) -> Tuple[str, ...]:
        """Store invoice items for the billing cycles before the first one seen."""
        logger.info("First run: fetching invoice data for the last %d billing cycles", BACKFILL_CYCLES)
        done = []
        for months_back in range(1, BACKFILL_CYCLES + 1):
            if self._stop.is_set():
                logger.info("Backfill interrupted by shutdown")
                break
            start = shift_months(cycle_start, -months_back)
            billing_cycle = cycle_label(start)
            try:
                invoice = session.call(
                    lambda c: c.get_monthly_invoice(start.month, start.year, cycle_start=start)
                )
                items = build_invoice_items(invoice, billing_cycle, now)
                if items:
                    self.repository.replace_invoice_items(billing_cycle, items)
                    logger.info("Saved %d invoice items for billing cycle %s", len(items), billing_cycle)
                done.append(billing_cycle)
            except MonitorError as e:
                logger.warning("Could not backfill billing cycle %s: %s", billing_cycle, e)
        return tuple(done)
