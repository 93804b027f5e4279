"""
Alert ledger and engine.

Threshold alerts are delivered at most once per (threshold, billing cycle):
the ledger entry is written only after the sink accepted the alert, so a
failed delivery is retried on the next cycle. The on-demand switch alert is
edge-triggered on consecutive snapshots and keeps no ledger entry.
"""

import logging
from typing import List, Optional, Protocol, Sequence

from rich.console import Console
from rich.panel import Panel

from usage_monitor.storage.models import AlertType, UsageSnapshot

from .errors import NotificationError, PersistenceError

logger = logging.getLogger(__name__)

THRESHOLD_TITLE = "Cursor Usage Alert"
SWITCH_TITLE = "CRITICAL: Cursor On-Demand Active"
DEFAULT_SOUND = "default"
SWITCH_SOUND = "Basso"


class NotificationSink(Protocol):
    """Anything that can show an alert to the user.

    Implementations raise ``NotificationError`` when delivery fails.
    """

    def deliver(self, title: str, body: str, sound: str) -> None:
        ...


class ConsoleNotifier:
    """Renders alerts as rich panels on the console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)

    def deliver(self, title: str, body: str, sound: str) -> None:
        style = "bold red" if title.startswith("CRITICAL") else "yellow"
        try:
            self.console.print(Panel(body, title=title, border_style=style))
        except OSError as e:
            raise NotificationError(f"Could not write alert to console: {e}") from e


class NullNotifier:
    """Discards alerts. Useful for headless runs and tests."""

    def deliver(self, title: str, body: str, sound: str) -> None:
        logger.debug("Dropping alert %r: %s", title, body)


class AlertEngine:
    """Decides which alerts are due and delivers them."""

    def __init__(
        self,
        sink: NotificationSink,
        repository,
        thresholds: Sequence[float],
        default_sound: str = DEFAULT_SOUND,
        switch_sound: str = SWITCH_SOUND,
    ):
        """Initialize the engine.

        Args:
            sink: Where alerts are delivered
            repository: ``UsageRepository`` holding the alert ledger
            thresholds: Usage percentages that trigger an alert
            default_sound: Sound for threshold alerts
            switch_sound: Sound for the on-demand switch alert
        """
        self.sink = sink
        self.repository = repository
        self.thresholds = sorted(float(t) for t in thresholds)
        self.default_sound = default_sound or DEFAULT_SOUND
        self.switch_sound = switch_sound

    def check_thresholds(self, percentage: float, billing_cycle: str) -> List[float]:
        """Deliver every crossed threshold not yet in the ledger for this cycle.

        Args:
            percentage: Resolved usage percentage
            billing_cycle: Cycle label the ledger entries are keyed on

        Returns:
            Thresholds delivered by this call
        """
        delivered = []
        for threshold in self.thresholds:
            if percentage < threshold:
                break
            if self.repository.alert_already_sent(AlertType.THRESHOLD, threshold, billing_cycle):
                continue

            message = f"Usage at {percentage:.1f}% ({threshold:g}% threshold)"
            try:
                self.sink.deliver(THRESHOLD_TITLE, message, self.default_sound)
            except NotificationError as e:
                logger.error("Failed to deliver %g%% alert: %s", threshold, e)
                continue

            delivered.append(threshold)
            try:
                self.repository.record_alert(AlertType.THRESHOLD, threshold, billing_cycle)
            except PersistenceError as e:
                logger.error("Delivered %g%% alert but could not record it: %s", threshold, e)
        return delivered

    def check_on_demand_switch(
        self,
        previous: Optional[UsageSnapshot],
        current: UsageSnapshot,
    ) -> bool:
        """Alert when billing moves from included to on-demand.

        Returns:
            True if the switch alert was delivered
        """
        if previous is None or previous.is_on_demand or not current.is_on_demand:
            return False

        message = (
            "Billing switched from Included to On-Demand. "
            f"Current spend: ${current.on_demand_spend_cents / 100:.2f}"
        )
        try:
            self.sink.deliver(SWITCH_TITLE, message, self.switch_sound)
        except NotificationError as e:
            logger.error("Failed to deliver on-demand switch alert: %s", e)
            return False
        return True
