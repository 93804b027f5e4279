"""
Repository pattern for data access.

Owns every durable record once written: the append-only snapshot log, the
per-cycle invoice items (replaced wholesale), the natural-key deduplicated
usage events and the alert ledger.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence

from usage_monitor.core.cycles import cycle_label, utcnow
from usage_monitor.core.errors import PersistenceError

from .db import DEFAULT_DB_PATH, from_db_time, get_connection, to_db_time
from .migrations import run_migrations
from .models import (
    AggregateStats,
    AlertRecord,
    AlertType,
    CycleSummary,
    EventKind,
    InvoiceItem,
    KindTotals,
    ModelTokenTotals,
    UsageEvent,
    UsageSnapshot,
    UsageStats,
)

logger = logging.getLogger(__name__)

_SNAPSHOT_COLUMNS = (
    "id, timestamp, billing_cycle_start, requests_used, requests_limit, "
    "usage_percentage, is_on_demand, on_demand_spend_cents, raw_response"
)

_EVENT_COLUMNS = (
    "id, event_date, billing_cycle, kind, model, max_mode, "
    "input_with_cache_write, input_without_cache_write, cache_read, "
    "output_tokens, total_tokens, cost, fetched_at"
)

_INSERT_EVENT = """
    INSERT OR IGNORE INTO usage_events
    (event_date, billing_cycle, kind, model, max_mode,
     input_with_cache_write, input_without_cache_write, cache_read,
     output_tokens, total_tokens, cost, fetched_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_ITEM = """
    INSERT INTO invoice_items
    (billing_cycle, model_name, request_count, cost_cents, is_discounted, fetched_at)
    VALUES (?, ?, ?, ?, ?, ?)
"""


def _row_to_snapshot(row) -> UsageSnapshot:
    return UsageSnapshot(
        id=row[0],
        timestamp=from_db_time(row[1]),
        billing_cycle_start=from_db_time(row[2]),
        requests_used=row[3],
        requests_limit=row[4],
        usage_percentage=row[5],
        is_on_demand=bool(row[6]),
        on_demand_spend_cents=row[7],
        raw_response=row[8] or "",
    )


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row[0],
        event_date=from_db_time(row[1]),
        billing_cycle=row[2],
        kind=EventKind(row[3]),
        model=row[4],
        max_mode=row[5] or "",
        input_with_cache_write=row[6],
        input_without_cache_write=row[7],
        cache_read=row[8],
        output_tokens=row[9],
        total_tokens=row[10],
        cost=row[11],
        fetched_at=from_db_time(row[12]),
    )


class UsageRepository:
    """Repository for accessing and managing usage monitor data.

    Opens a connection per call. Writes are serialised by a lock and each
    write operation is a single transaction, so a failure or crash never
    leaves a half-applied change behind.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a write inside one transaction; storage errors become PersistenceError."""
        with self._lock:
            try:
                conn = get_connection(self.db_path)
            except (sqlite3.Error, OSError) as e:
                raise PersistenceError(f"{operation}: {e}") from e
            try:
                conn.execute("BEGIN TRANSACTION")
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"{operation}: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                run_migrations(conn)
            except sqlite3.Error as e:
                raise PersistenceError(f"running migrations: {e}") from e
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(self, snapshot: UsageSnapshot) -> None:
        """Append a usage snapshot to the log."""
        with self._transaction("saving usage snapshot") as conn:
            self._insert_snapshot(conn, snapshot)

    @staticmethod
    def _insert_snapshot(conn: sqlite3.Connection, snapshot: UsageSnapshot) -> None:
        conn.execute(
            """
            INSERT INTO usage_snapshots
            (timestamp, billing_cycle_start, requests_used, requests_limit,
             usage_percentage, is_on_demand, on_demand_spend_cents, raw_response)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                to_db_time(snapshot.timestamp),
                to_db_time(snapshot.billing_cycle_start),
                snapshot.requests_used,
                snapshot.requests_limit,
                snapshot.usage_percentage,
                int(snapshot.is_on_demand),
                snapshot.on_demand_spend_cents,
                snapshot.raw_response,
            ),
        )

    def _snapshot_at(self, offset: int) -> Optional[UsageSnapshot]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM usage_snapshots "
                "ORDER BY timestamp DESC, id DESC LIMIT 1 OFFSET ?",
                (offset,),
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def get_latest_snapshot(self) -> Optional[UsageSnapshot]:
        """Most recent snapshot, or None when nothing has been recorded."""
        return self._snapshot_at(0)

    def get_previous_snapshot(self) -> Optional[UsageSnapshot]:
        """Second most recent snapshot, used for transition detection."""
        return self._snapshot_at(1)

    def count_snapshots(self) -> int:
        with self._read() as conn:
            return conn.execute("SELECT COUNT(*) FROM usage_snapshots").fetchone()[0]

    # ------------------------------------------------------------------
    # Invoice items
    # ------------------------------------------------------------------

    def replace_invoice_items(self, billing_cycle: str, items: Sequence[InvoiceItem]) -> None:
        """Replace every invoice item of a billing cycle with ``items``.

        The delete and the inserts share one transaction: readers see
        either the old set or the new set, never a partial one.

        Args:
            billing_cycle: Cycle whose items are replaced
            items: Complete new set of items for the cycle
        """
        with self._transaction("replacing invoice items") as conn:
            self._replace_items(conn, billing_cycle, items)

    @staticmethod
    def _replace_items(conn: sqlite3.Connection, billing_cycle: str, items: Sequence[InvoiceItem]) -> None:
        conn.execute("DELETE FROM invoice_items WHERE billing_cycle = ?", (billing_cycle,))
        conn.executemany(
            _INSERT_ITEM,
            [
                (
                    billing_cycle,
                    item.model_name,
                    item.request_count,
                    item.cost_cents,
                    int(item.is_discounted),
                    to_db_time(item.fetched_at),
                )
                for item in items
            ],
        )

    def get_invoice_items(self, billing_cycle: str) -> List[InvoiceItem]:
        """All invoice items stored for a billing cycle."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT id, billing_cycle, model_name, request_count, cost_cents,
                       is_discounted, fetched_at
                FROM invoice_items
                WHERE billing_cycle = ?
                ORDER BY cost_cents DESC, model_name
                """,
                (billing_cycle,),
            ).fetchall()
        return [
            InvoiceItem(
                id=r[0],
                billing_cycle=r[1],
                model_name=r[2],
                request_count=r[3],
                cost_cents=r[4],
                is_discounted=bool(r[5]),
                fetched_at=from_db_time(r[6]),
            )
            for r in rows
        ]

    def invoice_total_cents(self, billing_cycle: str) -> int:
        """Sum of stored invoice item costs for a billing cycle."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(cost_cents), 0) FROM invoice_items WHERE billing_cycle = ?",
                (billing_cycle,),
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Usage events
    # ------------------------------------------------------------------

    def save_usage_events(self, events: Sequence[UsageEvent]) -> int:
        """Insert events that are not stored yet.

        Events already present under the same natural key are skipped
        silently.

        Returns:
            Number of rows actually inserted
        """
        if not events:
            return 0
        with self._transaction("saving usage events") as conn:
            return self._insert_events(conn, events)

    @staticmethod
    def _insert_events(conn: sqlite3.Connection, events: Sequence[UsageEvent]) -> int:
        before = conn.total_changes
        conn.executemany(
            _INSERT_EVENT,
            [
                (
                    to_db_time(e.event_date),
                    e.billing_cycle,
                    e.kind.value,
                    e.model,
                    e.max_mode,
                    e.input_with_cache_write,
                    e.input_without_cache_write,
                    e.cache_read,
                    e.output_tokens,
                    e.total_tokens,
                    e.cost,
                    to_db_time(e.fetched_at),
                )
                for e in events
            ],
        )
        return conn.total_changes - before

    def get_usage_events(self, billing_cycle: str) -> List[UsageEvent]:
        """All events of a billing cycle, newest first."""
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM usage_events "
                "WHERE billing_cycle = ? ORDER BY event_date DESC",
                (billing_cycle,),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_usage_events_between(self, start: datetime, end: datetime) -> List[UsageEvent]:
        """Events with ``start <= event_date < end``, newest first."""
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM usage_events "
                "WHERE event_date >= ? AND event_date < ? ORDER BY event_date DESC",
                (to_db_time(start), to_db_time(end)),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def count_usage_events(self) -> int:
        with self._read() as conn:
            return conn.execute("SELECT COUNT(*) FROM usage_events").fetchone()[0]

    def get_usage_stats(self, billing_cycle: str) -> UsageStats:
        """Per-kind and per-model request, token and cost totals.

        Args:
            billing_cycle: Cycle to aggregate

        Returns:
            UsageStats for the cycle (empty when no events are stored)
        """
        with self._read() as conn:
            kind_rows = conn.execute(
                """
                SELECT kind, COUNT(*), COALESCE(SUM(total_tokens), 0), COALESCE(SUM(cost), 0)
                FROM usage_events WHERE billing_cycle = ? GROUP BY kind
                """,
                (billing_cycle,),
            ).fetchall()
            model_rows = conn.execute(
                """
                SELECT model, COUNT(*), COALESCE(SUM(total_tokens), 0), COALESCE(SUM(cost), 0)
                FROM usage_events WHERE billing_cycle = ? GROUP BY model
                """,
                (billing_cycle,),
            ).fetchall()

        def _totals(rows) -> Dict[str, KindTotals]:
            return {r[0]: KindTotals(requests=r[1], tokens=int(r[2]), cost=float(r[3])) for r in rows}

        return UsageStats(
            billing_cycle=billing_cycle,
            by_kind=_totals(kind_rows),
            by_model=_totals(model_rows),
        )

    def get_aggregate_stats(self, billing_cycle: str) -> AggregateStats:
        """Aggregate token and cost figures for a cycle."""
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*),
                       COALESCE(SUM(total_tokens), 0),
                       COALESCE(SUM(input_with_cache_write), 0),
                       COALESCE(SUM(input_without_cache_write), 0),
                       COALESCE(SUM(cache_read), 0),
                       COALESCE(SUM(output_tokens), 0),
                       COALESCE(SUM(cost), 0),
                       COALESCE(MAX(cost), 0)
                FROM usage_events WHERE billing_cycle = ?
                """,
                (billing_cycle,),
            ).fetchone()
        return AggregateStats(
            total_events=row[0],
            total_tokens=int(row[1]),
            input_with_cache_write=int(row[2]),
            input_without_cache_write=int(row[3]),
            cache_read=int(row[4]),
            output_tokens=int(row[5]),
            total_cost=float(row[6]),
            max_single_request=float(row[7]),
        )

    def get_model_token_totals(self, billing_cycle: str) -> List[ModelTokenTotals]:
        """Input (all input counters) and output tokens per model."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT model,
                       COALESCE(SUM(input_with_cache_write + input_without_cache_write + cache_read), 0),
                       COALESCE(SUM(output_tokens), 0),
                       COALESCE(SUM(cost), 0)
                FROM usage_events WHERE billing_cycle = ?
                GROUP BY model ORDER BY model
                """,
                (billing_cycle,),
            ).fetchall()
        return [
            ModelTokenTotals(model=r[0], input_tokens=int(r[1]), output_tokens=int(r[2]), cost=float(r[3]))
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Alert ledger
    # ------------------------------------------------------------------

    def alert_already_sent(self, alert_type: AlertType, threshold: float, billing_cycle: str) -> bool:
        """Whether the ledger holds an entry for this alert in this cycle."""
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM alerts_sent
                WHERE alert_type = ? AND threshold_value = ? AND billing_cycle = ?
                """,
                (alert_type.value, float(threshold), billing_cycle),
            ).fetchone()
        return row[0] > 0

    def record_alert(
        self,
        alert_type: AlertType,
        threshold: float,
        billing_cycle: str,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Record a delivered alert.

        Uniqueness per (type, threshold, cycle) is enforced by the schema,
        so a duplicate record is ignored rather than stored twice.

        Returns:
            True if a new ledger entry was written
        """
        with self._transaction("recording alert") as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO alerts_sent
                (timestamp, alert_type, threshold_value, billing_cycle)
                VALUES (?, ?, ?, ?)
                """,
                (to_db_time(timestamp or utcnow()), alert_type.value, float(threshold), billing_cycle),
            )
            return cursor.rowcount == 1

    def get_alerts(self, billing_cycle: str) -> List[AlertRecord]:
        """Ledger entries for one cycle, oldest first."""
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT alert_type, threshold_value, billing_cycle, timestamp
                FROM alerts_sent
                WHERE billing_cycle = ?
                ORDER BY timestamp, threshold_value
                """,
                (billing_cycle,),
            ).fetchall()
        return [
            AlertRecord(
                alert_type=AlertType(r[0]),
                threshold_value=float(r[1]),
                billing_cycle=r[2],
                timestamp=from_db_time(r[3]),
            )
            for r in rows
        ]

    def count_alerts(self, billing_cycle: Optional[str] = None) -> int:
        with self._read() as conn:
            if billing_cycle is None:
                return conn.execute("SELECT COUNT(*) FROM alerts_sent").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM alerts_sent WHERE billing_cycle = ?", (billing_cycle,)
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Whole-cycle writes and maintenance
    # ------------------------------------------------------------------

    def record_poll(
        self,
        snapshot: UsageSnapshot,
        items: Optional[Sequence[InvoiceItem]] = None,
        events: Sequence[UsageEvent] = (),
    ) -> int:
        """Persist everything one poll cycle produced in a single transaction.

        Args:
            snapshot: Snapshot to append
            items: Complete invoice item set for the snapshot's cycle, or
                None to leave stored items untouched
            events: Usage events to insert if absent

        Returns:
            Number of new usage events stored
        """
        with self._transaction("recording poll") as conn:
            self._insert_snapshot(conn, snapshot)
            if items is not None:
                self._replace_items(conn, snapshot.billing_cycle, items)
            return self._insert_events(conn, events) if events else 0

    def prune(self, retention_days: int, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete rows older than the retention window from all four tables.

        One cutoff is computed and shared by every table so snapshots,
        alerts, invoice items and events age out together.

        Args:
            retention_days: Number of days to keep
            now: Reference time (defaults to the current time)

        Returns:
            Rows deleted per table
        """
        if retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        cutoff = to_db_time((now or utcnow()) - timedelta(days=retention_days))
        statements = {
            "usage_snapshots": "DELETE FROM usage_snapshots WHERE timestamp < ?",
            "alerts_sent": "DELETE FROM alerts_sent WHERE timestamp < ?",
            "invoice_items": "DELETE FROM invoice_items WHERE fetched_at < ?",
            "usage_events": "DELETE FROM usage_events WHERE fetched_at < ?",
        }
        deleted: Dict[str, int] = {}
        with self._transaction("pruning old data") as conn:
            for table, sql in statements.items():
                deleted[table] = conn.execute(sql, (cutoff,)).rowcount
        if any(deleted.values()):
            logger.info("Pruned rows older than %s: %s", cutoff, deleted)
        return deleted

    def get_cycle_summary(self, billing_cycle_start: datetime) -> CycleSummary:
        """Peak snapshot values and invoice total for one billing cycle."""
        label = cycle_label(billing_cycle_start)
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT MAX(requests_used), MAX(requests_limit), MAX(usage_percentage)
                FROM usage_snapshots WHERE billing_cycle_start = ?
                """,
                (to_db_time(billing_cycle_start),),
            ).fetchone()
        return CycleSummary(
            billing_cycle=label,
            max_used=row[0] or 0,
            limit=row[1] or 0,
            max_percentage=row[2] or 0.0,
            total_on_demand_cents=self.invoice_total_cents(label),
        )
