"""
Schema creation for the metrics database.

Every statement is idempotent so the schema can be applied on each start.
"""

import sqlite3

MIGRATIONS = [
    """CREATE TABLE IF NOT EXISTS usage_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        billing_cycle_start TEXT NOT NULL,
        requests_used INTEGER NOT NULL,
        requests_limit INTEGER NOT NULL,
        usage_percentage REAL NOT NULL,
        is_on_demand INTEGER NOT NULL DEFAULT 0,
        on_demand_spend_cents INTEGER NOT NULL DEFAULT 0,
        raw_response TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS alerts_sent (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        alert_type TEXT NOT NULL,
        threshold_value REAL NOT NULL DEFAULT 0,
        billing_cycle TEXT NOT NULL,
        UNIQUE(alert_type, threshold_value, billing_cycle)
    )""",
    """CREATE TABLE IF NOT EXISTS invoice_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        billing_cycle TEXT NOT NULL,
        model_name TEXT NOT NULL,
        request_count INTEGER NOT NULL,
        cost_cents INTEGER NOT NULL,
        is_discounted INTEGER NOT NULL DEFAULT 0,
        fetched_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS usage_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_date TEXT NOT NULL,
        billing_cycle TEXT NOT NULL,
        kind TEXT NOT NULL,
        model TEXT NOT NULL,
        max_mode TEXT,
        input_with_cache_write INTEGER NOT NULL DEFAULT 0,
        input_without_cache_write INTEGER NOT NULL DEFAULT 0,
        cache_read INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        cost REAL NOT NULL DEFAULT 0,
        fetched_at TEXT NOT NULL,
        UNIQUE(event_date, model, kind, total_tokens)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_usage_snapshots_timestamp ON usage_snapshots(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_usage_snapshots_cycle ON usage_snapshots(billing_cycle_start)",
    "CREATE INDEX IF NOT EXISTS idx_invoice_items_cycle ON invoice_items(billing_cycle)",
    "CREATE INDEX IF NOT EXISTS idx_usage_events_cycle ON usage_events(billing_cycle)",
    "CREATE INDEX IF NOT EXISTS idx_usage_events_kind ON usage_events(kind)",
    "CREATE INDEX IF NOT EXISTS idx_usage_events_date ON usage_events(event_date)",
]

TABLES = ("usage_snapshots", "alerts_sent", "invoice_items", "usage_events")


def run_migrations(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes that do not exist yet."""
    for statement in MIGRATIONS:
        conn.execute(statement)
    conn.commit()
