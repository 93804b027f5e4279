"""
Import of the dashboard's usage CSV export.

Rows go through the same tolerant decoder as API events and are stored
with the same natural-key deduplication, so importing a file twice, or
importing events the poller already fetched, adds nothing.
"""

import csv
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from usage_monitor.api.events import decode_event_record
from usage_monitor.core.cycles import utcnow
from usage_monitor.core.errors import CsvImportError
from usage_monitor.core.resolver import assign_cycles

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("Date", "Kind", "Model")


@dataclass(frozen=True)
class ImportSummary:
    """What an import run read and stored."""
    rows: int
    inserted: int
    skipped: int
    cycles: Tuple[str, ...]

    @property
    def duplicates(self) -> int:
        return self.rows - self.skipped - self.inserted


def import_usage_csv(
    path: str,
    repository,
    anchor: datetime,
    fetched_at: Optional[datetime] = None,
) -> ImportSummary:
    """Import a usage export into the event ledger.

    Args:
        path: CSV file exported from the usage dashboard
        repository: ``UsageRepository`` to write to
        anchor: Start of any known billing cycle, used to place each event
        fetched_at: Import time stamped on the rows (defaults to now)

    Returns:
        ImportSummary with row, insert and skip counts

    Raises:
        CsvImportError: If the file cannot be read or lacks a required column
    """
    csv_path = Path(path).expanduser()
    try:
        with open(csv_path, 'r', encoding='utf-8-sig', newline='') as f:
            reader = csv.DictReader(f)
            header = [name.strip() for name in (reader.fieldnames or [])]
            missing = [column for column in REQUIRED_COLUMNS if column not in header]
            if missing:
                raise CsvImportError(f"CSV missing required columns: {', '.join(missing)}")
            records = [
                {(k or "").strip(): v for k, v in row.items()}
                for row in reader
            ]
    except OSError as e:
        raise CsvImportError(f"Could not read {csv_path}: {e}") from e
    except csv.Error as e:
        raise CsvImportError(f"Malformed CSV in {csv_path}: {e}") from e

    raw_events = []
    skipped = 0
    for line_number, record in enumerate(records, start=2):
        event = decode_event_record(record)
        if event is None:
            logger.warning("Skipping row %d: no usable date", line_number)
            skipped += 1
            continue
        raw_events.append(event)

    events = assign_cycles(raw_events, anchor, fetched_at or utcnow())
    inserted = repository.save_usage_events(events)
    cycles: List[str] = sorted({e.billing_cycle for e in events})

    logger.info(
        "Imported %d of %d rows from %s (%d skipped) across cycles %s",
        inserted, len(records), csv_path, skipped, ", ".join(cycles) or "-",
    )
    return ImportSummary(
        rows=len(records),
        inserted=inserted,
        skipped=skipped,
        cycles=tuple(cycles),
    )
