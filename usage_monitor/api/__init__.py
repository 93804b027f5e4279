"""
Remote API access for the usage monitor.

Provides the HTTP client, invoice parsing and the paginated event fetcher.
"""

from .client import CoarseUsage, UsageApiClient
from .events import RawEvent, fetch_usage_events
from .invoice import InvoiceData, parse_invoice_line

__all__ = [
    "CoarseUsage",
    "InvoiceData",
    "RawEvent",
    "UsageApiClient",
    "fetch_usage_events",
    "parse_invoice_line",
]
