"""
HTTP client for the remote usage-billing API.

One client wraps one ``httpx.Client`` and is meant to live for a single
poll cycle; use it as a context manager so the connection is torn down
when the cycle ends.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from usage_monitor.core.cycles import to_millis
from usage_monitor.core.errors import CredentialError, SchemaError, TransportError
from usage_monitor.core.fields import decode, field

from .invoice import InvoiceData, parse_invoice_response

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cursor.com"
DEFAULT_TIMEOUT = 30.0
DEFAULT_REQUEST_LIMIT = 500

USAGE_PATH = "/api/usage"
INVOICE_PATH = "/api/dashboard/get-monthly-invoice"
EVENTS_PATH = "/api/dashboard/get-filtered-usage-events"

USAGE_FIELDS = (
    field("requests_total", "gpt-4.numRequestsTotal", "gpt-4.num_requests_total", kind="int"),
    field("requests", "gpt-4.numRequests", "gpt-4.num_requests", kind="int"),
    field("limit", "gpt-4.maxRequestUsage", "gpt-4.max_request_usage", kind="int"),
    field("tokens", "gpt-4.numTokens", "gpt-4.num_tokens", kind="int"),
    field("start_of_month", "startOfMonth", "start_of_month", "billingCycleStart", kind="datetime"),
)


@dataclass(frozen=True)
class CoarseUsage:
    """Request counters as reported by the usage endpoint."""
    requests_used: int
    requests_limit: int
    usage_percentage: float
    billing_cycle_start: datetime
    is_on_demand: bool
    tokens_used: int = 0
    raw_response: str = ""


def _preview(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class UsageApiClient:
    """Authenticated access to the usage, invoice and event endpoints."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        default_request_limit: int = DEFAULT_REQUEST_LIMIT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            token: Bearer token for the account
            base_url: API root
            timeout: Per-request timeout in seconds
            default_request_limit: Limit assumed when the API reports none
            transport: Optional httpx transport (used by tests)
        """
        if not token:
            raise CredentialError("an API token is required")
        self.default_request_limit = default_request_limit
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    def __enter__(self) -> "UsageApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Raises:
            CredentialError: On 401 or 403
            TransportError: On network failure, other non-2xx status, or a
                body that is not JSON
        """
        try:
            resp = self._http.request(method, path, params=params, json=payload)
        except httpx.RequestError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if resp.status_code in (401, 403):
            raise CredentialError(f"{method} {path} rejected the token (status {resp.status_code})")
        if not resp.is_success:
            raise TransportError(
                f"API returned status {resp.status_code}: {_preview(resp.text)}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"{method} {path} returned invalid JSON: {_preview(resp.text)}") from e

    def get_usage(self, account_id: str) -> CoarseUsage:
        """Fetch the coarse request counters for an account.

        Args:
            account_id: Opaque account identifier

        Returns:
            CoarseUsage with the reported counts and billing-cycle start

        Raises:
            SchemaError: If the billing-cycle start is missing or invalid
        """
        body = self._request("GET", USAGE_PATH, params={"user": account_id})
        values = decode(body, USAGE_FIELDS)

        start = values["start_of_month"]
        if start is None:
            raise SchemaError("usage response has no usable startOfMonth")

        limit = values["limit"] if values["limit"] > 0 else self.default_request_limit
        used = values["requests_total"] or values["requests"]
        percentage = used / limit * 100 if limit > 0 else 0.0

        logger.debug("Usage endpoint: %d/%d requests, cycle start %s", used, limit, start.isoformat())
        return CoarseUsage(
            requests_used=used,
            requests_limit=limit,
            usage_percentage=percentage,
            billing_cycle_start=start,
            is_on_demand=used >= limit,
            tokens_used=values["tokens"],
            raw_response=json.dumps(body, sort_keys=True),
        )

    def get_monthly_invoice(
        self,
        month: int,
        year: int,
        cycle_start: Optional[datetime] = None,
    ) -> InvoiceData:
        """Fetch invoice data for a month, optionally pinned to a cycle start.

        Payload variants are tried in order: the cycle-start filter (when a
        cycle start is given), the plain month/year form, then month/year
        asking for embedded usage events. The first response with items or
        events wins.

        Raises:
            CredentialError: The token was rejected
            TransportError: Every variant failed
        """
        payloads: List[Dict[str, Any]] = []
        if cycle_start is not None:
            payloads.append({
                "year": year,
                "cycleFilterType": "CYCLE_TYPE_START_TIME",
                "startTimeMs": str(to_millis(cycle_start)),
            })
        payloads.append({"month": month, "year": year})
        payloads.append({"month": month, "year": year, "includeUsageEvents": True})

        last_error: Optional[TransportError] = None
        result: Optional[InvoiceData] = None
        for payload in payloads:
            try:
                data = parse_invoice_response(self._request("POST", INVOICE_PATH, payload=payload))
            except TransportError as e:
                logger.debug("Invoice request %s failed: %s", payload, e)
                last_error = e
                continue
            if not data.is_empty:
                logger.debug("Invoice: %d items, %d events", len(data.items), len(data.usage_events))
                return data
            result = data

        if result is None and last_error is not None:
            raise last_error
        return result or InvoiceData()

    def get_usage_events_page(self, start_ms: int, end_ms: int, page: int, page_size: int) -> Any:
        """Fetch one raw page from the filtered usage events endpoint."""
        payload = {
            "teamId": 0,
            "startDate": str(start_ms),
            "endDate": str(end_ms),
            "page": page,
            "pageSize": page_size,
        }
        return self._request("POST", EVENTS_PATH, payload=payload)
