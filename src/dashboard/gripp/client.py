"""
Async JSON-RPC client for the Gripp API.

Every list endpoint (employee.get, hour.get, ...) takes the same call shape:

    {"method": "hour.get",
     "params": [[<filter>, ...], {"paging": {"firstresult": 0, "maxresults": 250},
                                  "orderings": [...]}],
     "id": 1}

and answers with

    {"id": 1, "result": {"rows": [...], "count": 1234, "start": 0,
                          "more_items_in_collection": true}}

Requests are POSTed as a single-element batch array. The shape is dictated by
Gripp and must not change.

Failures are mapped onto GrippError subclasses; each carries a `retryable`
flag read by RetryPolicy.
"""
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.gripp.com/public/api3.php"

_request_ids = itertools.count(1)


# ── Exceptions ────────────────────────────────────────────────────────────────

class GrippError(Exception):
    """Base class for upstream failures."""

    retryable = False


class UpstreamHTTPError(GrippError):
    """Non-2xx HTTP status. 429 and 5xx are worth retrying."""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or f"Gripp returned HTTP {status_code}")
        self.status_code = status_code
        self.retryable = status_code == 429 or 500 <= status_code < 600


class UpstreamTimeoutError(GrippError):
    """Timeout or transport failure before a response was received."""

    retryable = True


class MalformedResponseError(GrippError):
    """Response body did not have the expected result shape."""

    retryable = True


class UpstreamRPCError(GrippError):
    """JSON-RPC error object in an otherwise successful response."""

    def __init__(self, code: Any, message: str):
        super().__init__(f"Gripp RPC error {code}: {message}")
        self.code = code


class UpstreamAuthError(GrippError):
    """API key rejected. Terminal for the whole sync, not just one window."""


# ── Request / response types ──────────────────────────────────────────────────

@dataclass(frozen=True)
class PageRequest:
    filters: Sequence[Dict[str, Any]]
    offset: int
    page_size: int


@dataclass
class Page:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None  # reported total; None when absent
    start: int = 0
    more_items: bool = False


def equals(field_name: str, value: Any) -> Dict[str, Any]:
    return {"field": field_name, "operator": "equals", "value": value}


def between(field_name: str, start: str, end: str) -> Dict[str, Any]:
    return {"field": field_name, "operator": "between", "value": start, "value2": end}


def build_request(
    method: str,
    filters: Sequence[Dict[str, Any]],
    offset: int,
    page_size: int,
    orderings: Optional[Sequence[Dict[str, str]]] = None,
) -> Dict[str, Any]:
    """Build one JSON-RPC list request in the shape Gripp expects."""
    options: Dict[str, Any] = {
        "paging": {"firstresult": offset, "maxresults": page_size},
    }
    if orderings:
        options["orderings"] = list(orderings)
    return {
        "method": method,
        "params": [list(filters), options],
        "id": next(_request_ids),
    }


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedResponseError(f"Non-numeric {name}: {value!r}")


def parse_page(payload: Any) -> Page:
    """
    Validate a decoded response body and extract the result page.

    Raises:
        UpstreamRPCError: if the body carries a JSON-RPC error object.
        MalformedResponseError: if `result.rows` is missing or not a list, or
            `count`/`start` are not numeric.
    """
    if isinstance(payload, list):
        if not payload:
            raise MalformedResponseError("Empty batch response from Gripp")
        payload = payload[0]
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"Unexpected response type {type(payload).__name__}")

    error = payload.get("error")
    if error:
        if isinstance(error, dict):
            raise UpstreamRPCError(error.get("code"), error.get("message", "unknown error"))
        raise UpstreamRPCError(None, str(error))

    result = payload.get("result")
    if not isinstance(result, dict) or not isinstance(result.get("rows"), list):
        raise MalformedResponseError("Response is missing result.rows")

    count = result.get("count")
    if count is not None:
        count = _as_int(count, "result.count")

    return Page(
        rows=result["rows"],
        count=count,
        start=_as_int(result.get("start") or 0, "result.start"),
        more_items=bool(result.get("more_items_in_collection", False)),
    )


# ── Client ────────────────────────────────────────────────────────────────────

class GrippClient:
    """
    Thin async wrapper over httpx for Gripp's list endpoints.

    Usage:
        async with GrippClient(api_key=...) as client:
            page = await client.list("employee.get", [], offset=0, page_size=250)
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        api_key: str = "",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_url: JSON-RPC endpoint.
            api_key: Gripp API token, sent as a bearer token.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
        """
        self.api_url = api_url
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> "GrippClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def list(
        self,
        method: str,
        filters: Sequence[Dict[str, Any]],
        offset: int,
        page_size: int,
        orderings: Optional[Sequence[Dict[str, str]]] = None,
    ) -> Page:
        """Fetch one page of `method`. A single attempt; retries live in RetryPolicy."""
        request = build_request(method, filters, offset, page_size, orderings)
        logger.debug("Gripp %s offset=%d size=%d filters=%s", method, offset, page_size, filters)

        try:
            response = await self._http.post(self.api_url, json=[request])
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"{method} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise UpstreamTimeoutError(f"{method} transport error: {exc}") from exc

        if response.status_code in (401, 403):
            raise UpstreamAuthError(f"Gripp rejected the API key (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise UpstreamHTTPError(response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"{method} returned non-JSON body") from exc

        return parse_page(payload)
