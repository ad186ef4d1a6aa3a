"""
PostgREST-style HTTP query source for the paginator.
"""

import re
from datetime import date, datetime
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import httpx

from platform_shared.errors import upstream_error
from platform_shared.logging import get_logger
from platform_shared.query import Filter, FilterOperator, PageQuery, SortKey, validate_identifier

CONTENT_RANGE_TOTAL = re.compile(r"/(\d+|\*)$")
RESERVED_CHARS = set(',.:()"')

Params = List[Tuple[str, str]]


def format_value(value: Any) -> str:
    """Render a value the way the PostgREST query grammar expects."""
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _quoted(value: Any) -> str:
    # values inside or=(...) / in.(...) must be quoted when they hold reserved chars
    text = format_value(value)
    if RESERVED_CHARS.intersection(text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def filter_param(flt: Filter) -> Tuple[str, str]:
    op = flt.operator
    if op is FilterOperator.IN:
        return flt.column, f"in.({','.join(_quoted(v) for v in flt.value)})"
    if op in (FilterOperator.LIKE, FilterOperator.ILIKE):
        return flt.column, f"{op.value}.{str(flt.value).replace('%', '*')}"
    return flt.column, f"{op.value}.{format_value(flt.value)}"


def keyset_param(order_by: Sequence[SortKey], after: Sequence[Any]) -> Tuple[str, str]:
    """Build the ``or=(...)`` parameter selecting rows beyond the boundary."""
    keys = list(zip(order_by, after))
    alternatives = []
    for index, (key, boundary) in enumerate(keys):
        terms = [f"{k.column}.eq.{_quoted(v)}" for k, v in keys[:index]]
        terms.append(f"{key.column}.{'lt' if key.descending else 'gt'}.{_quoted(boundary)}")
        alternatives.append(terms[0] if len(terms) == 1 else f"and({','.join(terms)})")
    return "or", f"({','.join(alternatives)})"


def build_params(query: PageQuery) -> Params:
    """Translate ``query`` into PostgREST query-string parameters."""
    params: Params = [("select", ",".join(query.columns) if query.columns else "*")]
    params.extend(filter_param(flt) for flt in query.filters)
    if query.after:
        params.append(keyset_param(query.order_by, query.after))
    if query.order_by:
        params.append(
            ("order", ",".join(f"{k.column}.{'desc' if k.descending else 'asc'}" for k in query.order_by))
        )
    params.append(("limit", str(query.limit)))
    params.append(("offset", str(query.offset)))
    return params


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Extract the exact total from a ``Content-Range`` header."""
    if not header:
        return None
    match = CONTENT_RANGE_TOTAL.search(header.strip())
    if match is None or match.group(1) == "*":
        return None
    return int(match.group(1))


class RestQuerySource:
    """Query source reading one table through a PostgREST-compatible HTTP API."""

    def __init__(self, client: httpx.AsyncClient, table: str, name: Optional[str] = None):
        self.client = client
        self.table = validate_identifier(table)
        self.name = name or table
        self.logger = get_logger(f"platform.sources.rest.{self.name}")

    async def fetch(self, query: PageQuery) -> List[Mapping[str, Any]]:
        response = await self._request("GET", build_params(query))
        try:
            rows = response.json()
        except ValueError as e:
            raise upstream_error("Data API returned invalid JSON", source=self.name, error=str(e)) from e
        if not isinstance(rows, list):
            raise upstream_error("Data API returned an unexpected payload", source=self.name)
        return rows

    async def count(self, filters: Sequence[Filter]) -> Optional[int]:
        params: Params = [("select", "*")]
        params.extend(filter_param(flt) for flt in filters)
        response = await self._request("HEAD", params, headers={"Prefer": "count=exact"})
        return parse_content_range(response.headers.get("content-range"))

    async def _request(self, method: str, params: Params, headers: Optional[Mapping[str, str]] = None) -> httpx.Response:
        try:
            response = await self.client.request(method, f"/{self.table}", params=params, headers=headers)
        except httpx.HTTPError as e:
            self.logger.error("Data API request failed", source=self.name, error=str(e))
            raise upstream_error("Data API unavailable", source=self.name, error=str(e)) from e

        if response.status_code >= 400:
            self.logger.error(
                "Data API error response",
                source=self.name,
                status_code=response.status_code,
            )
            raise upstream_error(
                f"Data API error: {response.status_code}",
                source=self.name,
                status_code=response.status_code,
            )
        return response
