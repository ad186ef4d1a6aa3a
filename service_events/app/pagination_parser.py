"""
Query-string parsing for paginated endpoints.
"""

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Tuple

from platform_shared.errors import PlatformError, invalid_argument
from platform_shared.logging import get_logger
from platform_shared.pagination import PaginationRequest, SortOrder
from platform_shared.query import Filter, FilterOperator

SORTABLE_COLUMNS = ("createdAt", "updatedAt")
DEFAULT_SORT_BY = "createdAt"
DEFAULT_SORT_ORDER = SortOrder.DESC

logger = get_logger("events.pagination_parser")


def parse_timestamp(raw: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, or return None when it is not one."""
    # an unencoded "+" in a query string arrives as a space
    text = raw.strip().replace(" ", "+")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _positive_int(name: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise invalid_argument(f"{name} must be a positive integer", **{name: raw})
    if value <= 0:
        raise invalid_argument(f"{name} must be a positive integer", **{name: raw})
    return value


def parse_pagination_params(
    query: Mapping[str, str],
    default_limit: int = 10,
    max_limit: Optional[int] = None,
) -> Tuple[PaginationRequest, List[Filter]]:
    """Turn query parameters into a pagination request plus date-range filters.

    Unknown ``sortBy``/``sortOrder`` values fall back to the defaults and
    unparseable ``startDate``/``endDate`` values are dropped with a warning.
    A malformed ``limit``, ``page`` or timestamp cursor is rejected.
    """
    limit = _positive_int("limit", query.get("limit")) or default_limit
    if max_limit is not None and limit > max_limit:
        raise invalid_argument("limit exceeds the maximum page size", limit=limit, max_limit=max_limit)

    page = _positive_int("page", query.get("page") or query.get("pageNumber"))

    sort_by = query.get("sortBy")
    if sort_by not in SORTABLE_COLUMNS:
        sort_by = DEFAULT_SORT_BY

    try:
        sort_order = SortOrder.parse(query.get("sortOrder") or DEFAULT_SORT_ORDER)
    except PlatformError:
        logger.warning("Invalid sortOrder, using default", sort_order=query.get("sortOrder"))
        sort_order = DEFAULT_SORT_ORDER

    next_value: Any = query.get("next") or None
    if next_value is not None:
        parsed = parse_timestamp(next_value)
        if parsed is None:
            raise invalid_argument("next must be an ISO-8601 timestamp cursor", next=next_value)
        next_value = parsed

    filters: List[Filter] = []
    for param, operator in (("startDate", FilterOperator.GTE), ("endDate", FilterOperator.LTE)):
        raw = query.get(param)
        if not raw:
            continue
        parsed = parse_timestamp(raw)
        if parsed is None:
            logger.warning(f"Invalid {param} format, ignoring", value=raw)
            continue
        filters.append(Filter("createdAt", operator, parsed))

    request = PaginationRequest(
        limit=limit,
        page=page,
        next=next_value,
        next_id=query.get("nextId") or None,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return request, filters
