"""
Query model shared by the paginator and its backing sources.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Optional, Protocol, Sequence, Tuple

from platform_shared.errors import invalid_argument

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FilterOperator(str, Enum):
    """Comparison operators understood by every query source."""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    IS = "is"


@dataclass(frozen=True)
class Filter:
    """Single column predicate."""
    column: str
    operator: FilterOperator = FilterOperator.EQ
    value: Any = None

    def __post_init__(self):
        validate_identifier(self.column)
        object.__setattr__(self, "operator", FilterOperator(self.operator))

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Evaluate the predicate against an in-memory row."""
        actual = row.get(self.column)
        op = self.operator
        if op is FilterOperator.IS:
            return actual is self.value or actual == self.value
        if op is FilterOperator.EQ:
            return actual == self.value
        if op is FilterOperator.NEQ:
            return actual != self.value
        if op is FilterOperator.IN:
            return actual in self.value
        if actual is None:
            return False
        if op is FilterOperator.GT:
            return actual > self.value
        if op is FilterOperator.GTE:
            return actual >= self.value
        if op is FilterOperator.LT:
            return actual < self.value
        if op is FilterOperator.LTE:
            return actual <= self.value
        flags = re.IGNORECASE if op is FilterOperator.ILIKE else 0
        return re.fullmatch(like_to_regex(str(self.value)), str(actual), flags) is not None


@dataclass(frozen=True)
class SortKey:
    column: str
    descending: bool = False


@dataclass(frozen=True)
class PageQuery:
    """Fully resolved page fetch handed to a query source.

    ``after`` holds keyset boundary values aligned with the leading columns
    of ``order_by``; only rows strictly beyond that boundary in sort order
    qualify.
    """
    filters: Tuple[Filter, ...] = ()
    order_by: Tuple[SortKey, ...] = ()
    after: Optional[Tuple[Any, ...]] = None
    offset: int = 0
    limit: int = 10
    columns: Optional[Tuple[str, ...]] = field(default=None)


class QuerySource(Protocol):
    """Ordered, filterable collection the paginator reads from."""

    name: str

    async def fetch(self, query: PageQuery) -> List[Mapping[str, Any]]: ...

    async def count(self, filters: Sequence[Filter]) -> Optional[int]: ...


def validate_identifier(column: str) -> str:
    """Reject column identifiers that are not plain names."""
    if not isinstance(column, str) or not IDENTIFIER_PATTERN.match(column):
        raise invalid_argument("Invalid column identifier", column=repr(column))
    return column


def like_to_regex(pattern: str) -> str:
    """Translate a SQL LIKE pattern into a regex for ``re.fullmatch``."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "".join(parts)


def is_beyond(row: Mapping[str, Any], order_by: Sequence[SortKey], after: Sequence[Any]) -> bool:
    """True when ``row`` sorts strictly after the keyset boundary ``after``."""
    for key, boundary in zip(order_by, after):
        value = row.get(key.column)
        if value == boundary:
            continue
        if value is None or boundary is None:
            return False
        return value < boundary if key.descending else value > boundary
    return False
