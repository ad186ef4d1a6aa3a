"""
PostgreSQL query source for the paginator.
"""

import asyncio
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import asyncpg

from platform_shared.errors import upstream_error
from platform_shared.logging import get_logger
from platform_shared.query import Filter, FilterOperator, PageQuery, SortKey, validate_identifier

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

COMPARISON_OPERATORS = {
    FilterOperator.EQ: "=",
    FilterOperator.NEQ: "<>",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
    FilterOperator.LIKE: "LIKE",
    FilterOperator.ILIKE: "ILIKE",
}


def quote_identifier(name: str) -> str:
    return f'"{validate_identifier(name)}"'


class _Params:
    """Collects positional ``$n`` arguments while a statement is built."""

    def __init__(self):
        self.values: List[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"


def _filter_clause(flt: Filter, params: _Params) -> str:
    column = quote_identifier(flt.column)
    if flt.operator is FilterOperator.IS:
        if flt.value is None:
            return f"{column} IS NULL"
        if flt.value is True:
            return f"{column} IS TRUE"
        if flt.value is False:
            return f"{column} IS FALSE"
        return f"{column} IS NOT DISTINCT FROM {params.add(flt.value)}"
    if flt.operator is FilterOperator.IN:
        return f"{column} = ANY({params.add(list(flt.value))})"
    return f"{column} {COMPARISON_OPERATORS[flt.operator]} {params.add(flt.value)}"


def _keyset_clause(order_by: Sequence[SortKey], after: Sequence[Any], params: _Params) -> str:
    # (a > x) OR (a = x AND b > y) ..., with per-key direction
    keys = list(zip(order_by, after))
    alternatives = []
    for index, (key, boundary) in enumerate(keys):
        terms = [f"{quote_identifier(k.column)} = {params.add(v)}" for k, v in keys[:index]]
        op = "<" if key.descending else ">"
        terms.append(f"{quote_identifier(key.column)} {op} {params.add(boundary)}")
        alternatives.append("(" + " AND ".join(terms) + ")")
    return "(" + " OR ".join(alternatives) + ")"


def _where(clauses: Sequence[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def build_select(table: str, query: PageQuery) -> Tuple[str, List[Any]]:
    """Render ``query`` as a parameterized SELECT statement."""
    params = _Params()
    columns = ", ".join(quote_identifier(c) for c in query.columns) if query.columns else "*"
    clauses = [_filter_clause(flt, params) for flt in query.filters]
    if query.after:
        clauses.append(_keyset_clause(query.order_by, query.after, params))
    sql = f"SELECT {columns} FROM {quote_identifier(table)}" + _where(clauses)
    if query.order_by:
        ordering = ", ".join(
            f"{quote_identifier(k.column)} {'DESC' if k.descending else 'ASC'}" for k in query.order_by
        )
        sql += f" ORDER BY {ordering}"
    sql += f" LIMIT {params.add(query.limit)} OFFSET {params.add(query.offset)}"
    return sql, params.values


def build_count(table: str, filters: Sequence[Filter]) -> Tuple[str, List[Any]]:
    """Render a COUNT(*) statement over ``filters`` only."""
    params = _Params()
    sql = f"SELECT COUNT(*) FROM {quote_identifier(table)}" + _where(
        [_filter_clause(flt, params) for flt in filters]
    )
    return sql, params.values


class PostgresQuerySource:
    """Query source reading one table through an asyncpg pool."""

    def __init__(self, table: str, dsn: Optional[str] = None, pool: Optional[asyncpg.Pool] = None,
                 name: Optional[str] = None):
        self.table = validate_identifier(table)
        self.dsn = dsn
        self.pool = pool
        self.name = name or table
        self.logger = get_logger(f"platform.sources.postgres.{self.name}")

    async def start(self):
        """Open the connection pool."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )
            self.logger.info("PostgreSQL query source started", table=self.table)
        except DRIVER_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL query source", error=str(e))
            raise upstream_error("Failed to connect to PostgreSQL", source=self.name, error=str(e)) from e

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL query source stopped", table=self.table)

    async def fetch(self, query: PageQuery) -> List[Mapping[str, Any]]:
        sql, args = build_select(self.table, query)
        rows = await self._run("fetch", sql, args)
        return [dict(row) for row in rows]

    async def count(self, filters: Sequence[Filter]) -> Optional[int]:
        sql, args = build_count(self.table, filters)
        return await self._run("fetchval", sql, args)

    async def _run(self, method: str, sql: str, args: List[Any]) -> Any:
        if self.pool is None:
            raise upstream_error("PostgreSQL query source is not started", source=self.name)
        try:
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(sql, *args)
        except DRIVER_ERRORS as e:
            self.logger.error("PostgreSQL query failed", source=self.name, error=str(e))
            raise upstream_error("PostgreSQL query failed", source=self.name, error=str(e)) from e
