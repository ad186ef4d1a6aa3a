"""
Dual-mode (offset / cursor) pagination over an ordered query source.

Both modes fetch ``limit + 1`` rows; the overflow row only signals that
another page exists and is never returned. ``next`` is the sort value of the
last row kept on the page, so it can be sent back as a cursor directly.
A unique tiebreak column is appended to the ordering, and its value for the
boundary row is exposed as ``next_id`` so cursor clients can resume without
skipping or repeating rows that share a sort value.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from platform_shared.cache import CacheClient, json_default
from platform_shared.context import ContextStore
from platform_shared.errors import invalid_argument
from platform_shared.logging import get_logger
from platform_shared.metrics import MetricsCollector
from platform_shared.query import Filter, PageQuery, QuerySource, SortKey, validate_identifier

OFFSET_MODE = "offset"
CURSOR_MODE = "cursor"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"

    @classmethod
    def parse(cls, value: Union["SortOrder", str]) -> "SortOrder":
        if isinstance(value, SortOrder):
            return value
        normalized = str(value).strip().lower()
        if normalized in ("asc", "ascending"):
            return cls.ASC
        if normalized in ("desc", "descending"):
            return cls.DESC
        raise invalid_argument("sortOrder must be ascending or descending", sort_order=str(value))


@dataclass(frozen=True)
class PaginationRequest:
    """Pagination parameters; a non-null ``next`` selects cursor mode."""
    limit: int = 10
    page: Optional[int] = None
    next: Any = None
    next_id: Any = None
    sort_by: str = "createdAt"
    sort_order: Union[SortOrder, str] = SortOrder.DESC

    @property
    def mode(self) -> str:
        return CURSOR_MODE if self.next is not None else OFFSET_MODE


@dataclass
class PaginationResult:
    items: List[Dict[str, Any]]
    limit: int
    mode: str
    next: Any = None
    next_id: Any = None
    page: Optional[int] = None
    has_next: Optional[bool] = None
    total: Optional[int] = None

    def pagination_meta(self) -> Dict[str, Any]:
        """Project the continuation metadata into the response shape."""
        meta: Dict[str, Any] = {"limit": self.limit}
        if self.total is not None:
            meta["total"] = self.total
        if self.mode == OFFSET_MODE:
            meta["page"] = self.page
            meta["hasNext"] = self.has_next
        meta["next"] = self.next
        if self.next is not None and self.next_id is not None:
            meta["nextId"] = self.next_id
        return meta

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "data": {"items": self.items, "pagination": self.pagination_meta()},
            "error": None,
        }


class Paginator:
    """Stateless paginator; safe to share between concurrent requests."""

    def __init__(
        self,
        tiebreak_column: Optional[str] = "id",
        *,
        max_limit: Optional[int] = None,
        metrics: Optional[MetricsCollector] = None,
        context_store: Optional[ContextStore] = None,
        page_cache: Optional[CacheClient] = None,
        page_cache_ttl: Optional[int] = None,
    ):
        if tiebreak_column is not None:
            validate_identifier(tiebreak_column)
        self.tiebreak_column = tiebreak_column
        self.max_limit = max_limit
        self.metrics = metrics
        self.context_store = context_store
        self.page_cache = page_cache
        self.page_cache_ttl = page_cache_ttl
        self.logger = get_logger("platform.paginator")

    async def paginate(
        self,
        source: QuerySource,
        filters: Sequence[Filter] = (),
        params: Optional[PaginationRequest] = None,
    ) -> PaginationResult:
        """Return one page of ``source`` rows matching ``filters``."""
        params = params or PaginationRequest()
        query = self.build_query(filters, params)

        if self.page_cache is None:
            return await self._execute(source, query, params)

        key = self._page_cache_key(source, query)
        payload = await self.page_cache.get_or_compute(
            key,
            lambda: self._execute_as_dict(source, query, params),
            self.page_cache_ttl,
        )
        return PaginationResult(**payload)

    def build_query(self, filters: Sequence[Filter], params: PaginationRequest) -> PageQuery:
        """Validate ``params`` and resolve them into a source-level query."""
        limit = params.limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise invalid_argument("limit must be a positive integer", limit=repr(limit))
        if self.max_limit is not None and limit > self.max_limit:
            raise invalid_argument("limit exceeds the maximum page size", limit=limit, max_limit=self.max_limit)

        sort_by = validate_identifier(params.sort_by)
        descending = SortOrder.parse(params.sort_order) is SortOrder.DESC

        order_by = [SortKey(sort_by, descending)]
        use_tiebreak = bool(self.tiebreak_column) and self.tiebreak_column != sort_by
        if use_tiebreak:
            order_by.append(SortKey(self.tiebreak_column, descending))

        if params.next is not None:
            after = (params.next,)
            if use_tiebreak and params.next_id is not None:
                after = (params.next, params.next_id)
            return PageQuery(
                filters=tuple(filters),
                order_by=tuple(order_by),
                after=after,
                offset=0,
                limit=limit + 1,
            )

        page = 1 if params.page is None else params.page
        if isinstance(page, bool) or not isinstance(page, int) or page <= 0:
            raise invalid_argument("page must be a positive integer", page=repr(page))
        return PageQuery(
            filters=tuple(filters),
            order_by=tuple(order_by),
            offset=(page - 1) * limit,
            limit=limit + 1,
        )

    async def _execute(self, source: QuerySource, query: PageQuery, params: PaginationRequest) -> PaginationResult:
        mode = params.mode
        limit = query.limit - 1
        start = time.perf_counter()

        fetch_task = asyncio.ensure_future(source.fetch(query))
        count_task = asyncio.ensure_future(source.count(query.filters))
        try:
            rows, total = await asyncio.gather(fetch_task, count_task)
        except BaseException:
            fetch_task.cancel()
            count_task.cancel()
            raise

        items = [dict(row) for row in rows]
        has_next = len(items) > limit
        items = items[:limit]

        sort_column = query.order_by[0].column
        next_value = items[-1].get(sort_column) if has_next else None
        next_id = None
        if has_next and len(query.order_by) > 1:
            next_id = items[-1].get(query.order_by[1].column)

        duration = time.perf_counter() - start
        self._observe(source, mode, duration)
        self.logger.debug(
            "Paginated query",
            source=getattr(source, "name", type(source).__name__),
            mode=mode,
            returned=len(items),
            has_next=has_next,
            total=total,
        )

        if mode == CURSOR_MODE:
            return PaginationResult(
                items=items,
                limit=limit,
                mode=mode,
                next=next_value,
                next_id=next_id,
                total=total,
            )

        return PaginationResult(
            items=items,
            limit=limit,
            mode=mode,
            next=next_value,
            next_id=next_id,
            page=1 if params.page is None else params.page,
            has_next=has_next,
            total=total,
        )

    async def _execute_as_dict(self, source: QuerySource, query: PageQuery, params: PaginationRequest) -> Dict[str, Any]:
        return asdict(await self._execute(source, query, params))

    def _page_cache_key(self, source: QuerySource, query: PageQuery) -> str:
        descriptor = json.dumps(
            {
                "filters": [[f.column, f.operator.value, f.value] for f in query.filters],
                "order_by": [[k.column, k.descending] for k in query.order_by],
                "after": query.after,
                "offset": query.offset,
                "limit": query.limit,
            },
            default=json_default,
            sort_keys=True,
        )
        digest = hashlib.sha256(descriptor.encode("utf-8")).hexdigest()
        return f"{getattr(source, 'name', type(source).__name__)}:{digest}"

    def _observe(self, source: QuerySource, mode: str, duration: float) -> None:
        if self.metrics is not None:
            self.metrics.record_pagination(getattr(source, "name", type(source).__name__), mode, duration)
        if self.context_store is not None:
            context = self.context_store.get_context()
            if context is not None:
                context.increment(f"pagination.{mode}")
                context.record_timing("pagination_ms", duration * 1000)
