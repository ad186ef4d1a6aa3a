"""
Test helper functions and in-memory fakes for the Bhandara platform.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from fnmatch import fnmatchcase
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from redis.exceptions import ConnectionError as RedisConnectionError

from platform_shared.context import Session
from platform_shared.errors import upstream_error
from platform_shared.query import Filter, PageQuery, is_beyond


class FakeClock:
    """Manually advanced clock, callable like ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryKeyValueBackend:
    """Redis-compatible subset (strings, hashes, scan and pipelines) backed by a dict.

    Expiry is evaluated against ``clock``. Set ``fail`` to make every call
    raise a redis ``ConnectionError``; ``delay`` slows each call down.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        # hashes are stored as dict values
        self.data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.fail = False
        self.delay = 0.0
        self.calls: List[Tuple[str, Any]] = []

    async def _before(self, operation: str, argument: Any) -> None:
        self.calls.append((operation, argument))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _live(self, name: str) -> Any:
        entry = self.data.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self.data[name]
            return None
        return value

    async def get(self, name: str) -> Optional[str]:
        await self._before("get", name)
        return self._live(name)

    async def set(self, name: str, value: str, ex: Optional[int] = None) -> bool:
        await self._before("set", name)
        self.data[name] = (value, self.clock() + ex if ex else None)
        return True

    async def delete(self, *names: str) -> int:
        await self._before("delete", names)
        removed = 0
        for name in names:
            if self._live(name) is not None:
                removed += 1
            self.data.pop(name, None)
        return removed

    async def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[str]:
        await self._before("scan", match)
        for name in list(self.data):
            if self._live(name) is None:
                continue
            if match is None or fnmatchcase(name, match):
                yield name

    async def hset(self, name: str, key: str, value: str) -> int:
        await self._before("hset", name)
        fields = self._live(name)
        if not isinstance(fields, dict):
            fields = {}
            self.data[name] = (fields, None)
        created = key not in fields
        fields[key] = value
        return int(created)

    async def hget(self, name: str, key: str) -> Optional[str]:
        await self._before("hget", name)
        fields = self._live(name)
        return fields.get(key) if isinstance(fields, dict) else None

    async def hgetall(self, name: str) -> Dict[str, str]:
        await self._before("hgetall", name)
        fields = self._live(name)
        return dict(fields) if isinstance(fields, dict) else {}

    async def hdel(self, name: str, *keys: str) -> int:
        await self._before("hdel", name)
        fields = self._live(name)
        if not isinstance(fields, dict):
            return 0
        return sum(1 for key in keys if fields.pop(key, None) is not None)

    async def expire(self, name: str, time: int) -> bool:
        await self._before("expire", name)
        value = self._live(name)
        if value is None:
            return False
        self.data[name] = (value, self.clock() + time)
        return True

    def pipeline(self, transaction: bool = True) -> "InMemoryPipeline":
        return InMemoryPipeline(self)

    def ttl_of(self, name: str) -> Optional[float]:
        """Remaining native expiry of ``name``, as a real backend would report it."""
        entry = self.data.get(name)
        if entry is None or entry[1] is None:
            return None
        return entry[1] - self.clock()


class InMemoryPipeline:
    """Buffers commands and replays them against the backend on ``execute``."""

    def __init__(self, backend: InMemoryKeyValueBackend):
        self.backend = backend
        self.commands: List[Tuple[str, Tuple[Any, ...]]] = []

    async def __aenter__(self) -> "InMemoryPipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.commands = []

    def hset(self, name: str, key: str, value: str) -> "InMemoryPipeline":
        self.commands.append(("hset", (name, key, value)))
        return self

    def expire(self, name: str, time: int) -> "InMemoryPipeline":
        self.commands.append(("expire", (name, time)))
        return self

    async def execute(self) -> List[Any]:
        commands, self.commands = self.commands, []
        return [await getattr(self.backend, method)(*args) for method, args in commands]


class InMemoryQuerySource:
    """Query source over a list of dict rows."""

    def __init__(self, rows: Sequence[Mapping[str, Any]], name: str = "memory"):
        self.rows = [dict(row) for row in rows]
        self.name = name
        self.fail = False
        self.fetch_calls: List[PageQuery] = []
        self.count_calls: List[Tuple[Filter, ...]] = []

    def _filtered(self, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        return [row for row in self.rows if all(flt.matches(row) for flt in filters)]

    async def fetch(self, query: PageQuery) -> List[Mapping[str, Any]]:
        self.fetch_calls.append(query)
        if self.fail:
            raise upstream_error("In-memory source failure", source=self.name)

        rows = self._filtered(query.filters)
        # stable sorts, least significant key first
        for key in reversed(query.order_by):
            rows.sort(key=lambda row: row.get(key.column), reverse=key.descending)
        if query.after:
            rows = [row for row in rows if is_beyond(row, query.order_by, query.after)]
        rows = rows[query.offset:query.offset + query.limit]
        if query.columns:
            rows = [{c: row.get(c) for c in query.columns} for row in rows]
        return rows

    async def count(self, filters: Sequence[Filter]) -> Optional[int]:
        self.count_calls.append(tuple(filters))
        if self.fail:
            raise upstream_error("In-memory source failure", source=self.name)
        return len(self._filtered(filters))


@dataclass
class TestEvent:
    """Test event row."""
    id: str
    title: str
    hostId: str
    status: str
    createdAt: datetime
    updatedAt: datetime

    def as_row(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class TestDataFactory:
    """Factory for creating test data."""

    BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

    @classmethod
    def create_test_events(cls, count: int = 25) -> List[Dict[str, Any]]:
        """Events with unique ``createdAt`` values, newest has the highest index."""
        events = []
        for index in range(1, count + 1):
            created = cls.BASE_TIME + timedelta(minutes=index)
            events.append(TestEvent(
                id=f"evt-{index:03d}",
                title=f"Community Bhandara #{index}",
                hostId="host-1" if index % 2 else "host-2",
                status="published" if index % 5 else "draft",
                createdAt=created,
                updatedAt=created + timedelta(hours=1),
            ).as_row())
        return events

    @classmethod
    def create_tied_events(cls, groups: int = 4, per_group: int = 3) -> List[Dict[str, Any]]:
        """Events where several rows share each ``createdAt`` value."""
        events = []
        for group in range(groups):
            created = cls.BASE_TIME + timedelta(hours=group)
            for member in range(per_group):
                events.append(TestEvent(
                    id=f"evt-{group:02d}-{member:02d}",
                    title=f"Langar {group}.{member}",
                    hostId="host-1",
                    status="published",
                    createdAt=created,
                    updatedAt=created,
                ).as_row())
        return events

    @classmethod
    def create_typed_events(cls, count: int = 5) -> List[Dict[str, Any]]:
        """Event rows typed the way asyncpg returns them: UUID ids and numeric coordinates."""
        events = []
        for index in range(1, count + 1):
            created = cls.BASE_TIME + timedelta(minutes=index)
            events.append({
                "id": uuid.UUID(int=index),
                "title": f"Community Bhandara #{index}",
                "latitude": Decimal("28.6139") + index,
                "eventDate": created.date(),
                "createdAt": created,
            })
        return events

    @staticmethod
    def create_test_session(user_id: str = "user-1") -> Session:
        return Session(access_token=f"access-{user_id}", refresh_token=f"refresh-{user_id}", user_id=user_id)
