"""
Namespaced TTL cache over a Redis-compatible key-value backend.

Physical keys are ``<namespace>:<key>``. Every entry is written with the
backend's native expiry and also carries its absolute expiry instant, which
is re-checked on read so a lazily-expiring backend never returns stale data.

Values are stored as JSON. Datetimes, dates, UUIDs and decimals are written
as tagged objects and restored on read, so a hit returns the same types the
miss computed.

Backend failures surface as ``CACHE_UNAVAILABLE`` errors and are never
reported as misses. Writes are best-effort (logged, ``False`` returned)
unless the client or the call opts into strict mode.
"""

import asyncio
import functools
import inspect
import json
import time
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Union
from uuid import UUID

import redis.asyncio as redis
from redis.exceptions import RedisError

from platform_shared.config import PlatformSettings
from platform_shared.context import ContextStore
from platform_shared.errors import ErrorKind, PlatformError, cache_unavailable, config_error, invalid_argument
from platform_shared.logging import get_logger
from platform_shared.metrics import MetricsCollector

BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
RESERVED_NAMESPACE_CHARS = frozenset(":*?[]")
TYPE_TAG = "__type__"


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


class KeyValueBackend(Protocol):
    """Subset of the ``redis.asyncio.Redis`` interface the cache relies on."""

    async def get(self, name: str) -> Optional[Union[str, bytes]]: ...

    async def set(self, name: str, value: str, ex: Optional[int] = None) -> Any: ...

    async def delete(self, *names: str) -> int: ...

    def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[Union[str, bytes]]: ...

    async def hget(self, name: str, key: str) -> Optional[Union[str, bytes]]: ...

    async def hgetall(self, name: str) -> Dict[Any, Any]: ...

    async def hdel(self, name: str, *keys: str) -> int: ...

    def pipeline(self, transaction: bool = True) -> Any: ...


def validate_ttl(ttl: Any) -> int:
    """Return ``ttl`` if it is a strictly positive whole number of seconds."""
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
        raise config_error("TTL must be a positive whole number of seconds", ttl=repr(ttl))
    return ttl


@dataclass(frozen=True)
class CacheNamespace:
    """Logical partition of the keyspace with its own default expiry."""
    name: str
    default_ttl_seconds: int

    def __post_init__(self):
        if not self.name or RESERVED_NAMESPACE_CHARS.intersection(self.name):
            raise config_error("Invalid cache namespace name", namespace=self.name)
        validate_ttl(self.default_ttl_seconds)


TAGGED_DECODERS: Dict[str, Callable[[str], Any]] = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "uuid": UUID,
    "decimal": Decimal,
}


def json_default(value: Any) -> Any:
    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        return {TYPE_TAG: "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {TYPE_TAG: "date", "value": value.isoformat()}
    if isinstance(value, UUID):
        return {TYPE_TAG: "uuid", "value": str(value)}
    if isinstance(value, Decimal):
        return {TYPE_TAG: "decimal", "value": str(value)}
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_object_hook(obj: Dict[str, Any]) -> Any:
    """Restore values tagged by ``json_default``; other objects pass through."""
    tag = obj.get(TYPE_TAG)
    if len(obj) != 2 or "value" not in obj or not isinstance(tag, str) or tag not in TAGGED_DECODERS:
        return obj
    return TAGGED_DECODERS[tag](obj["value"])


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CacheClient:
    """Cache client bound to a single namespace."""

    def __init__(
        self,
        backend: KeyValueBackend,
        namespace: CacheNamespace,
        *,
        metrics: Optional[MetricsCollector] = None,
        context_store: Optional[ContextStore] = None,
        strict_writes: bool = False,
        operation_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.namespace = namespace
        self.metrics = metrics
        self.context_store = context_store
        self.strict_writes = strict_writes
        self.operation_timeout = operation_timeout
        self.clock = clock
        self.logger = get_logger(f"platform.cache.{namespace.name}")
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}

    def make_key(self, key: str) -> str:
        """Build the physical backend key."""
        return f"{self.namespace.name}:{key}"

    async def get_item(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on a miss."""
        value = await self._read(key)
        return default if value is MISSING else value

    async def set_item(self, key: str, value: Any, ttl: Optional[int] = None, *, strict: Optional[bool] = None) -> bool:
        """Store ``value`` for ``ttl`` seconds (namespace default when omitted)."""
        ttl_seconds = self.namespace.default_ttl_seconds if ttl is None else validate_ttl(ttl)
        physical = self.make_key(key)

        start = time.perf_counter()
        try:
            payload = self._encode(value, ttl_seconds)
            await self._backend_call("set", physical, self.backend.set(physical, payload, ex=ttl_seconds))
        except PlatformError as exc:
            self._observe("set", "error", start)
            return self._handle_write_failure("set", key, exc, strict)

        self._observe("set", "ok", start)
        self.logger.debug("Cached value", key=physical, ttl=ttl_seconds)
        return True

    async def delete_item(self, key: str, *, strict: Optional[bool] = None) -> bool:
        """Delete ``key``. Deleting an absent key succeeds."""
        physical = self.make_key(key)
        start = time.perf_counter()
        try:
            await self._backend_call("delete", physical, self.backend.delete(physical))
        except PlatformError as exc:
            self._observe("delete", "error", start)
            return self._handle_write_failure("delete", key, exc, strict)

        self._observe("delete", "ok", start)
        return True

    async def set_hash_field(
        self, key: str, field: str, value: Any, ttl: Optional[int] = None, *, strict: Optional[bool] = None
    ) -> bool:
        """Store ``value`` under ``field`` of the hash at ``key``.

        The field and the hash expiry are written in one pipeline; each write
        pushes the expiry of the whole hash out to ``ttl`` seconds. Fields
        also carry their own expiry instant, re-checked on read like plain
        entries.
        """
        ttl_seconds = self.namespace.default_ttl_seconds if ttl is None else validate_ttl(ttl)
        physical = self.make_key(key)

        start = time.perf_counter()
        try:
            payload = self._encode(value, ttl_seconds)
            await self._backend_call("hset", physical, self._write_hash_field(physical, field, payload, ttl_seconds))
        except PlatformError as exc:
            self._observe("hset", "error", start)
            return self._handle_write_failure("hset", f"{key}#{field}", exc, strict)

        self._observe("hset", "ok", start)
        return True

    async def get_hash_field(self, key: str, field: str, default: Any = None) -> Any:
        """Return one field of the hash at ``key``, or ``default`` on a miss."""
        physical = self.make_key(key)
        start = time.perf_counter()
        try:
            raw = await self._backend_call("hget", physical, self.backend.hget(physical, field))
        except PlatformError:
            self._observe("hget", "error", start)
            raise

        value = MISSING if raw is None else self._unwrap(physical, raw)
        self._observe("hget", "miss" if value is MISSING else "hit", start)
        return default if value is MISSING else value

    async def get_hash(self, key: str) -> Dict[str, Any]:
        """Return every live field of the hash at ``key`` (empty when absent)."""
        physical = self.make_key(key)
        start = time.perf_counter()
        try:
            raw_fields = await self._backend_call("hgetall", physical, self.backend.hgetall(physical))
        except PlatformError:
            self._observe("hgetall", "error", start)
            raise

        fields = {}
        for raw_field, raw in (raw_fields or {}).items():
            value = self._unwrap(physical, raw)
            if value is not MISSING:
                fields[raw_field.decode("utf-8") if isinstance(raw_field, bytes) else raw_field] = value
        self._observe("hgetall", "hit" if fields else "miss", start)
        return fields

    async def delete_hash_field(self, key: str, field: str, *, strict: Optional[bool] = None) -> bool:
        """Remove ``field`` from the hash at ``key``. Removing an absent field succeeds."""
        physical = self.make_key(key)
        start = time.perf_counter()
        try:
            await self._backend_call("hdel", physical, self.backend.hdel(physical, field))
        except PlatformError as exc:
            self._observe("hdel", "error", start)
            return self._handle_write_failure("hdel", f"{key}#{field}", exc, strict)

        self._observe("hdel", "ok", start)
        return True

    async def invalidate(self, pattern: str = "*", *, strict: Optional[bool] = None) -> int:
        """Delete every key of this namespace matching the glob ``pattern``."""
        match = self.make_key(pattern)
        start = time.perf_counter()
        try:
            keys = await self._backend_call("scan", match, self._collect_keys(match))
            if keys:
                await self._backend_call("delete", match, self.backend.delete(*keys))
        except PlatformError as exc:
            self._observe("invalidate", "error", start)
            self._handle_write_failure("invalidate", pattern, exc, strict)
            return 0

        self._observe("invalidate", "ok", start)
        if keys:
            self.logger.info("Invalidated cache pattern", pattern=match, keys_count=len(keys))
        return len(keys)

    async def get_or_compute(
        self,
        key: str,
        compute_fn: Callable[[], Union[Any, Awaitable[Any]]],
        ttl: Optional[int] = None,
    ) -> Any:
        """Return the cached value or compute, store and return it.

        Concurrent misses for the same key share one in-flight computation.
        If the backend is unavailable the value is computed from the source
        without caching.
        """
        if ttl is not None:
            validate_ttl(ttl)

        inflight = self._inflight.get(key)
        if inflight is not None:
            return await asyncio.shield(inflight)

        try:
            cached = await self._read(key)
        except PlatformError as exc:
            if exc.kind is not ErrorKind.CACHE_UNAVAILABLE:
                raise
            self.logger.warning("Cache unavailable, computing without cache", key=key, error=exc.message)
            return await _resolve(compute_fn())

        if cached is not MISSING:
            return cached

        inflight = self._inflight.get(key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._compute_and_store(key, compute_fn, ttl))
            self._inflight[key] = inflight
            inflight.add_done_callback(functools.partial(self._release_inflight, key))
        return await asyncio.shield(inflight)

    def cached(
        self,
        ttl: Optional[int] = None,
        key_builder: Optional[Callable[..., str]] = None,
        skip_get: bool = False,
        skip_set: bool = False,
    ) -> Callable:
        """Decorator caching an async function's result in this namespace.

        The default key is ``<qualname>:<json arguments>``; a leading ``self``
        or ``cls`` argument is left out of the key.
        """
        if ttl is not None:
            validate_ttl(ttl)

        def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            params = list(inspect.signature(func).parameters)
            skip_first = bool(params) and params[0] in ("self", "cls")

            @functools.wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> Any:
                if key_builder is not None:
                    key = key_builder(*args, **kwargs)
                else:
                    key_args = args[1:] if skip_first else args
                    key = f"{func.__qualname__}:{json.dumps([key_args, kwargs], default=json_default, sort_keys=True)}"

                if skip_get and skip_set:
                    return await func(*args, **kwargs)

                if skip_get:
                    result = await func(*args, **kwargs)
                    if result is not None:
                        await self.set_item(key, result, ttl)
                    return result

                if skip_set:
                    try:
                        cached_value = await self._read(key)
                    except PlatformError as exc:
                        if exc.kind is not ErrorKind.CACHE_UNAVAILABLE:
                            raise
                        cached_value = MISSING
                    if cached_value is not MISSING:
                        return cached_value
                    return await func(*args, **kwargs)

                return await self.get_or_compute(key, lambda: func(*args, **kwargs), ttl)

            return wrapper

        return decorator

    async def _read(self, key: str) -> Any:
        physical = self.make_key(key)
        start = time.perf_counter()
        try:
            raw = await self._backend_call("get", physical, self.backend.get(physical))
        except PlatformError:
            self._observe("get", "error", start)
            raise

        value = MISSING if raw is None else self._unwrap(physical, raw)
        self._observe("get", "miss" if value is MISSING else "hit", start)
        return value

    def _unwrap(self, physical_key: str, raw: Union[str, bytes]) -> Any:
        entry = self._decode(physical_key, raw)
        if entry is None or self.clock() >= entry["expires_at"]:
            return MISSING
        return entry["value"]

    async def _compute_and_store(self, key: str, compute_fn: Callable[[], Any], ttl: Optional[int]) -> Any:
        result = await _resolve(compute_fn())
        if result is not None:
            # the computed value is returned even when it cannot be stored
            await self.set_item(key, result, ttl, strict=False)
        return result

    async def _write_hash_field(self, physical: str, field: str, payload: str, ttl_seconds: int) -> Any:
        async with self.backend.pipeline() as pipeline:
            pipeline.hset(physical, field, payload)
            pipeline.expire(physical, ttl_seconds)
            return await pipeline.execute()

    def _release_inflight(self, key: str, future: "asyncio.Future[Any]") -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            # Mark the exception retrieved; every waiter re-raises it through shield().
            future.exception()

    async def _collect_keys(self, match: str) -> List[str]:
        keys = []
        async for raw_key in self.backend.scan_iter(match=match):
            keys.append(raw_key.decode("utf-8") if isinstance(raw_key, bytes) else raw_key)
        return keys

    async def _backend_call(self, operation: str, physical_key: str, call: Awaitable[Any]) -> Any:
        try:
            if self.operation_timeout:
                return await asyncio.wait_for(call, self.operation_timeout)
            return await call
        except BACKEND_ERRORS as exc:
            raise cache_unavailable(
                f"Cache backend unavailable during {operation}",
                namespace=self.namespace.name,
                key=physical_key,
                error=str(exc) or type(exc).__name__,
            ) from exc

    def _handle_write_failure(self, operation: str, key: str, exc: PlatformError, strict: Optional[bool]) -> bool:
        if self.strict_writes if strict is None else strict:
            raise exc
        self.logger.warning(
            "Cache write failed, continuing without cache",
            operation=operation,
            key=key,
            error=exc.details.get("error", exc.message),
        )
        return False

    def _encode(self, value: Any, ttl_seconds: int) -> str:
        try:
            return json.dumps(
                {"value": value, "expires_at": self.clock() + ttl_seconds},
                default=json_default,
            )
        except (TypeError, ValueError) as exc:
            raise invalid_argument("Cache value is not serializable", error=str(exc)) from exc

    def _decode(self, physical_key: str, raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        try:
            entry = json.loads(raw, object_hook=json_object_hook)
        except (TypeError, ValueError, ArithmeticError):
            self.logger.warning("Failed to deserialize cached payload", key=physical_key)
            return None
        if not isinstance(entry, dict) or "expires_at" not in entry:
            self.logger.warning("Ignoring cache payload without expiry", key=physical_key)
            return None
        return entry

    def _observe(self, operation: str, result: str, start: float) -> None:
        if self.metrics is not None:
            self.metrics.record_cache_operation(self.namespace.name, operation, result, time.perf_counter() - start)
        if self.context_store is not None:
            context = self.context_store.get_context()
            if context is not None:
                context.increment(f"cache.{operation}.{result}")


def create_redis_backend(settings: PlatformSettings) -> redis.Redis:
    """Create the shared Redis connection pool used by every namespace."""
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
    )


def build_cache_clients(
    backend: KeyValueBackend,
    settings: PlatformSettings,
    *,
    metrics: Optional[MetricsCollector] = None,
    context_store: Optional[ContextStore] = None,
    clock: Callable[[], float] = time.time,
) -> Dict[str, CacheClient]:
    """Build one client per configured namespace over a shared backend."""
    clients = {}
    for name, ttl in settings.cache_namespaces.items():
        clients[name] = CacheClient(
            backend,
            CacheNamespace(name, ttl),
            metrics=metrics,
            context_store=context_store,
            strict_writes=settings.cache_strict_writes,
            operation_timeout=settings.cache_operation_timeout_seconds,
            clock=clock,
        )
    return clients
