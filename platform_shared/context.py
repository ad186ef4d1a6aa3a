"""
Request-scoped context propagation for the Bhandara platform.

A ``ContextStore`` owns one ``contextvars.ContextVar`` slot. ``run``/``scope``
make a ``RequestContext`` the active one for a dynamic extent; asyncio tasks
created inside that extent copy the slot, so every continuation (including
ones resumed after awaiting I/O) observes the same context object without it
being passed at each call site. Thread hand-offs go through ``bind``.

Fan-out branches of one request share the *same* ``RequestContext``. Its
counters, timings and error log must therefore only be mutated through the
merge-safe helpers (``increment``, ``record_timing``, ``record_error``).
"""

import contextvars
import functools
import inspect
import secrets
import string
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import structlog

REQUEST_ID_ALPHABET = string.ascii_letters + string.digits
REQUEST_ID_LENGTH = 21

logger = structlog.get_logger("platform.context")


def generate_request_id(length: int = REQUEST_ID_LENGTH) -> str:
    """Generate an opaque alphanumeric request id."""
    return "".join(secrets.choice(REQUEST_ID_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class Session:
    """Credentials established for the caller of a request."""
    access_token: str
    refresh_token: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ContextErrorRecord:
    message: str
    timestamp: float


@dataclass
class RequestContext:
    """Identity and diagnostics for one inbound request."""
    request_id: str = field(default_factory=generate_request_id)
    session: Optional[Session] = None
    metrics: Dict[str, float] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)
    errors: List[ContextErrorRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def increment(self, name: str, amount: float = 1) -> float:
        """Add ``amount`` to a counter and return the new value."""
        with self._lock:
            value = self.metrics.get(name, 0) + amount
            self.metrics[name] = value
            return value

    def record_timing(self, name: str, duration: float) -> float:
        """Accumulate a duration sample under ``name``."""
        with self._lock:
            value = self.timings.get(name, 0) + duration
            self.timings[name] = value
            return value

    def record_error(self, message: str, timestamp: Optional[float] = None) -> None:
        record = ContextErrorRecord(message=message, timestamp=timestamp if timestamp is not None else time.time())
        with self._lock:
            self.errors.append(record)

    def snapshot(self) -> Dict[str, Any]:
        """Return a plain copy suitable for logging or serialization."""
        with self._lock:
            return {
                "request_id": self.request_id,
                "has_session": self.session is not None,
                "metrics": dict(self.metrics),
                "timings": dict(self.timings),
                "errors": [{"message": e.message, "timestamp": e.timestamp} for e in self.errors],
            }


CONTEXT_FIELDS = frozenset({"request_id", "session", "metrics", "timings", "errors"})


class ContextStore:
    """Per-execution-scope holder for the active ``RequestContext``."""

    def __init__(self, name: str = "request_context"):
        self.name = name
        self._current: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(name, default=None)

    @contextmanager
    def scope(self, context: RequestContext) -> Iterator[RequestContext]:
        """Make ``context`` active until the block exits, on every exit path."""
        token = self._current.set(context)
        try:
            yield context
        finally:
            self._current.reset(token)

    def run(self, context: RequestContext, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute ``fn`` with ``context`` active.

        Coroutine functions (or callables returning an awaitable) yield an
        awaitable that keeps the scope open until the awaited work completes.
        """
        with self.scope(context):
            result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            return self._await_within(context, result)
        return result

    async def _await_within(self, context: RequestContext, awaitable: Any) -> Any:
        with self.scope(context):
            return await awaitable

    def bind(self, fn: Callable[..., Any]) -> Callable[..., Any]:
        """Capture the active context so ``fn`` sees it when run on another thread."""
        context = self.get_context()

        @functools.wraps(fn)
        def bound(*args: Any, **kwargs: Any) -> Any:
            if context is None:
                return fn(*args, **kwargs)
            return self.run(context, fn, *args, **kwargs)

        return bound

    def get_context(self) -> Optional[RequestContext]:
        return self._current.get()

    def get_request_id(self) -> Optional[str]:
        context = self._current.get()
        return context.request_id if context else None

    def get_session(self) -> Optional[Session]:
        context = self._current.get()
        return context.session if context else None

    def update_context(self, **updates: Any) -> None:
        """Merge ``updates`` into the active context; no-op outside a scope."""
        context = self._current.get()
        if context is None:
            return
        for key, value in updates.items():
            self._assign(context, key, value)

    def set_context_value(self, key: str, value: Any) -> None:
        context = self._current.get()
        if context is None:
            return
        self._assign(context, key, value)

    @staticmethod
    def _assign(context: RequestContext, key: str, value: Any) -> None:
        if key not in CONTEXT_FIELDS:
            logger.warning("Ignoring unknown request context field", field=key)
            return
        setattr(context, key, value)


# Default store used by the HTTP entry layer and the logging processors.
request_context = ContextStore()
