"""
Events service for the Bhandara platform.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, Request

from platform_shared.base_service import BaseService
from platform_shared.cache import KeyValueBackend, build_cache_clients, create_redis_backend
from platform_shared.config import PlatformSettings, get_settings
from platform_shared.context import ContextStore, Session
from platform_shared.errors import ErrorKind, PlatformError, not_found
from platform_shared.http_auth import create_data_client
from platform_shared.metrics import MetricsCollector
from platform_shared.pagination import Paginator
from platform_shared.query import Filter, PageQuery, QuerySource
from platform_shared.sources import PostgresQuerySource, RestQuerySource

from .pagination_parser import parse_pagination_params
from .sessions import SessionResolver

EVENTS_TABLE = "events"
EQUALITY_FILTERS = ("hostId", "status")


class EventsService(BaseService):
    """Events API service implementation."""

    def __init__(
        self,
        settings: Optional[PlatformSettings] = None,
        cache_backend: Optional[KeyValueBackend] = None,
        event_source: Optional[QuerySource] = None,
        clock: Callable[[], float] = time.time,
        store: Optional[ContextStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__("events", settings or get_settings(service_name="events"), store, metrics)
        self.data_client = None

        self.cache_backend = cache_backend if cache_backend is not None else create_redis_backend(self.config)
        self.caches = build_cache_clients(
            self.cache_backend,
            self.config,
            metrics=self.metrics,
            context_store=self.store,
            clock=clock,
        )
        self.event_source = event_source if event_source is not None else self._create_event_source()
        self.paginator = Paginator(
            self.config.pagination_tiebreak_column or None,
            max_limit=self.config.pagination_max_limit,
            metrics=self.metrics,
            context_store=self.store,
            page_cache=self.caches.get("pages"),
        )
        self.sessions = SessionResolver(
            self.caches["sessions"],
            self.store,
            self.config.session_cookie_name,
            users=self.caches.get("users"),
        )

        @self.app.on_event("startup")
        async def _startup():
            if isinstance(self.event_source, PostgresQuerySource):
                await self.event_source.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            if isinstance(self.event_source, PostgresQuerySource):
                await self.event_source.stop()
            if self.data_client is not None:
                await self.data_client.aclose()
            close = getattr(self.cache_backend, "aclose", None)
            if close is not None:
                await close()

        self._setup_events_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.events_service = self

    def _create_event_source(self) -> QuerySource:
        if self.config.data_backend == "postgres":
            return PostgresQuerySource(EVENTS_TABLE, dsn=self.config.postgres_dsn, name=EVENTS_TABLE)
        self.data_client = create_data_client(self.config, self.store)
        return RestQuerySource(self.data_client, EVENTS_TABLE, name=EVENTS_TABLE)

    async def _check_dependencies(self) -> Dict[str, str]:
        try:
            await self.caches["events"].get_item("__health__")
            cache_status = "ok"
        except PlatformError as e:
            if e.kind is not ErrorKind.CACHE_UNAVAILABLE:
                raise
            cache_status = "unavailable"
        return {"cache": cache_status, "events_source": self.config.data_backend}

    async def load_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        """Read one event row from the source, or None when it does not exist."""
        rows = await self.event_source.fetch(
            PageQuery(filters=(Filter("id", value=event_id),), limit=1)
        )
        return dict(rows[0]) if rows else None

    def _setup_events_routes(self):
        """Set up events routes."""

        @self.app.get("/api/v1/events")
        async def list_events(request: Request):
            """Paginated events listing."""
            params, filters = parse_pagination_params(
                request.query_params,
                default_limit=self.config.pagination_default_limit,
                max_limit=self.config.pagination_max_limit,
            )
            equality: List[Filter] = [
                Filter(column, value=request.query_params[column])
                for column in EQUALITY_FILTERS
                if request.query_params.get(column)
            ]
            result = await self.paginator.paginate(self.event_source, equality + filters, params)
            return result.to_envelope()

        @self.app.get("/api/v1/events/{event_id}")
        async def get_event(event_id: str):
            """Single event, served from the events cache when present."""
            event = await self.caches["events"].get_or_compute(event_id, lambda: self.load_event(event_id))
            if event is None:
                raise not_found("Event not found", event_id=event_id)
            return {"data": event, "error": None}

        @self.app.delete("/api/v1/events/{event_id}/cache")
        async def invalidate_event(event_id: str):
            """Drop a cached event and every cached events page."""
            await self.caches["events"].delete_item(event_id, strict=True)
            pages_invalidated = 0
            if "pages" in self.caches:
                pages_invalidated = await self.caches["pages"].invalidate(f"{self.event_source.name}:*")
            self.logger.info("Event cache invalidated", event_id=event_id, pages_invalidated=pages_invalidated)
            return {
                "data": {"id": event_id, "invalidated": True, "pages_invalidated": pages_invalidated},
                "error": None,
            }

        @self.app.get("/api/v1/me/context")
        async def me_context(session: Session = Depends(self.sessions)):
            """Echo the caller's request context."""
            context = self.store.get_context()
            snapshot = context.snapshot() if context is not None else {}
            snapshot["user_id"] = session.user_id
            return {"data": snapshot, "error": None}

        @self.app.get("/api/v1/me/sessions")
        async def my_sessions(session: Session = Depends(self.sessions)):
            """List the caller's active sessions."""
            sessions = await self.sessions.list_sessions(session.user_id) if session.user_id else {}
            items = [
                {"id": session_key, "expiresAt": expires_at}
                for session_key, expires_at in sorted(sessions.items())
            ]
            return {"data": {"items": items}, "error": None}

        @self.app.delete("/api/v1/me/sessions/{session_key}")
        async def revoke_session(session_key: str, session: Session = Depends(self.sessions)):
            """Sign one of the caller's sessions out."""
            sessions = await self.sessions.list_sessions(session.user_id) if session.user_id else {}
            if session_key not in sessions:
                raise not_found("Session not found")
            await self.sessions.revoke_session(session.user_id, session_key)
            return {"data": {"id": session_key, "revoked": True}, "error": None}


def create_app(**kwargs):
    """Create FastAPI application."""
    service = EventsService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = EventsService()
    service.run()
