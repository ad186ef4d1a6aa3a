"""
Session resolution for authenticated events endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request

from platform_shared.cache import CacheClient
from platform_shared.context import ContextStore, Session
from platform_shared.errors import unauthorized
from platform_shared.logging import get_logger


def user_sessions_key(user_id: str) -> str:
    return f"{user_id}:sessions"


class SessionResolver:
    """FastAPI dependency that loads the caller's session into the request context.

    The session cookie value is the key of a stored session in the
    ``sessions`` cache namespace. When a ``users`` namespace is given, each
    user also gets a hash of their session keys and expiry instants.
    """

    def __init__(
        self,
        sessions: CacheClient,
        store: ContextStore,
        cookie_name: str,
        users: Optional[CacheClient] = None,
    ):
        self.sessions = sessions
        self.store = store
        self.cookie_name = cookie_name
        self.users = users
        self.logger = get_logger("events.sessions")

    async def __call__(self, request: Request) -> Session:
        session_key = request.cookies.get(self.cookie_name)
        if not session_key:
            raise unauthorized("Missing session cookie")

        stored = await self.sessions.get_item(session_key)
        if not isinstance(stored, dict) or not stored.get("access_token"):
            self.logger.info("Unknown or expired session", cookie=self.cookie_name)
            raise unauthorized("Session expired or invalid")

        session = Session(
            access_token=stored["access_token"],
            refresh_token=stored.get("refresh_token", ""),
            user_id=stored.get("user_id"),
        )
        self.store.update_context(session=session)
        return session

    async def store_session(self, session_key: str, session: Session, ttl: Optional[int] = None) -> bool:
        """Persist ``session`` under ``session_key`` and index it under its user."""
        ttl_seconds = ttl or self.sessions.namespace.default_ttl_seconds
        payload: Dict[str, Any] = {
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "user_id": session.user_id,
        }
        stored = await self.sessions.set_item(session_key, payload, ttl_seconds)
        if stored and self.users is not None and session.user_id:
            expires_at = datetime.fromtimestamp(self.sessions.clock() + ttl_seconds, tz=timezone.utc)
            await self.users.set_hash_field(user_sessions_key(session.user_id), session_key, expires_at, ttl_seconds)
        return stored

    async def list_sessions(self, user_id: str) -> Dict[str, datetime]:
        """Session keys of ``user_id`` mapped to their expiry instants."""
        if self.users is None:
            return {}
        return await self.users.get_hash(user_sessions_key(user_id))

    async def revoke_session(self, user_id: str, session_key: str) -> None:
        """Drop a stored session and its entry in the user's index."""
        await self.sessions.delete_item(session_key, strict=True)
        if self.users is not None:
            await self.users.delete_hash_field(user_sessions_key(user_id), session_key)
        self.logger.info("Session revoked", user_id=user_id)
