"""
Outbound credential injection for calls to the authenticated data API.
"""

from fnmatch import fnmatchcase
from typing import Generator, Iterable, List, Optional

import httpx

from platform_shared.config import PlatformSettings
from platform_shared.context import ContextStore, request_context
from platform_shared.logging import get_logger

REQUEST_ID_HEADER = "X-Request-ID"


class ContextBearerAuth(httpx.Auth):
    """Attach the active session's bearer token to outbound requests.

    Requests whose path matches one of ``exempt_paths`` (glob patterns) are
    sent untouched. Outside a request scope, or without a session, only the
    request id (when known) is forwarded.
    """

    def __init__(self, store: ContextStore = request_context, exempt_paths: Optional[Iterable[str]] = None,
                 api_key: Optional[str] = None):
        self.store = store
        self.exempt_paths: List[str] = list(exempt_paths or [])
        self.api_key = api_key
        self.logger = get_logger("platform.http_auth")

    def is_exempt(self, path: str) -> bool:
        return any(fnmatchcase(path, pattern) for pattern in self.exempt_paths)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self.is_exempt(request.url.path):
            yield request
            return

        if self.api_key and "apikey" not in request.headers:
            request.headers["apikey"] = self.api_key

        context = self.store.get_context()
        if context is not None:
            request.headers.setdefault(REQUEST_ID_HEADER, context.request_id)
            if context.session is not None:
                request.headers["Authorization"] = f"Bearer {context.session.access_token}"
            else:
                self.logger.debug("No session in request context", path=request.url.path)

        yield request


def create_data_client(settings: PlatformSettings, store: ContextStore = request_context,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Build the HTTP client used for data API calls."""
    return httpx.AsyncClient(
        base_url=settings.data_api_url,
        auth=ContextBearerAuth(store, settings.auth_exempt_paths, api_key=settings.data_api_key),
        timeout=10.0,
        transport=transport,
    )
