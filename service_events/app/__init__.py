"""
Events Service package for the Bhandara platform.

The events service is the first consumer of the shared substrate:
- Pagination: offset and cursor listing of events
- Caching: per-event cache in the ``events`` namespace, page cache in ``pages``
- Sessions: cookie sessions resolved from the ``sessions`` namespace
- Context: request id, counters and timings per request

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.pagination_parser: Query-string parsing for paginated endpoints.
- app.sessions: Session cookie dependency.
"""
