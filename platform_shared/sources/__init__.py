"""
Query sources the paginator can read from.
"""

from platform_shared.sources.postgres import PostgresQuerySource
from platform_shared.sources.rest import RestQuerySource

__all__ = ["PostgresQuerySource", "RestQuerySource"]
