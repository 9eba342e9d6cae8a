"""Terminology server (Snowstorm) adapter."""

from refsync.adapters.snowstorm.client import RemoteResponse, SnowstormClient
from refsync.adapters.snowstorm.errors import (
    EnrichmentError,
    JobFailedError,
    JobTimeoutError,
    RemoteCallFailed,
    RemoteConnectionError,
    SnowstormClientError,
)
from refsync.adapters.snowstorm.jobs import JobPoller, JobPolicy
from refsync.adapters.snowstorm.paging import CursorPaginator, PagedResult

__all__ = [
    "CursorPaginator",
    "EnrichmentError",
    "JobFailedError",
    "JobPolicy",
    "JobPoller",
    "JobTimeoutError",
    "PagedResult",
    "RemoteCallFailed",
    "RemoteConnectionError",
    "RemoteResponse",
    "SnowstormClient",
    "SnowstormClientError",
]
