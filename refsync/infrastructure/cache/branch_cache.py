"""Per-branch keyed cache for terminology reads.

Entries live under ``branch -> partition -> key``. Reads fill it, and any
mutation of a branch drops every partition of that branch at once through
``invalidate_all``. Partitions are never invalidated one at a time.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_MISSING = object()


class CachePartition(str, Enum):
    VERSIONS = "versions"
    CONCEPT_DETAILS = "concept_details"
    TAXONOMY_ANCESTORS = "taxonomy_ancestors"
    MEMBER_ANCESTORS = "member_ancestors"
    CONCEPT_LISTS = "concept_lists"


class BranchCache:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, dict[CachePartition, dict[str, Any]]] = {}

    def contains(self, branch: str, key: str, partition: CachePartition) -> bool:
        with self._lock:
            return key in self._entries.get(branch, {}).get(partition, {})

    def get(self, branch: str, key: str, partition: CachePartition, default: Any = None) -> Any:
        with self._lock:
            value = self._entries.get(branch, {}).get(partition, {}).get(key, _MISSING)
        if value is _MISSING:
            return default
        logger.debug(
            "branch_cache_hit",
            extra={"branch": branch, "partition": partition.value, "key": key},
        )
        return value

    def put(self, branch: str, key: str, value: Any, partition: CachePartition) -> None:
        with self._lock:
            self._entries.setdefault(branch, {}).setdefault(partition, {})[key] = value

    def invalidate_all(self, branch: str) -> None:
        with self._lock:
            dropped = self._entries.pop(branch, None)
        logger.debug(
            "branch_cache_invalidated",
            extra={
                "branch": branch,
                "entries": sum(len(p) for p in dropped.values()) if dropped else 0,
            },
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self, branch: str | None = None) -> int:
        with self._lock:
            branches = [branch] if branch is not None else list(self._entries)
            return sum(
                len(entries)
                for name in branches
                for entries in self._entries.get(name, {}).values()
            )
