"""Cache helpers."""

from refsync.infrastructure.cache.branch_cache import BranchCache, CachePartition

__all__ = ["BranchCache", "CachePartition"]
