"""Reference set membership synchronization."""

from refsync.adapters.snowstorm.sync.members import MembershipSynchronizer
from refsync.adapters.snowstorm.sync.service import RefsetSyncService
from refsync.adapters.snowstorm.sync.status import MembershipStatusStore

__all__ = ["MembershipStatusStore", "MembershipSynchronizer", "RefsetSyncService"]
