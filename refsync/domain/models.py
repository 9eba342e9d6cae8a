"""Reference set domain models.

These are framework-agnostic: the remote adapter fills them from server
payloads and the persistence layer maps ``Refset`` to its table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class MembershipOperation(str, Enum):
    ADDED = "Added"
    REMOVED = "Removed"


class MembershipOutcome(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    ALREADY_MEMBER = "Already Member"


class FailureReason(str, Enum):
    """Why a single identifier failed within a batch call."""

    INVALID_CONCEPT = "invalid_concept"
    NOT_MEMBER = "not_member"
    REMOTE_ERROR = "remote_error"
    JOB_FAILED = "job_failed"
    JOB_TIMEOUT = "job_timeout"


class MemberHistoryEvent(str, Enum):
    ADDED = "Added"
    ADDED_INACTIVE = "Added as Inactive"
    ACTIVATED = "Activated"
    INACTIVATED = "Inactivated"


@dataclass
class MemberStatus:
    """Outcome of one identifier within one add/remove call."""

    operation: MembershipOperation
    status: MembershipOutcome
    name: str | None = None
    active: bool | None = None
    reason: FailureReason | None = None

    def mark_success(self) -> None:
        self.status = MembershipOutcome.SUCCESS
        self.reason = None

    def mark_failed(self, reason: FailureReason) -> None:
        self.status = MembershipOutcome.FAILED
        self.reason = reason

    def mark_already_member(self) -> None:
        self.status = MembershipOutcome.ALREADY_MEMBER
        self.reason = None

    def to_dict(self) -> dict[str, str | bool | None]:
        return {
            "operation": self.operation.value,
            "status": self.status.value,
            "name": self.name,
            "active": self.active,
            "reason": self.reason.value if self.reason else None,
        }


@dataclass
class Concept:
    """A concept as shown in a reference set listing.

    ``name``, ``has_children`` and ``is_member`` start unset and are filled
    in by the enrichment passes.
    """

    code: str
    name: str | None = None
    active: bool | None = None
    has_children: bool | None = None
    is_member: bool | None = None
    member_id: str | None = None
    released: bool | None = None
    effective_time: str | None = None
    descriptions: list[dict[str, str]] = field(default_factory=list)


@dataclass
class Refset:
    """A curated reference set and its working branch state."""

    refset_id: str
    name: str
    module_id: str
    branch_path: str
    id: int | None = None
    member_count: int = -1
    version_status: str = "In Development"
    workflow_status: str = "READY_FOR_EDIT"
    edit_branch_id: str | None = None
    refset_branch_id: str | None = None
    project_id: str | None = None
    locked: bool = False
    active: bool = True
    modified_by: str | None = None
    modified_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def session_key(self) -> str:
        """Key of this refset's membership status session."""
        return str(self.id) if self.id is not None else self.refset_id

    def touch(self, user: str | None) -> None:
        self.modified_by = user
        self.modified_at = datetime.now(UTC)
