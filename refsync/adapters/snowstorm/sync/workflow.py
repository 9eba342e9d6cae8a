"""Default workflow rules for refsets edited outside a review process."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from refsync.adapters.snowstorm.sync.protocols import UserContext
    from refsync.domain.models import Refset


class RefsetAction(str, Enum):
    EDIT_MEMBERS = "edit_members"
    UPDATE_CONCEPT = "update_concept"
    PROMOTE = "promote"
    EXPORT = "export"


EDITABLE_WORKFLOW_STATES = frozenset({"READY_FOR_EDIT", "IN_EDIT"})


@dataclass(frozen=True)
class OperatorUser:
    user_id: str


class BranchPathWorkflow:
    """Edits go straight to the refset's stored branch.

    Member edits and concept updates require an editable workflow state;
    exports are always allowed.
    """

    def branch_path(self, refset: Refset) -> str:
        return refset.branch_path

    def is_action_permitted(self, refset: Refset, action: str, user: UserContext) -> bool:
        if action == RefsetAction.EXPORT:
            return True
        if not user.user_id:
            return False
        if action == RefsetAction.PROMOTE:
            return refset.active
        return refset.workflow_status in EDITABLE_WORKFLOW_STATES
