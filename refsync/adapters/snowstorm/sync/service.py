"""Reference set synchronization facade.

Resolves a stored refset and its working branch, checks the workflow, then
delegates to the synchronizer, the read paths and the branch operations.
Business-rule failures on membership calls come back as a ``SyncReport``
carrying a message instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import TYPE_CHECKING, Any

from refsync.adapters.snowstorm.branches import SnowstormBranchService
from refsync.adapters.snowstorm.concepts import SnowstormConceptService
from refsync.adapters.snowstorm.exports import ExportRequest, ExportType, SnowstormExportService
from refsync.adapters.snowstorm.jobs import JobPoller
from refsync.adapters.snowstorm.models import SyncReport
from refsync.adapters.snowstorm.sync.member_reads import SnowstormMemberReads
from refsync.adapters.snowstorm.sync.members import MembershipSynchronizer
from refsync.adapters.snowstorm.sync.status import MembershipStatusStore
from refsync.adapters.snowstorm.sync.workflow import RefsetAction
from refsync.core.logging_utils import generate_correlation_id
from refsync.domain.exceptions import (
    ActionNotPermittedError,
    DomainException,
    RefsetLockedError,
    RefsetNotFoundError,
)
from refsync.domain.models import MembershipOperation
from refsync.infrastructure.cache.branch_cache import BranchCache

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from pathlib import Path

    from refsync.adapters.snowstorm.client import SnowstormClient
    from refsync.adapters.snowstorm.jobs import JobOutcome
    from refsync.adapters.snowstorm.sync.protocols import (
        DownloadingClientProtocol,
        PersistenceService,
        UserContext,
        WorkflowService,
    )
    from refsync.config import SyncLimitsConfig
    from refsync.domain.models import Concept, MemberStatus, Refset

logger = logging.getLogger(__name__)


class RefsetSyncService:
    def __init__(
        self,
        remote: DownloadingClientProtocol,
        limits: SyncLimitsConfig,
        *,
        persistence: PersistenceService,
        workflow: WorkflowService,
        cache: BranchCache | None = None,
        status_store: MembershipStatusStore | None = None,
        base_url: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._persistence = persistence
        self._workflow = workflow
        self.cache = cache or BranchCache()
        self.status_store = status_store or MembershipStatusStore()
        poller = JobPoller(remote, sleep=sleep)

        self.concepts = SnowstormConceptService(remote, self.cache, limits)
        self.reads = SnowstormMemberReads(remote, self.cache, limits, self.concepts)
        self.branches = SnowstormBranchService(
            remote, self.cache, limits, poller=poller, sleep=sleep, today=today
        )
        self.exports = SnowstormExportService(remote)
        self.synchronizer = MembershipSynchronizer(
            remote,
            self.cache,
            limits,
            concepts=self.concepts,
            reads=self.reads,
            persistence=persistence,
            status_store=self.status_store,
            poller=poller,
            base_url=base_url,
        )

    @classmethod
    def from_client(
        cls,
        client: SnowstormClient,
        limits: SyncLimitsConfig,
        *,
        persistence: PersistenceService,
        workflow: WorkflowService,
        cache: BranchCache | None = None,
    ) -> RefsetSyncService:
        return cls(
            client,
            limits,
            persistence=persistence,
            workflow=workflow,
            cache=cache,
            base_url=client.base_url,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, refset_key: str) -> tuple[Refset, str]:
        """Stored refset and its working branch.

        Raises:
            RefsetNotFoundError: If nothing is stored under ``refset_key``.
        """
        refset = await self._persistence.get(refset_key)
        if refset is None:
            msg = f"Refset {refset_key} was not found"
            raise RefsetNotFoundError(msg, {"refset_key": refset_key})
        return refset, self._workflow.branch_path(refset)

    async def _authorize(
        self, refset_key: str, action: RefsetAction, user: UserContext
    ) -> tuple[Refset, str]:
        refset, branch = await self.resolve(refset_key)
        if refset.locked and action is not RefsetAction.EXPORT:
            msg = f"Refset {refset.refset_id} is locked"
            raise RefsetLockedError(msg, {"refset_id": refset.refset_id})
        if not self._workflow.is_action_permitted(refset, action.value, user):
            msg = f"Action {action.value} is not permitted on refset {refset.refset_id}"
            raise ActionNotPermittedError(
                msg, {"refset_id": refset.refset_id, "user_id": user.user_id}
            )
        return refset, branch

    @staticmethod
    def _rejected(
        refset_key: str, operation: MembershipOperation, exc: DomainException, cid: str
    ) -> SyncReport:
        logger.warning(
            "refset_sync_rejected",
            extra={
                "correlation_id": cid,
                "refset_key": refset_key,
                "operation": operation.value,
                "reason": exc.message,
            },
        )
        return SyncReport(
            refset_id=str(exc.details.get("refset_id", refset_key)),
            operation=operation.value,
            message=exc.message,
            correlation_id=cid,
        )

    # ------------------------------------------------------------------
    # Membership mutations
    # ------------------------------------------------------------------

    async def add_members(
        self, refset_key: str, concept_ids: str | Iterable[str], user: UserContext
    ) -> SyncReport:
        cid = generate_correlation_id()
        try:
            refset, branch = await self._authorize(refset_key, RefsetAction.EDIT_MEMBERS, user)
        except DomainException as exc:
            return self._rejected(refset_key, MembershipOperation.ADDED, exc, cid)
        return await self.synchronizer.add_members(
            refset, branch, concept_ids, user=user.user_id, correlation_id=cid
        )

    async def remove_members(
        self, refset_key: str, concept_ids: str | Iterable[str], user: UserContext
    ) -> SyncReport:
        cid = generate_correlation_id()
        try:
            refset, branch = await self._authorize(refset_key, RefsetAction.EDIT_MEMBERS, user)
        except DomainException as exc:
            return self._rejected(refset_key, MembershipOperation.REMOVED, exc, cid)
        return await self.synchronizer.remove_members(
            refset, branch, concept_ids, user=user.user_id, correlation_id=cid
        )

    async def add_members_from_ecl(
        self, refset_key: str, ecl: str, user: UserContext
    ) -> SyncReport:
        """Resolve ``ecl`` on the refset branch and add every match."""
        cid = generate_correlation_id()
        try:
            refset, branch = await self._authorize(refset_key, RefsetAction.EDIT_MEMBERS, user)
        except DomainException as exc:
            return self._rejected(refset_key, MembershipOperation.ADDED, exc, cid)

        concept_ids = await self.concepts.get_concept_ids_from_ecl(branch, ecl, correlation_id=cid)
        if not concept_ids:
            logger.info(
                "refset_ecl_empty",
                extra={"correlation_id": cid, "refset_id": refset.refset_id, "ecl": ecl},
            )
            return SyncReport(
                refset_id=refset.refset_id,
                operation=MembershipOperation.ADDED.value,
                member_count=refset.member_count,
                message="The ECL expression matched no concepts",
                correlation_id=cid,
            )
        return await self.synchronizer.add_members(
            refset, branch, concept_ids, user=user.user_id, correlation_id=cid
        )

    def membership_status(self, refset: Refset) -> dict[str, MemberStatus]:
        """Statuses of the last add or remove call on ``refset``."""
        return self.status_store.snapshot(refset.session_key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_member_count(self, refset_key: str) -> int:
        refset, branch = await self.resolve(refset_key)
        return await self.reads.get_member_count(branch, refset.refset_id)

    async def get_members(self, refset_key: str, *, edit_mode: bool = False) -> list[Concept]:
        refset, branch = await self.resolve(refset_key)
        return await self.reads.get_members(
            branch, refset.refset_id, edit_mode=edit_mode, correlation_id=generate_correlation_id()
        )

    async def flag_membership(self, refset_key: str, concepts: list[Concept]) -> list[Concept]:
        refset, branch = await self.resolve(refset_key)
        await self.reads.enrich_membership(
            branch, refset.refset_id, concepts, correlation_id=generate_correlation_id()
        )
        return concepts

    async def get_member_ancestors(self, refset_key: str) -> set[str]:
        refset, branch = await self.resolve(refset_key)
        return await self.reads.cache_member_ancestors(
            branch, refset.refset_id, correlation_id=generate_correlation_id()
        )

    async def get_concept_details(self, refset_key: str, concept_id: str) -> dict[str, Any]:
        refset, branch = await self.resolve(refset_key)
        return await self.concepts.get_concept_details(branch, refset.refset_id, concept_id)

    async def get_concept_ancestors(self, refset_key: str, concept_id: str) -> list[Concept]:
        refset, branch = await self.resolve(refset_key)
        return await self.concepts.get_concept_ancestors(branch, refset.refset_id, concept_id)

    async def get_member_history(
        self, refset_key: str, concept_id: str, edition_path: str
    ) -> list[dict[str, str]]:
        """Membership changes of ``concept_id`` across the edition's versions."""
        refset, _ = await self.resolve(refset_key)
        versions = await self.branches.get_branch_versions(edition_path)
        version_branches = [f"{edition_path}/{version}" for version in reversed(versions)]
        return await self.reads.get_member_history(refset.refset_id, concept_id, version_branches)

    # ------------------------------------------------------------------
    # Refset concept, branches and exports
    # ------------------------------------------------------------------

    async def update_refset_concept(
        self,
        refset_key: str,
        user: UserContext,
        *,
        active: bool | None = None,
        module_id: str | None = None,
    ) -> dict[str, Any]:
        refset, branch = await self._authorize(refset_key, RefsetAction.UPDATE_CONCEPT, user)
        concept = await self.concepts.update_refset_concept(
            branch, refset.refset_id, active=active, module_id=module_id
        )
        if active is not None:
            refset.active = active
        if module_id is not None:
            refset.module_id = module_id
        refset.touch(user.user_id)
        await self._persistence.update(refset)
        return concept

    async def rebase_refset_branch(self, refset_key: str, user: UserContext) -> JobOutcome:
        _, branch = await self._authorize(refset_key, RefsetAction.EDIT_MEMBERS, user)
        return await self.branches.rebase_branch(branch, correlation_id=generate_correlation_id())

    async def promote_refset_branch(
        self, refset_key: str, user: UserContext, *, comment: str | None = None
    ) -> JobOutcome:
        _, branch = await self._authorize(refset_key, RefsetAction.PROMOTE, user)
        return await self.branches.promote_branch(
            branch, comment=comment, correlation_id=generate_correlation_id()
        )

    async def export_refset(
        self,
        refset_key: str,
        destination: str | Path,
        user: UserContext,
        *,
        export_type: ExportType = ExportType.SNAPSHOT,
    ) -> int:
        """Build an RF2 archive of the refset branch and save it to ``destination``."""
        refset, branch = await self._authorize(refset_key, RefsetAction.EXPORT, user)
        request = ExportRequest(branch_path=branch, refset_ids=[refset.refset_id], type=export_type)
        return await self.exports.export_to_file(request, destination)
