"""Membership synchronization: add and remove reference set members.

Both paths record one status per requested identifier in the status store,
drop the branch cache when they touch the server, and re-read the member
count from the server before persisting it. Failures are recorded per
identifier; only a connectivity failure while looking identifiers up aborts
a call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import TYPE_CHECKING, Any

from refsync.adapters.snowstorm.errors import (
    JobError,
    JobFailedError,
    JobTimeoutError,
    RemoteCallFailed,
    RemoteConnectionError,
)
from refsync.adapters.snowstorm.jobs import JobPolicy, JobPoller
from refsync.adapters.snowstorm.models import MemberRecord, SyncReport
from refsync.core.batching import (
    json_array_budget,
    parse_identifiers,
    split_by_count,
    split_by_length,
    url_list_budget,
)
from refsync.core.logging_utils import generate_correlation_id
from refsync.domain.models import FailureReason, MembershipOperation, MembershipOutcome

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from refsync.adapters.snowstorm.concepts import SnowstormConceptService
    from refsync.adapters.snowstorm.sync.member_reads import SnowstormMemberReads
    from refsync.adapters.snowstorm.sync.protocols import PersistenceService, RemoteClientProtocol
    from refsync.adapters.snowstorm.sync.status import MembershipStatusStore
    from refsync.config import SyncLimitsConfig
    from refsync.domain.models import Refset
    from refsync.infrastructure.cache.branch_cache import BranchCache

logger = logging.getLogger(__name__)

_RECOVERABLE_ERRORS = (JobError, RemoteCallFailed, RemoteConnectionError)


def _failure_reason(exc: Exception) -> FailureReason:
    if isinstance(exc, JobTimeoutError):
        return FailureReason.JOB_TIMEOUT
    if isinstance(exc, JobFailedError):
        return FailureReason.JOB_FAILED
    return FailureReason.REMOTE_ERROR


def _pick_reactivation_candidate(records: Sequence[MemberRecord]) -> MemberRecord:
    """Prefer a released record so its release history is kept."""
    released = [record for record in records if record.released]
    return (released or list(records))[0]


class MembershipSynchronizer:
    def __init__(
        self,
        remote: RemoteClientProtocol,
        cache: BranchCache,
        limits: SyncLimitsConfig,
        *,
        concepts: SnowstormConceptService,
        reads: SnowstormMemberReads,
        persistence: PersistenceService,
        status_store: MembershipStatusStore,
        poller: JobPoller | None = None,
        base_url: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._limits = limits
        self._concepts = concepts
        self._reads = reads
        self._persistence = persistence
        self._status = status_store
        self._poller = poller or JobPoller(remote, sleep=sleep)
        self._base_url = base_url.rstrip("/")

    def bulk_policy(self, operation: str) -> JobPolicy:
        return JobPolicy(
            operation=operation,
            poll_interval=self._limits.bulk_poll_interval_sec,
            max_wait=self._limits.bulk_max_wait_sec,
            initial_delay=self._limits.bulk_initial_delay_sec,
            completed_states=frozenset({"COMPLETED"}),
            failed_states=frozenset({"FAILED"}),
        )

    # ------------------------------------------------------------------
    # Add path
    # ------------------------------------------------------------------

    async def add_members(
        self,
        refset: Refset,
        branch: str,
        concept_ids: str | Iterable[str],
        *,
        user: str | None = None,
        correlation_id: str | None = None,
    ) -> SyncReport:
        cid = correlation_id or generate_correlation_id()
        started = time.monotonic()
        ids = parse_identifiers(concept_ids)
        key = refset.session_key
        self._status.start(key, MembershipOperation.ADDED, ids)
        logger.info(
            "refset_add_members_started",
            extra={"correlation_id": cid, "refset_id": refset.refset_id, "requested": len(ids)},
        )
        if not ids:
            return self._report(refset, MembershipOperation.ADDED, ids, cid, started,
                                message="No concept ids were supplied")

        valid = await self._verify_concepts(refset, branch, ids, cid)
        existing, lookup_failed = await self._search_members(refset, branch, valid, cid)

        to_insert: list[str] = []
        to_reactivate: list[MemberRecord] = []
        for identifier in valid:
            if identifier in lookup_failed:
                continue
            records = existing.get(identifier, [])
            if any(record.active for record in records):
                self._status.mark_already_member(key, identifier)
            elif records:
                to_reactivate.append(_pick_reactivation_candidate(records))
            else:
                to_insert.append(identifier)

        succeeded: list[str] = []
        try:
            succeeded.extend(await self._insert_members(refset, branch, to_insert, cid))
            succeeded.extend(
                await self._bulk_update(
                    refset,
                    branch,
                    [record.reactivation_body() for record in to_reactivate],
                    [record.referenced_component_id for record in to_reactivate],
                    "bulk_reactivate_members",
                    cid,
                )
            )
        finally:
            self._cache.invalidate_all(branch)

        self._status.mark_success(key, succeeded)
        await self._refresh_member_count(refset, branch, user, cid)
        report = self._report(refset, MembershipOperation.ADDED, ids, cid, started)
        logger.info(
            "refset_add_members_finished",
            extra={
                "correlation_id": cid,
                "refset_id": refset.refset_id,
                "inserted": len(to_insert),
                "reactivated": len(to_reactivate),
                "succeeded": report.succeeded,
                "already_member": report.already_member,
                "failed": report.failed,
                "member_count": report.member_count,
            },
        )
        return report

    async def _verify_concepts(
        self, refset: Refset, branch: str, ids: list[str], cid: str
    ) -> list[str]:
        """Return the ids that exist on the branch, recording the rest as invalid.

        RemoteConnectionError propagates and aborts the call.
        """
        key = refset.session_key
        budget = json_array_budget(
            self._limits.search_request_max_chars, max_count=self._limits.max_record_length
        )
        found: dict[str, Any] = {}
        unverified: set[str] = set()
        for batch in split_by_length(ids, budget):
            try:
                found.update(
                    await self._concepts.search_concepts(branch, batch, correlation_id=cid)
                )
            except RemoteCallFailed as exc:
                unverified.update(batch)
                self._status.mark_failed(key, batch, FailureReason.REMOTE_ERROR)
                logger.error(
                    "refset_verify_batch_failed",
                    extra={"correlation_id": cid, "batch": len(batch), "error": str(exc)},
                )

        valid: list[str] = []
        invalid: list[str] = []
        for identifier in ids:
            if identifier in unverified:
                continue
            record = found.get(identifier)
            if record is None:
                invalid.append(identifier)
                continue
            self._status.describe(key, identifier, name=record.preferred_term, active=record.active)
            valid.append(identifier)

        if invalid:
            self._status.mark_failed(key, invalid, FailureReason.INVALID_CONCEPT)
            logger.info(
                "refset_invalid_concepts",
                extra={"correlation_id": cid, "refset_id": refset.refset_id, "count": len(invalid)},
            )
        return valid

    async def _search_members(
        self, refset: Refset, branch: str, ids: list[str], cid: str
    ) -> tuple[dict[str, list[MemberRecord]], set[str]]:
        """Existing members (active or not) for ``ids``, keyed by component id."""
        key = refset.session_key
        budget = json_array_budget(
            self._limits.search_request_max_chars, max_count=self._limits.max_record_length
        )
        existing: dict[str, list[MemberRecord]] = {}
        failed: set[str] = set()
        for batch in split_by_length(ids, budget):
            try:
                response = await self._remote.request(
                    "POST",
                    f"{branch}/members/search",
                    params={"limit": self._limits.max_record_length},
                    json={"referenceSet": refset.refset_id, "referencedComponentIds": batch},
                    operation="member_search",
                )
                response.expect(200, operation="member_search")
            except (RemoteCallFailed, RemoteConnectionError) as exc:
                failed.update(batch)
                self._status.mark_failed(key, batch, FailureReason.REMOTE_ERROR)
                logger.error(
                    "refset_member_search_failed",
                    extra={"correlation_id": cid, "batch": len(batch), "error": str(exc)},
                )
                continue
            for item in response.json_dict().get("items", []):
                record = MemberRecord.model_validate(item)
                existing.setdefault(record.referenced_component_id, []).append(record)
        return existing, failed

    def _new_member_body(self, refset: Refset, identifier: str) -> dict[str, Any]:
        return {
            "active": True,
            "refsetId": refset.refset_id,
            "moduleId": refset.module_id,
            "referencedComponentId": identifier,
        }

    async def _insert_members(
        self, refset: Refset, branch: str, ids: list[str], cid: str
    ) -> list[str]:
        if not ids:
            return []
        if len(ids) == 1:
            try:
                response = await self._remote.request(
                    "POST",
                    f"{branch}/members",
                    json=self._new_member_body(refset, ids[0]),
                    operation="add_member",
                )
                response.expect(200, operation="add_member")
            except (RemoteCallFailed, RemoteConnectionError) as exc:
                self._record_failure(refset, ids, exc, "add_member", cid)
                return []
            return ids

        return await self._bulk_update(
            refset,
            branch,
            [self._new_member_body(refset, identifier) for identifier in ids],
            ids,
            "bulk_add_members",
            cid,
        )

    async def _bulk_update(
        self,
        refset: Refset,
        branch: str,
        bodies: list[dict[str, Any]],
        ids: list[str],
        operation: str,
        cid: str,
    ) -> list[str]:
        """Submit ``bodies`` as bulk jobs in count-bounded chunks; returns the ids that landed."""
        succeeded: list[str] = []
        size = self._limits.bulk_member_batch_size
        for body_chunk, id_chunk in zip(
            split_by_count(bodies, size), split_by_count(ids, size), strict=True
        ):
            try:
                await self._poller.run(
                    "POST",
                    f"{branch}/members/bulk",
                    self.bulk_policy(operation),
                    json=body_chunk,
                    expected=(201,),
                    correlation_id=cid,
                )
            except _RECOVERABLE_ERRORS as exc:
                self._record_failure(refset, id_chunk, exc, operation, cid)
                continue
            succeeded.extend(id_chunk)
        return succeeded

    def _record_failure(
        self, refset: Refset, ids: list[str], exc: Exception, operation: str, cid: str
    ) -> None:
        reason = _failure_reason(exc)
        self._status.mark_failed(refset.session_key, ids, reason)
        logger.error(
            "refset_member_operation_failed",
            extra={
                "correlation_id": cid,
                "refset_id": refset.refset_id,
                "operation": operation,
                "count": len(ids),
                "reason": reason.value,
                "error": str(exc),
            },
        )

    # ------------------------------------------------------------------
    # Remove path
    # ------------------------------------------------------------------

    async def remove_members(
        self,
        refset: Refset,
        branch: str,
        concept_ids: str | Iterable[str],
        *,
        user: str | None = None,
        correlation_id: str | None = None,
    ) -> SyncReport:
        cid = correlation_id or generate_correlation_id()
        started = time.monotonic()
        ids = parse_identifiers(concept_ids)
        key = refset.session_key
        self._status.start(key, MembershipOperation.REMOVED, ids)
        logger.info(
            "refset_remove_members_started",
            extra={"correlation_id": cid, "refset_id": refset.refset_id, "requested": len(ids)},
        )
        if not ids:
            return self._report(refset, MembershipOperation.REMOVED, ids, cid, started,
                                message="No concept ids were supplied")

        members, lookup_failed = await self._lookup_active_members(refset, branch, ids, cid)
        not_members = [i for i in ids if i not in members and i not in lookup_failed]
        if not_members:
            self._status.mark_failed(key, not_members, FailureReason.NOT_MEMBER)

        records = [record for found in members.values() for record in found]
        to_delete = [record for record in records if not record.released]
        to_inactivate = [record for record in records if record.released]

        removed: list[str] = []
        try:
            removed.extend(await self._delete_members(refset, branch, to_delete, cid))
            removed.extend(await self._inactivate_members(refset, branch, to_inactivate, cid))
        finally:
            self._cache.invalidate_all(branch)

        # a concept counts as removed only once every active record for it is gone
        removed_counts = Counter(removed)
        succeeded = [i for i, found in members.items() if removed_counts[i] == len(found)]
        self._status.mark_success(key, succeeded)
        await self._refresh_member_count(refset, branch, user, cid)
        report = self._report(refset, MembershipOperation.REMOVED, ids, cid, started)
        logger.info(
            "refset_remove_members_finished",
            extra={
                "correlation_id": cid,
                "refset_id": refset.refset_id,
                "deleted": len(to_delete),
                "inactivated": len(to_inactivate),
                "succeeded": report.succeeded,
                "failed": report.failed,
                "member_count": report.member_count,
            },
        )
        return report

    async def _lookup_active_members(
        self, refset: Refset, branch: str, ids: list[str], cid: str
    ) -> tuple[dict[str, list[MemberRecord]], set[str]]:
        """Active member records for ``ids`` in URL-length-bounded batches.

        RemoteConnectionError propagates and aborts the call.
        """
        key = refset.session_key
        limit = self._limits.max_record_length
        prefix = (
            f"{self._base_url}/{branch}/members?referenceSet={refset.refset_id}"
            f"&offset=0&active=true&limit={limit}&referencedComponentId="
        )
        budget = url_list_budget(prefix, self._limits.url_max_char_length)

        members: dict[str, list[MemberRecord]] = {}
        failed: set[str] = set()
        for batch in split_by_length(ids, budget):
            try:
                response = await self._remote.request(
                    "GET",
                    f"{branch}/members",
                    params={
                        "referenceSet": refset.refset_id,
                        "offset": 0,
                        "active": "true",
                        "limit": limit,
                        "referencedComponentId": ",".join(batch),
                    },
                    operation="member_lookup",
                )
                response.expect(200, operation="member_lookup")
            except RemoteCallFailed as exc:
                failed.update(batch)
                self._status.mark_failed(key, batch, FailureReason.REMOTE_ERROR)
                logger.error(
                    "refset_member_lookup_failed",
                    extra={"correlation_id": cid, "batch": len(batch), "error": str(exc)},
                )
                continue

            for item in response.json_dict().get("items", []):
                record = MemberRecord.model_validate(item)
                if not record.active:
                    continue
                members.setdefault(record.referenced_component_id, []).append(record)
                self._status.describe(
                    key,
                    record.referenced_component_id,
                    name=record.preferred_term,
                    active=record.component_active,
                )
        return members, failed

    async def _delete_members(
        self, refset: Refset, branch: str, records: list[MemberRecord], cid: str
    ) -> list[str]:
        """Hard-delete never-released members in count-bounded chunks."""
        succeeded: list[str] = []
        for chunk in split_by_count(records, self._limits.delete_member_batch_size):
            ids = [record.referenced_component_id for record in chunk]
            try:
                response = await self._remote.request(
                    "DELETE",
                    f"{branch}/members",
                    params={"force": "true"},
                    json={"memberIds": [record.member_id for record in chunk]},
                    operation="delete_members",
                )
                response.expect(204, operation="delete_members")
            except (RemoteCallFailed, RemoteConnectionError) as exc:
                self._record_failure(refset, ids, exc, "delete_members", cid)
                continue
            succeeded.extend(ids)
        return succeeded

    async def _inactivate_members(
        self, refset: Refset, branch: str, records: list[MemberRecord], cid: str
    ) -> list[str]:
        """Soft-inactivate released members so their history is kept."""
        if not records:
            return []
        if len(records) == 1:
            record = records[0]
            ids = [record.referenced_component_id]
            try:
                response = await self._remote.request(
                    "PUT",
                    f"{branch}/members/{record.member_id}",
                    json=record.inactivation_body(),
                    operation="inactivate_member",
                )
                response.expect(200, operation="inactivate_member")
            except (RemoteCallFailed, RemoteConnectionError) as exc:
                self._record_failure(refset, ids, exc, "inactivate_member", cid)
                return []
            return ids

        return await self._bulk_update(
            refset,
            branch,
            [record.inactivation_body() for record in records],
            [record.referenced_component_id for record in records],
            "bulk_inactivate_members",
            cid,
        )

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    async def _refresh_member_count(
        self, refset: Refset, branch: str, user: str | None, cid: str
    ) -> int:
        """Re-read the active member total from the server and persist it."""
        try:
            count = await self._reads.get_member_count(branch, refset.refset_id)
        except (RemoteCallFailed, RemoteConnectionError):
            logger.exception(
                "refset_member_count_refresh_failed",
                extra={"correlation_id": cid, "refset_id": refset.refset_id},
            )
            return refset.member_count

        refset.member_count = count
        refset.touch(user)
        await self._persistence.update(refset)
        return count

    def _report(
        self,
        refset: Refset,
        operation: MembershipOperation,
        ids: list[str],
        cid: str,
        started: float,
        *,
        message: str | None = None,
    ) -> SyncReport:
        statuses = self._status.snapshot(refset.session_key)
        outcomes = [status.status for status in statuses.values()]
        return SyncReport(
            refset_id=refset.refset_id,
            operation=operation.value,
            requested=len(ids),
            succeeded=outcomes.count(MembershipOutcome.SUCCESS),
            already_member=outcomes.count(MembershipOutcome.ALREADY_MEMBER),
            failed=outcomes.count(MembershipOutcome.FAILED),
            member_count=refset.member_count,
            statuses={key: status.to_dict() for key, status in statuses.items()},
            message=message,
            correlation_id=cid,
            duration_seconds=round(time.monotonic() - started, 3),
        )
