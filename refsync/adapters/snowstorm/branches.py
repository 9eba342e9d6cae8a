"""Branch lifecycle, merges and rebase reviews."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date
from typing import TYPE_CHECKING, Any

from refsync.adapters.snowstorm.errors import JobFailedError
from refsync.adapters.snowstorm.jobs import JobHandle, JobPolicy, JobPoller, JobState
from refsync.adapters.snowstorm.models import BranchInfo
from refsync.infrastructure.cache.branch_cache import CachePartition

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from refsync.adapters.snowstorm.jobs import JobOutcome
    from refsync.adapters.snowstorm.sync.protocols import RemoteClientProtocol
    from refsync.config import SyncLimitsConfig
    from refsync.infrastructure.cache.branch_cache import BranchCache

logger = logging.getLogger(__name__)

VERSION_BRANCH_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
NOTHING_TO_MERGE_MARKER = "is not meaningful"
PROMOTED_BRANCH_STATES = frozenset({"FORWARD", "CURRENT", "UP_TO_DATE"})
MAX_REVIEW_ATTEMPTS = 10


def is_nothing_to_merge(message: str) -> bool:
    """Merges with no changes fail server-side with this wording."""
    return NOTHING_TO_MERGE_MARKER in (message or "")


def parent_path(branch: str) -> str:
    if "/" not in branch:
        msg = f"Branch {branch} has no parent"
        raise ValueError(msg)
    return branch.rsplit("/", 1)[0]


class SnowstormBranchService:
    def __init__(
        self,
        remote: RemoteClientProtocol,
        cache: BranchCache,
        limits: SyncLimitsConfig,
        *,
        poller: JobPoller | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._limits = limits
        self._sleep = sleep
        self._poller = poller or JobPoller(remote, sleep=sleep)
        self._today = today

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def merge_policy(self) -> JobPolicy:
        return JobPolicy(
            operation="merge",
            poll_interval=self._limits.merge_poll_interval_sec,
            max_wait=self._limits.merge_max_wait_sec,
            failed_states=frozenset({"FAILED", "CONFLICTS"}),
            benign_failure=is_nothing_to_merge,
        )

    def review_policy(self) -> JobPolicy:
        return JobPolicy(
            operation="rebase_review",
            poll_interval=self._limits.review_poll_interval_sec,
            max_wait=self._limits.review_max_wait_sec,
            stale_states=frozenset({"STALE"}),
        )

    def promotion_policy(self) -> JobPolicy:
        return JobPolicy(
            operation="promotion_confirm",
            poll_interval=self._limits.promotion_poll_interval_sec,
            max_wait=self._limits.promotion_max_wait_sec,
            completed_states=PROMOTED_BRANCH_STATES,
            failed_states=frozenset(),
            status_key="state",
        )

    # ------------------------------------------------------------------
    # Branch lifecycle
    # ------------------------------------------------------------------

    async def create_branch(self, parent: str, name: str) -> str:
        """Create ``parent/name`` and return the path the server assigned."""
        response = await self._remote.request(
            "POST", "branches", json={"name": name, "parent": parent}, operation="create_branch"
        )
        response.expect(200, operation="create_branch")
        path = str(response.json_dict().get("path") or f"{parent}/{name}")
        logger.info("branch_created", extra={"branch": path})
        return path

    async def delete_branch(self, path: str) -> None:
        response = await self._remote.request(
            "DELETE", f"admin/{path}/actions/hard-delete", operation="delete_branch"
        )
        try:
            response.expect(200, operation="delete_branch")
        finally:
            self._cache.invalidate_all(path)
        logger.info("branch_deleted", extra={"branch": path})

    async def get_branch(self, path: str) -> BranchInfo:
        response = await self._remote.request("GET", f"branches/{path}", operation="get_branch")
        response.expect(200, operation="get_branch")
        return BranchInfo.model_validate(response.json_dict())

    async def branch_exists(self, path: str) -> bool:
        response = await self._remote.request("GET", f"branches/{path}", operation="branch_exists")
        if response.status == 200:
            return True
        if response.status == 404:
            return False
        response.expect(200, operation="branch_exists")
        return False

    async def get_child_branches(self, path: str) -> list[BranchInfo]:
        response = await self._remote.request(
            "GET",
            f"branches/{path}/children",
            params={"immediateChildren": "true"},
            operation="child_branches",
        )
        response.expect(200, operation="child_branches")
        items = response.body if isinstance(response.body, list) else []
        return [BranchInfo.model_validate(item) for item in items]

    async def get_branch_versions(self, edition_path: str) -> list[str]:
        """Dated version branches under an edition, newest first.

        Only children named ``YYYY-MM-DD`` with a date before today count.
        """
        if self._cache.contains(edition_path, edition_path, CachePartition.VERSIONS):
            return self._cache.get(edition_path, edition_path, CachePartition.VERSIONS)

        today = self._today()
        versions: list[str] = []
        for child in await self.get_child_branches(edition_path):
            name = child.path.rsplit("/", 1)[-1]
            if not VERSION_BRANCH_PATTERN.match(name):
                continue
            try:
                version_date = date.fromisoformat(name)
            except ValueError:
                continue
            if version_date < today:
                versions.append(name)

        versions.sort(reverse=True)
        self._cache.put(edition_path, edition_path, versions, CachePartition.VERSIONS)
        return versions

    # ------------------------------------------------------------------
    # Merges
    # ------------------------------------------------------------------

    async def merge_branch(
        self,
        source: str,
        target: str,
        *,
        comment: str | None = None,
        review_id: str | None = None,
        rebase: bool = False,
        correlation_id: str | None = None,
    ) -> JobOutcome:
        """Merge ``source`` into ``target`` and wait for the merge job.

        A merge that fails only because there was nothing to merge comes
        back as a benign completion and ends there, with nothing to invalidate
        or confirm. A completed rebase drops the target's cache; a completed
        promotion additionally waits for the target branch to settle into a
        promoted state.
        """
        body: dict[str, Any] = {"source": source, "target": target}
        if comment:
            body["commitComment"] = comment
        if review_id:
            body["reviewId"] = review_id

        outcome = await self._poller.run(
            "POST",
            "merges",
            self.merge_policy(),
            json=body,
            expected=(200, 201),
            correlation_id=correlation_id,
        )
        logger.info(
            "branch_merged",
            extra={
                "correlation_id": correlation_id,
                "source": source,
                "target": target,
                "rebase": rebase,
                "benign": outcome.benign,
            },
        )
        if outcome.benign:
            return outcome

        self._cache.invalidate_all(target)
        if not rebase:
            await self.confirm_promotion(target, correlation_id=correlation_id)
        return outcome

    async def confirm_promotion(self, target: str, *, correlation_id: str | None = None) -> str:
        """Wait for ``target`` to report FORWARD, CURRENT or UP_TO_DATE."""
        await self._sleep(self._limits.promotion_settle_sec)
        handle = JobHandle(status_url=f"branches/{target}", policy=self.promotion_policy())
        outcome = await self._poller.wait(handle, correlation_id=correlation_id)
        return outcome.status.status

    async def generate_rebase_review(
        self, source: str, target: str, *, correlation_id: str | None = None
    ) -> str:
        """Create a merge review and wait until it is ready; returns the review id.

        A review that goes STALE is discarded and a fresh one requested.
        """
        policy = self.review_policy()
        for attempt in range(1, MAX_REVIEW_ATTEMPTS + 1):
            handle = await self._poller.submit(
                "POST",
                "merge-reviews",
                policy,
                json={"source": source, "target": target},
                expected=(200, 201),
                correlation_id=correlation_id,
            )
            outcome = await self._poller.wait(handle, correlation_id=correlation_id)
            if outcome.state is not JobState.STALE:
                return handle.job_id
            logger.warning(
                "rebase_review_stale",
                extra={
                    "correlation_id": correlation_id,
                    "source": source,
                    "target": target,
                    "attempt": attempt,
                },
            )

        msg = f"Rebase review of {source} into {target} stayed stale"
        raise JobFailedError(msg, operation=policy.operation)

    async def rebase_branch(self, branch: str, *, correlation_id: str | None = None) -> JobOutcome:
        """Bring ``branch`` up to date with its parent through a reviewed merge."""
        parent = parent_path(branch)
        review_id = await self.generate_rebase_review(parent, branch, correlation_id=correlation_id)
        return await self.merge_branch(
            parent, branch, review_id=review_id, rebase=True, correlation_id=correlation_id
        )

    async def promote_branch(
        self, branch: str, *, comment: str | None = None, correlation_id: str | None = None
    ) -> JobOutcome:
        """Merge ``branch`` into its parent and confirm the promotion."""
        return await self.merge_branch(
            branch, parent_path(branch), comment=comment, correlation_id=correlation_id
        )

