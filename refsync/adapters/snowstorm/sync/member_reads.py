"""Read paths over reference set members.

Listings are cached per branch in the concept-lists partition and enriched
with descriptions (and leaf flags when editing) through bounded pools.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from refsync.adapters.snowstorm.errors import EnrichmentError
from refsync.adapters.snowstorm.models import MemberRecord, PageEnvelope
from refsync.adapters.snowstorm.paging import CursorPaginator, PagedResult
from refsync.adapters.snowstorm.sync.enrichment import ConcurrentEnricher
from refsync.domain.models import Concept, MemberHistoryEvent
from refsync.infrastructure.cache.branch_cache import CachePartition

if TYPE_CHECKING:
    from collections.abc import Sequence

    from refsync.adapters.snowstorm.concepts import SnowstormConceptService
    from refsync.adapters.snowstorm.sync.protocols import RemoteClientProtocol
    from refsync.config import SyncLimitsConfig
    from refsync.infrastructure.cache.branch_cache import BranchCache

logger = logging.getLogger(__name__)


def _format_release_date(released_effective_time: int | str | None) -> str | None:
    if released_effective_time in (None, ""):
        return None
    raw = str(released_effective_time)
    if len(raw) != 8:
        return raw
    return f"{raw[:4]}-{raw[4:6]}-{raw[6:]}"


def concept_from_member(member: MemberRecord) -> Concept:
    return Concept(
        code=member.referenced_component_id,
        name=member.preferred_term,
        active=member.component_active,
        is_member=True,
        member_id=member.member_id,
        released=member.released,
        effective_time=member.effective_time,
    )


class SnowstormMemberReads:
    def __init__(
        self,
        remote: RemoteClientProtocol,
        cache: BranchCache,
        limits: SyncLimitsConfig,
        concepts: SnowstormConceptService,
        *,
        paginator: CursorPaginator | None = None,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._limits = limits
        self._concepts = concepts
        self._paginator = paginator or CursorPaginator(remote, timeout=limits.page_timeout_sec)

    def concept_enricher(self, name: str, workers: int) -> ConcurrentEnricher[Concept]:
        return ConcurrentEnricher(
            name=name,
            workers=workers,
            batch_size=self._limits.concept_descriptions_per_call,
            timeout=self._limits.enrichment_timeout_sec,
        )

    async def get_member_count(self, branch: str, refset_id: str) -> int:
        """Active member total as reported by the server."""
        response = await self._remote.request(
            "GET",
            f"{branch}/members",
            params={"referenceSet": refset_id, "active": "true", "offset": 0, "limit": 1},
            operation="member_count",
        )
        response.expect(200, operation="member_count")
        return PageEnvelope.model_validate(response.json_dict()).total

    async def get_all_member_records(
        self, branch: str, refset_id: str, *, correlation_id: str | None = None
    ) -> PagedResult:
        return await self._paginator.collect(
            f"{branch}/members",
            {"referenceSet": refset_id, "active": "true", "offset": 0},
            page_size=self._limits.max_record_length,
            operation="member_page",
            correlation_id=correlation_id,
        )

    async def get_members(
        self,
        branch: str,
        refset_id: str,
        *,
        edit_mode: bool = False,
        correlation_id: str | None = None,
    ) -> list[Concept]:
        """All active members as concepts, named and optionally leaf-flagged."""
        key = f"{refset_id}|active=true|edit={edit_mode}"
        if self._cache.contains(branch, key, CachePartition.CONCEPT_LISTS):
            return self._cache.get(branch, key, CachePartition.CONCEPT_LISTS)

        result = await self.get_all_member_records(
            branch, refset_id, correlation_id=correlation_id
        )
        concepts = [
            concept_from_member(MemberRecord.model_validate(item)) for item in result.items
        ]

        async def _descriptions(batch: list[Concept]) -> None:
            await self._concepts.populate_descriptions(branch, batch)

        await self.concept_enricher("descriptions", self._limits.description_workers).run(
            concepts, _descriptions, correlation_id=correlation_id
        )

        if edit_mode:

            async def _leaf_flags(batch: list[Concept]) -> None:
                await self._concepts.populate_leaf_status(branch, batch)

            await self.concept_enricher("leaf_status", self._limits.description_workers).run(
                concepts, _leaf_flags, correlation_id=correlation_id
            )

        if result.complete:
            self._cache.put(branch, key, concepts, CachePartition.CONCEPT_LISTS)
        else:
            logger.warning(
                "member_list_incomplete",
                extra={
                    "correlation_id": correlation_id,
                    "refset_id": refset_id,
                    "collected": len(result.items),
                    "total": result.total,
                },
            )
        return concepts

    async def populate_membership_info(
        self, branch: str, refset_id: str, concepts: list[Concept]
    ) -> None:
        """Enrichment unit: flag which of ``concepts`` are active members."""
        if not concepts:
            return
        response = await self._remote.request(
            "GET",
            f"{branch}/members",
            params={
                "referenceSet": refset_id,
                "active": "true",
                "offset": 0,
                "limit": self._limits.max_record_length,
                "referencedComponentId": ",".join(c.code for c in concepts),
            },
            operation="membership_info",
        )
        response.expect(200, operation="membership_info")
        members = {
            str(item.get("referencedComponentId"))
            for item in response.json_dict().get("items", [])
        }
        for concept in concepts:
            concept.is_member = concept.code in members

    async def enrich_membership(
        self,
        branch: str,
        refset_id: str,
        concepts: Sequence[Concept],
        *,
        correlation_id: str | None = None,
    ) -> None:
        async def _membership(batch: list[Concept]) -> None:
            await self.populate_membership_info(branch, refset_id, batch)

        await self.concept_enricher("membership", self._limits.membership_workers).run(
            concepts, _membership, correlation_id=correlation_id
        )

    async def cache_member_ancestors(
        self, branch: str, refset_id: str, *, correlation_id: str | None = None
    ) -> set[str]:
        """Ids of every ancestor of any member, cached per refset.

        Refsets above the configured member threshold cache an empty set.
        """
        if self._cache.contains(branch, refset_id, CachePartition.MEMBER_ANCESTORS):
            return self._cache.get(branch, refset_id, CachePartition.MEMBER_ANCESTORS)

        member_total = await self.get_member_count(branch, refset_id)
        if member_total > self._limits.max_members_for_ancestor_cache:
            logger.warning(
                "member_ancestors_skipped",
                extra={
                    "correlation_id": correlation_id,
                    "refset_id": refset_id,
                    "member_total": member_total,
                },
            )
            self._cache.put(branch, refset_id, set(), CachePartition.MEMBER_ANCESTORS)
            return set()

        ancestors: set[str] = set()
        page_size = self._limits.ancestor_page_size
        offsets = [page * page_size for page in range(self._limits.ancestor_pages)]

        async def _page(batch: list[int]) -> None:
            for offset in batch:
                response = await self._remote.request(
                    "GET",
                    f"{branch}/concepts",
                    params={"ecl": f">(^{refset_id})", "limit": page_size, "offset": offset},
                    operation="member_ancestors",
                )
                response.expect(200, operation="member_ancestors")
                for item in response.json_dict().get("items", []):
                    ancestors.add(str(item["conceptId"]))

        enricher: ConcurrentEnricher[int] = ConcurrentEnricher(
            name="member_ancestors",
            workers=self._limits.ancestor_workers,
            batch_size=1,
            timeout=self._limits.ancestor_timeout_sec,
        )
        try:
            report = await enricher.run(offsets, _page, correlation_id=correlation_id)
        except EnrichmentError as exc:
            logger.error(
                "member_ancestors_partial",
                extra={
                    "correlation_id": correlation_id,
                    "refset_id": refset_id,
                    "failures": len(exc.failures),
                    "ancestors": len(ancestors),
                },
            )
            return ancestors

        if not report.timed_out:
            self._cache.put(branch, refset_id, ancestors, CachePartition.MEMBER_ANCESTORS)
        return ancestors

    async def get_member_history(
        self, refset_id: str, concept_id: str, version_branches: Sequence[str]
    ) -> list[dict[str, str]]:
        """Membership changes of one concept across versions, oldest first.

        ``version_branches`` must be ordered oldest to newest.
        """
        history: list[dict[str, str]] = []
        previous_active: bool | None = None

        for branch in version_branches:
            response = await self._remote.request(
                "GET",
                f"{branch}/members",
                params={"referenceSet": refset_id, "referencedComponentId": concept_id},
                operation="member_history",
            )
            response.expect(200, operation="member_history")
            items = response.json_dict().get("items", [])
            if not items:
                continue

            member = MemberRecord.model_validate(items[0])
            version = _format_release_date(member.released_effective_time) or branch
            if previous_active is None:
                change = (
                    MemberHistoryEvent.ADDED if member.active else MemberHistoryEvent.ADDED_INACTIVE
                )
                history.append({"version": version, "change": change.value})
            elif member.active != previous_active:
                change = (
                    MemberHistoryEvent.ACTIVATED if member.active else MemberHistoryEvent.INACTIVATED
                )
                history.append({"version": version, "change": change.value})
            previous_active = member.active

        return history
