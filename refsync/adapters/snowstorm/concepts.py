"""Concept reads and enrichment units against the terminology server."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from refsync.adapters.snowstorm.models import ConceptRecord, DescriptionRecord
from refsync.adapters.snowstorm.paging import CursorPaginator
from refsync.core.batching import json_array_budget, split_by_length, unique_ordered
from refsync.domain.models import Concept
from refsync.infrastructure.cache.branch_cache import CachePartition

if TYPE_CHECKING:
    from collections.abc import Sequence

    from refsync.adapters.snowstorm.sync.protocols import RemoteClientProtocol
    from refsync.config import SyncLimitsConfig
    from refsync.infrastructure.cache.branch_cache import BranchCache

logger = logging.getLogger(__name__)

LEAF_FLAG_PAGE_LIMIT = 3000
INACTIVATION_INDICATOR = "OUTDATED"


def choose_display_name(descriptions: Sequence[DescriptionRecord]) -> str | None:
    """Pick the preferred synonym, then any synonym, then any active term."""
    active = [d for d in descriptions if d.active]
    for predicate in (
        lambda d: d.is_synonym and d.is_preferred,
        lambda d: d.is_synonym,
        lambda d: True,
    ):
        for description in active:
            if predicate(description):
                return description.term
    return None


def _concept_from_node(node: dict[str, Any]) -> Concept:
    pt = (node.get("pt") or {}).get("term")
    fsn = (node.get("fsn") or {}).get("term")
    return Concept(
        code=str(node.get("conceptId", "")),
        name=pt or fsn,
        active=node.get("active"),
        effective_time=node.get("effectiveTime"),
    )


class SnowstormConceptService:
    def __init__(
        self,
        remote: RemoteClientProtocol,
        cache: BranchCache,
        limits: SyncLimitsConfig,
        *,
        paginator: CursorPaginator | None = None,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._limits = limits
        self._paginator = paginator or CursorPaginator(remote, timeout=limits.page_timeout_sec)

    async def get_concept_details(
        self, branch: str, refset_id: str, concept_id: str
    ) -> dict[str, Any]:
        """Full browser view of one concept, cached per refset and concept."""
        key = f"{refset_id}{concept_id}"
        if self._cache.contains(branch, key, CachePartition.CONCEPT_DETAILS):
            return self._cache.get(branch, key, CachePartition.CONCEPT_DETAILS)

        response = await self._remote.request(
            "GET", f"browser/{branch}/concepts/{concept_id}", operation="concept_details"
        )
        response.expect(200, operation="concept_details")
        details = response.json_dict()
        self._cache.put(branch, key, details, CachePartition.CONCEPT_DETAILS)
        return details

    async def get_concept_ancestors(
        self, branch: str, refset_id: str, concept_id: str
    ) -> list[Concept]:
        """Ancestor path of a concept, taxonomy root first."""
        key = f"{refset_id}-{concept_id}"
        if self._cache.contains(branch, key, CachePartition.TAXONOMY_ANCESTORS):
            return self._cache.get(branch, key, CachePartition.TAXONOMY_ANCESTORS)

        response = await self._remote.request(
            "GET",
            f"browser/{branch}/concepts/ancestor-paths",
            params={"conceptIds": concept_id},
            operation="concept_ancestors",
        )
        response.expect(200, operation="concept_ancestors")
        parents: list[Concept] = []
        nodes = response.body if isinstance(response.body, list) else []
        for node in nodes:
            path = [_concept_from_node(item) for item in node.get("ancestorPath") or []]
            path.reverse()
            parents = path

        self._cache.put(branch, key, parents, CachePartition.TAXONOMY_ANCESTORS)
        return parents

    async def get_concept_ids_from_ecl(
        self, branch: str, ecl: str, *, correlation_id: str | None = None
    ) -> list[str]:
        """Resolve an ECL expression to de-duplicated concept ids in server order."""
        result = await self._paginator.collect(
            f"{branch}/concepts",
            {"ecl": ecl},
            page_size=self._limits.max_record_length,
            operation="ecl_page",
            correlation_id=correlation_id,
        )
        if not result.complete:
            logger.warning(
                "ecl_resolution_incomplete",
                extra={
                    "correlation_id": correlation_id,
                    "ecl": ecl,
                    "collected": len(result.items),
                    "total": result.total,
                },
            )
        return unique_ordered(str(item.get("conceptId", "")) for item in result.items)

    async def search_concepts(
        self, branch: str, concept_ids: Sequence[str], *, correlation_id: str | None = None
    ) -> dict[str, ConceptRecord]:
        """Look up concepts by id in body-length-bounded batches.

        Ids that do not exist on the branch are simply absent from the result.
        """
        budget = json_array_budget(
            self._limits.search_request_max_chars, max_count=self._limits.max_record_length
        )
        found: dict[str, ConceptRecord] = {}
        for batch in split_by_length(list(concept_ids), budget):
            response = await self._remote.request(
                "POST",
                f"{branch}/concepts/search",
                json={"limit": self._limits.max_record_length, "conceptIds": batch},
                operation="concept_search",
            )
            response.expect(200, operation="concept_search")
            for item in response.json_dict().get("items", []):
                record = ConceptRecord.model_validate(item)
                found[record.concept_id] = record
        logger.debug(
            "concept_search_done",
            extra={
                "correlation_id": correlation_id,
                "requested": len(concept_ids),
                "found": len(found),
            },
        )
        return found

    async def populate_descriptions(self, branch: str, concepts: list[Concept]) -> None:
        """Enrichment unit: set ``descriptions`` and ``name`` from active descriptions."""
        if not concepts:
            return
        response = await self._remote.request(
            "GET",
            f"{branch}/descriptions",
            params={
                "limit": self._limits.max_record_length,
                "conceptIds": ",".join(c.code for c in concepts),
            },
            operation="descriptions",
        )
        response.expect(200, operation="descriptions")

        by_concept: dict[str, list[DescriptionRecord]] = {}
        for item in response.json_dict().get("items", []):
            description = DescriptionRecord.model_validate(item)
            if description.active:
                by_concept.setdefault(description.concept_id, []).append(description)

        for concept in concepts:
            descriptions = by_concept.get(concept.code)
            if not descriptions:
                logger.debug("description_missing", extra={"concept_id": concept.code})
                continue
            concept.descriptions = [
                {"term": d.term, "typeId": d.type_id or "", "lang": d.lang or ""}
                for d in descriptions
            ]
            concept.name = choose_display_name(descriptions) or concept.name

    async def populate_leaf_status(self, branch: str, concepts: list[Concept]) -> None:
        """Enrichment unit: set ``has_children`` from the inferred leaf flag."""
        if not concepts:
            return
        response = await self._remote.request(
            "GET",
            f"{branch}/concepts",
            params={
                "limit": LEAF_FLAG_PAGE_LIMIT,
                "includeLeafFlag": "true",
                "form": "inferred",
                "conceptIds": ",".join(c.code for c in concepts),
            },
            operation="leaf_status",
        )
        response.expect(200, operation="leaf_status")

        leaf_flags: dict[str, bool] = {}
        for item in response.json_dict().get("items", []):
            record = ConceptRecord.model_validate(item)
            if record.is_leaf_inferred is not None:
                leaf_flags[record.concept_id] = record.is_leaf_inferred

        for concept in concepts:
            if concept.code not in leaf_flags:
                logger.debug("leaf_flag_missing", extra={"concept_id": concept.code})
                continue
            concept.has_children = not leaf_flags[concept.code]

    async def update_refset_concept(
        self,
        branch: str,
        refset_id: str,
        *,
        active: bool | None = None,
        module_id: str | None = None,
    ) -> dict[str, Any]:
        """Change the active flag and/or module of the refset's own concept.

        The concept is read first so the update carries every field, then
        the branch cache is dropped.
        """
        path = f"browser/{branch}/concepts/{refset_id}"
        response = await self._remote.request("GET", path, operation="refset_concept")
        response.expect(200, operation="refset_concept")
        body = copy.deepcopy(response.json_dict())

        if active is not None and body.get("active") != active:
            body["active"] = active
            body["inactivationIndicator"] = "" if active else INACTIVATION_INDICATOR
            for axiom in body.get("classAxioms", []):
                axiom["active"] = active
            for relationship in body.get("relationships", []):
                relationship["active"] = active

        if module_id is not None and body.get("moduleId") != module_id:
            body["moduleId"] = module_id
            for description in body.get("descriptions", []):
                description["moduleId"] = module_id
            for axiom in body.get("classAxioms", []):
                axiom["moduleId"] = module_id
                for relationship in axiom.get("relationships", []):
                    relationship["moduleId"] = module_id
            for relationship in body.get("relationships", []):
                relationship["moduleId"] = module_id

        update = await self._remote.request("PUT", path, json=body, operation="refset_concept_update")
        try:
            update.expect(200, operation="refset_concept_update")
        finally:
            self._cache.invalidate_all(branch)
        logger.info(
            "refset_concept_updated",
            extra={"branch": branch, "refset_id": refset_id, "active": active, "module_id": module_id},
        )
        return update.json_dict()
