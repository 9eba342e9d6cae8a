"""Pydantic models for terminology server payloads."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

SYNONYM_TYPE_ID = "900000000000013009"


class PageEnvelope(BaseModel):
    """One page of a cursor-paged listing."""

    total: int = 0
    items: list[dict[str, Any]] = Field(default_factory=list)
    search_after: str | None = Field(default=None, alias="searchAfter")
    limit: int | None = None
    offset: int | None = None

    model_config = {"populate_by_name": True, "extra": "ignore"}


class JobStatus(BaseModel):
    """Status document behind a job's ``Location`` pointer."""

    id: str | int | None = None
    status: str = ""
    message: str | None = None
    source: str | None = None
    target: str | None = None
    api_error: dict[str, Any] | None = Field(default=None, alias="apiError")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def failure_message(self) -> str:
        if self.message:
            return self.message
        if self.api_error and self.api_error.get("message"):
            return str(self.api_error["message"])
        return ""


class BranchInfo(BaseModel):
    path: str
    state: str | None = None
    locked: bool = False
    base_timestamp: int | None = Field(default=None, alias="baseTimestamp")
    head_timestamp: int | None = Field(default=None, alias="headTimestamp")
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "extra": "ignore"}


class MemberRecord(BaseModel):
    """A reference set member as returned by member listings and searches."""

    member_id: str = Field(alias="memberId")
    refset_id: str = Field(alias="refsetId")
    referenced_component_id: str = Field(alias="referencedComponentId")
    module_id: str | None = Field(default=None, alias="moduleId")
    active: bool = True
    released: bool = False
    released_effective_time: int | None = Field(default=None, alias="releasedEffectiveTime")
    effective_time: str | None = Field(default=None, alias="effectiveTime")
    additional_fields: dict[str, Any] = Field(default_factory=dict, alias="additionalFields")
    referenced_component: dict[str, Any] | None = Field(default=None, alias="referencedComponent")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def preferred_term(self) -> str | None:
        if not self.referenced_component:
            return None
        pt = self.referenced_component.get("pt") or {}
        return pt.get("term")

    @property
    def component_active(self) -> bool | None:
        if not self.referenced_component:
            return None
        return self.referenced_component.get("active")

    def reactivation_body(self) -> dict[str, Any]:
        """Update body that flips this member back to active."""
        body: dict[str, Any] = {
            "active": True,
            "memberId": self.member_id,
            "moduleId": self.module_id,
            "referencedComponentId": self.referenced_component_id,
            "refsetId": self.refset_id,
            "released": self.released,
            "releasedEffectiveTime": self.released_effective_time,
            "additionalFields": self.additional_fields,
        }
        if self.effective_time is not None:
            body["effectiveTime"] = self.effective_time
        return body

    def inactivation_body(self) -> dict[str, Any]:
        body = self.reactivation_body()
        body["active"] = False
        return body


class ConceptRecord(BaseModel):
    """Concept summary from concept searches and listings."""

    concept_id: str = Field(alias="conceptId")
    active: bool = True
    pt: dict[str, Any] | None = None
    fsn: dict[str, Any] | None = None
    is_leaf_inferred: bool | None = Field(default=None, alias="isLeafInferred")
    module_id: str | None = Field(default=None, alias="moduleId")
    effective_time: str | None = Field(default=None, alias="effectiveTime")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def preferred_term(self) -> str | None:
        return (self.pt or {}).get("term")


class DescriptionRecord(BaseModel):
    concept_id: str = Field(alias="conceptId")
    term: str
    active: bool = True
    type_id: str | None = Field(default=None, alias="typeId")
    lang: str | None = None
    acceptability_map: dict[str, str] = Field(default_factory=dict, alias="acceptabilityMap")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def is_synonym(self) -> bool:
        return self.type_id == SYNONYM_TYPE_ID

    @property
    def is_preferred(self) -> bool:
        return "PREFERRED" in self.acceptability_map.values()


class SyncReport(BaseModel):
    """Result of one add or remove call on a reference set."""

    refset_id: str
    operation: str  # 'Added' or 'Removed'
    requested: int = 0
    succeeded: int = 0
    already_member: int = 0
    failed: int = 0
    member_count: int = -1
    statuses: dict[str, dict[str, Any]] = Field(default_factory=dict)
    message: str | None = None
    correlation_id: str | None = None
    duration_seconds: float = 0.0
