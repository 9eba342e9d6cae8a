from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ._validators import _parse_positive_float, _parse_positive_int


class SyncLimitsConfig(BaseModel):
    """Batch sizes, poll cadences and pool bounds for membership synchronization."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_record_length: int = Field(
        default=9990,
        validation_alias="REFSET_MAX_RECORD_LENGTH",
        description="Server-side cap on records returned by one search or page",
    )
    url_max_char_length: int = Field(
        default=6000,
        validation_alias="REFSET_URL_MAX_CHAR_LENGTH",
        description="Longest request URL the server accepts",
    )
    search_request_max_chars: int = Field(
        default=200_000,
        validation_alias="REFSET_SEARCH_REQUEST_MAX_CHARS",
        description="Longest serialized identifier array sent in one search body",
    )
    concept_descriptions_per_call: int = Field(
        default=250, validation_alias="REFSET_CONCEPT_DESCRIPTIONS_PER_CALL"
    )
    bulk_member_batch_size: int = Field(
        default=5000, validation_alias="REFSET_BULK_MEMBER_BATCH_SIZE"
    )
    delete_member_batch_size: int = Field(
        default=1000, validation_alias="REFSET_DELETE_MEMBER_BATCH_SIZE"
    )
    page_timeout_sec: float = Field(default=60.0, validation_alias="REFSET_PAGE_TIMEOUT_SEC")

    merge_poll_interval_sec: float = Field(
        default=0.3, validation_alias="REFSET_MERGE_POLL_INTERVAL_SEC"
    )
    review_poll_interval_sec: float = Field(
        default=0.3, validation_alias="REFSET_REVIEW_POLL_INTERVAL_SEC"
    )
    bulk_poll_interval_sec: float = Field(
        default=0.8, validation_alias="REFSET_BULK_POLL_INTERVAL_SEC"
    )
    bulk_initial_delay_sec: float = Field(
        default=0.8, validation_alias="REFSET_BULK_INITIAL_DELAY_SEC"
    )
    promotion_settle_sec: float = Field(default=1.0, validation_alias="REFSET_PROMOTION_SETTLE_SEC")
    promotion_poll_interval_sec: float = Field(
        default=0.3, validation_alias="REFSET_PROMOTION_POLL_INTERVAL_SEC"
    )
    merge_max_wait_sec: float = Field(default=1800.0, validation_alias="REFSET_MERGE_MAX_WAIT_SEC")
    review_max_wait_sec: float = Field(default=600.0, validation_alias="REFSET_REVIEW_MAX_WAIT_SEC")
    bulk_max_wait_sec: float = Field(default=1800.0, validation_alias="REFSET_BULK_MAX_WAIT_SEC")
    promotion_max_wait_sec: float = Field(
        default=600.0, validation_alias="REFSET_PROMOTION_MAX_WAIT_SEC"
    )

    description_workers: int = Field(default=30, validation_alias="REFSET_DESCRIPTION_WORKERS")
    membership_workers: int = Field(default=30, validation_alias="REFSET_MEMBERSHIP_WORKERS")
    ancestor_workers: int = Field(default=10, validation_alias="REFSET_ANCESTOR_WORKERS")
    enrichment_timeout_sec: float = Field(
        default=600.0, validation_alias="REFSET_ENRICHMENT_TIMEOUT_SEC"
    )
    ancestor_timeout_sec: float = Field(default=120.0, validation_alias="REFSET_ANCESTOR_TIMEOUT_SEC")
    ancestor_page_size: int = Field(default=1000, validation_alias="REFSET_ANCESTOR_PAGE_SIZE")
    ancestor_pages: int = Field(default=10, validation_alias="REFSET_ANCESTOR_PAGES")
    max_members_for_ancestor_cache: int = Field(
        default=100_000, validation_alias="REFSET_MAX_MEMBERS_FOR_ANCESTOR_CACHE"
    )

    @field_validator(
        "max_record_length",
        "url_max_char_length",
        "search_request_max_chars",
        "concept_descriptions_per_call",
        "bulk_member_batch_size",
        "delete_member_batch_size",
        "ancestor_page_size",
        "ancestor_pages",
        "max_members_for_ancestor_cache",
        mode="before",
    )
    @classmethod
    def _validate_positive_int(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        return _parse_positive_int(
            value, name=info.field_name.replace("_", " ").capitalize(), default=default
        )

    @field_validator("description_workers", "membership_workers", "ancestor_workers", mode="before")
    @classmethod
    def _validate_workers(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        return _parse_positive_int(
            value,
            name=info.field_name.replace("_", " ").capitalize(),
            default=default,
            maximum=200,
        )

    @field_validator(
        "page_timeout_sec",
        "merge_poll_interval_sec",
        "review_poll_interval_sec",
        "bulk_poll_interval_sec",
        "bulk_initial_delay_sec",
        "promotion_settle_sec",
        "promotion_poll_interval_sec",
        "merge_max_wait_sec",
        "review_max_wait_sec",
        "bulk_max_wait_sec",
        "promotion_max_wait_sec",
        "enrichment_timeout_sec",
        "ancestor_timeout_sec",
        mode="before",
    )
    @classmethod
    def _validate_seconds(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        return _parse_positive_float(
            value, name=info.field_name.replace("_", " ").capitalize(), default=default
        )
