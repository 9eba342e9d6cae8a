"""RF2 export generation and download."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from refsync.adapters.snowstorm.errors import MissingStatusPointerError

if TYPE_CHECKING:
    from pathlib import Path

    from refsync.adapters.snowstorm.sync.protocols import DownloadingClientProtocol

logger = logging.getLogger(__name__)


class ExportType(str, Enum):
    SNAPSHOT = "SNAPSHOT"
    DELTA = "DELTA"
    FULL = "FULL"


class ExportRequest(BaseModel):
    """Body of ``POST exports``."""

    branch_path: str = Field(alias="branchPath")
    refset_ids: list[str] = Field(default_factory=list, alias="refsetIds")
    type: ExportType = ExportType.SNAPSHOT
    filename_effective_date: str | None = Field(default=None, alias="filenameEffectiveDate")
    start_effective_time: str | None = Field(default=None, alias="startEffectiveTime")
    transient_effective_time: str | None = Field(default=None, alias="transientEffectiveTime")
    concepts_and_relationships_only: bool = Field(
        default=False, alias="conceptsAndRelationshipsOnly"
    )
    unpromoted_changes_only: bool = Field(default=False, alias="unpromotedChangesOnly")
    legacy_zip_naming: bool = Field(default=False, alias="legacyZipNaming")

    model_config = {"populate_by_name": True}

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class SnowstormExportService:
    def __init__(self, remote: DownloadingClientProtocol) -> None:
        self._remote = remote

    async def generate_export(self, request: ExportRequest) -> str:
        """Ask the server to build an RF2 archive; returns the archive URL."""
        response = await self._remote.request(
            "POST", "exports", json=request.to_payload(), operation="generate_export"
        )
        response.expect(200, 201, operation="generate_export")
        location = response.location
        if not location:
            msg = "Export response had no Location header"
            raise MissingStatusPointerError(msg, operation="generate_export")
        archive_url = f"{location.rstrip('/')}/archive"
        logger.info(
            "export_generated",
            extra={"branch": request.branch_path, "refset_ids": request.refset_ids, "url": archive_url},
        )
        return archive_url

    async def download_export(self, archive_url: str, destination: str | Path) -> int:
        return await self._remote.download(archive_url, destination)

    async def export_to_file(self, request: ExportRequest, destination: str | Path) -> int:
        archive_url = await self.generate_export(request)
        return await self.download_export(archive_url, destination)
