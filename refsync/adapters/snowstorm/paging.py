"""Cursor pagination over ``{total, items, searchAfter}`` listings."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from refsync.adapters.snowstorm.models import PageEnvelope

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from refsync.adapters.snowstorm.sync.protocols import RemoteClientProtocol

logger = logging.getLogger(__name__)


@dataclass
class PagedResult:
    """Items gathered across pages.

    ``complete`` is true only when every item the server reported in
    ``total`` was collected; a timeout or an early empty page leaves it false.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    complete: bool = False
    timed_out: bool = False
    pages: int = 0


class CursorPaginator:
    def __init__(
        self,
        remote: RemoteClientProtocol,
        *,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._remote = remote
        self._timeout = timeout
        self._clock = clock

    async def collect(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        page_size: int,
        timeout: float | None = None,
        max_items: int | None = None,
        search_after: str | None = None,
        operation: str = "page",
        correlation_id: str | None = None,
    ) -> PagedResult:
        """Accumulate pages until the listing is exhausted or time runs out.

        ``search_after`` resumes a listing from a cursor returned earlier.

        Raises:
            RemoteCallFailed: A page answered with a non-200 status
        """
        budget = self._timeout if timeout is None else timeout
        started = self._clock()
        result = PagedResult()
        cursor = search_after
        seen_cursors: set[str] = set()
        base_params = {**(params or {}), "limit": page_size}

        while True:
            page_params = dict(base_params)
            if cursor:
                page_params["searchAfter"] = cursor

            response = await self._remote.request(
                "GET", path, params=page_params, operation=operation
            )
            response.expect(200, operation=operation)
            page = PageEnvelope.model_validate(response.json_dict())
            result.pages += 1
            result.total = page.total
            result.items.extend(page.items)

            if not page.items or len(result.items) >= page.total:
                break
            if max_items is not None and len(result.items) >= max_items:
                break
            if self._clock() - started >= budget:
                result.timed_out = True
                logger.warning(
                    "snowstorm_paging_timeout",
                    extra={
                        "correlation_id": correlation_id,
                        "operation": operation,
                        "collected": len(result.items),
                        "total": page.total,
                        "pages": result.pages,
                    },
                )
                break
            if not page.search_after or page.search_after in seen_cursors:
                break
            seen_cursors.add(page.search_after)
            cursor = page.search_after

        result.complete = len(result.items) >= result.total
        logger.debug(
            "snowstorm_paging_done",
            extra={
                "correlation_id": correlation_id,
                "operation": operation,
                "collected": len(result.items),
                "total": result.total,
                "pages": result.pages,
                "complete": result.complete,
            },
        )
        return result
