"""Protocol definitions (ports) for reference set synchronization.

Keeping these as Protocols isolates the sync orchestration from the
concrete HTTP client, the refset store and the workflow rules.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping

    from refsync.adapters.snowstorm.client import RemoteResponse
    from refsync.domain.models import Refset


class RemoteClientProtocol(Protocol):
    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        operation: str = "request",
    ) -> RemoteResponse: ...


class DownloadingClientProtocol(RemoteClientProtocol, Protocol):
    async def download(self, url: str, destination: Any) -> int: ...


class PersistenceService(Protocol):
    async def get(self, refset_key: str) -> Refset | None: ...

    async def add(self, refset: Refset) -> Refset: ...

    async def update(self, refset: Refset) -> Refset: ...

    async def remove(self, refset_key: str) -> bool: ...

    async def find(
        self, query: str | None = None, *, sort: str | None = None, page: int = 0
    ) -> list[Refset]: ...


class WorkflowService(Protocol):
    def branch_path(self, refset: Refset) -> str: ...

    def is_action_permitted(self, refset: Refset, action: str, user: UserContext) -> bool: ...


class UserContext(Protocol):
    @property
    def user_id(self) -> str: ...
