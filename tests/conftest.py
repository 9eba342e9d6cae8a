"""Pytest configuration and shared fixtures.

``FakeSnowstorm`` is an in-memory terminology server served through
``httpx.MockTransport`` so synchronizer tests drive the real client.
``ScriptedRemote`` replays canned responses for unit tests of the
adapters that sit on top of the client.
"""

from __future__ import annotations

import itertools
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from refsync.adapters.snowstorm.client import RemoteResponse, SnowstormClient
from refsync.config import SyncLimitsConfig
from refsync.domain.models import Refset
from refsync.infrastructure.cache.branch_cache import BranchCache

BASE_URL = "http://snowstorm.test/snowstorm/snomed-ct"
BASE_PATH = "/snowstorm/snomed-ct"
BRANCH = "MAIN/SNOMEDCT-XX"
REFSET_ID = "723264001"
MODULE_ID = "900000000000207008"


class FakeSnowstorm:
    """Enough of the server's member and concept API for membership sync."""

    def __init__(self) -> None:
        self.concepts: dict[str, dict[str, Any]] = {}
        self.members: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, list[str]] = {}
        self.requests: list[httpx.Request] = []
        self.bulk_statuses = ["RUNNING", "COMPLETED"]
        self.fail_bulk = False
        self.unreachable: list[tuple[str, str]] = []
        self._member_ids = itertools.count(1)
        self._job_ids = itertools.count(1)

    # -- seeding -------------------------------------------------------

    def add_concept(self, concept_id: str, term: str, *, active: bool = True) -> None:
        self.concepts[concept_id] = {
            "conceptId": concept_id,
            "active": active,
            "pt": {"term": term, "lang": "en"},
            "fsn": {"term": f"{term} (finding)", "lang": "en"},
        }

    def add_member(
        self,
        concept_id: str,
        *,
        refset_id: str = REFSET_ID,
        active: bool = True,
        released: bool = False,
    ) -> str:
        member_id = f"m-{next(self._member_ids)}"
        self.members[member_id] = {
            "memberId": member_id,
            "refsetId": refset_id,
            "referencedComponentId": concept_id,
            "moduleId": MODULE_ID,
            "active": active,
            "released": released,
            "releasedEffectiveTime": 20240131 if released else None,
            "effectiveTime": "20240131" if released else None,
            "additionalFields": {},
        }
        return member_id

    # -- inspection ----------------------------------------------------

    def members_of(self, concept_id: str) -> list[dict[str, Any]]:
        return [m for m in self.members.values() if m["referencedComponentId"] == concept_id]

    def active_count(self, refset_id: str = REFSET_ID) -> int:
        return sum(1 for m in self.members.values() if m["refsetId"] == refset_id and m["active"])

    def calls(self, method: str, suffix: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path.rstrip("/").endswith(suffix)
        ]

    # -- transport -----------------------------------------------------

    def _member_view(self, member: dict[str, Any]) -> dict[str, Any]:
        concept = self.concepts.get(member["referencedComponentId"], {})
        return {
            **member,
            "referencedComponent": {
                "conceptId": member["referencedComponentId"],
                "active": concept.get("active", True),
                "pt": concept.get("pt"),
            },
        }

    def _upsert_member(self, body: dict[str, Any]) -> dict[str, Any]:
        member_id = body.get("memberId")
        if member_id and member_id in self.members:
            self.members[member_id].update(
                {key: value for key, value in body.items() if key != "referencedComponent"}
            )
            return self.members[member_id]
        new_id = self.add_member(
            body["referencedComponentId"],
            refset_id=body["refsetId"],
            active=body.get("active", True),
        )
        return self.members[new_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix(BASE_PATH).strip("/")
        method = request.method
        if any(method == m and path.endswith(suffix) for m, suffix in self.unreachable):
            raise httpx.ConnectError("connection refused", request=request)
        body = json.loads(request.content) if request.content else None
        params = request.url.params

        if method == "POST" and path.endswith("/concepts/search"):
            items = [self.concepts[c] for c in body["conceptIds"] if c in self.concepts]
            return httpx.Response(200, json={"items": items, "total": len(items)})

        if method == "POST" and path.endswith("/members/search"):
            wanted = set(body["referencedComponentIds"])
            items = [
                self._member_view(m)
                for m in self.members.values()
                if m["refsetId"] == body["referenceSet"] and m["referencedComponentId"] in wanted
            ]
            return httpx.Response(200, json={"items": items, "total": len(items)})

        if method == "POST" and path.endswith("/members/bulk"):
            job_id = str(next(self._job_ids))
            if self.fail_bulk:
                self.jobs[job_id] = ["FAILED"]
            else:
                for entry in body:
                    self._upsert_member(entry)
                self.jobs[job_id] = list(self.bulk_statuses)
            branch = path.removesuffix("/members/bulk")
            return httpx.Response(
                201, headers={"Location": f"{BASE_URL}/{branch}/members/bulk/{job_id}"}
            )

        if method == "GET" and "/members/bulk/" in path:
            job_id = path.rsplit("/", 1)[-1]
            statuses = self.jobs[job_id]
            status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
            payload: dict[str, Any] = {"id": job_id, "status": status}
            if status == "FAILED":
                payload["message"] = "Bulk job failed"
            return httpx.Response(200, json=payload)

        if path.endswith("/members"):
            if method == "GET":
                return self._list_members(params)
            if method == "POST":
                return httpx.Response(200, json=self._member_view(self._upsert_member(body)))
            if method == "DELETE":
                for member_id in body["memberIds"]:
                    self.members.pop(member_id, None)
                return httpx.Response(204)

        if method == "PUT" and "/members/" in path:
            member_id = path.rsplit("/", 1)[-1]
            if member_id not in self.members:
                return httpx.Response(404, json={"message": f"Member {member_id} not found"})
            return httpx.Response(200, json=self._member_view(self._upsert_member(body)))

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    def _list_members(self, params: httpx.QueryParams) -> httpx.Response:
        matches = [m for m in self.members.values() if m["refsetId"] == params.get("referenceSet")]
        if params.get("active") is not None:
            wanted = params.get("active") == "true"
            matches = [m for m in matches if m["active"] is wanted]
        if params.get("referencedComponentId"):
            ids = set(params["referencedComponentId"].split(","))
            matches = [m for m in matches if m["referencedComponentId"] in ids]
        offset = int(params.get("offset", 0))
        limit = int(params.get("limit", 50))
        page = matches[offset : offset + limit]
        return httpx.Response(
            200,
            json={
                "items": [self._member_view(m) for m in page],
                "total": len(matches),
                "limit": limit,
                "offset": offset,
            },
        )


class ScriptedRemote:
    """Remote client double that replays responses per (method, path).

    The last queued response for a route repeats once the queue drains.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[RemoteResponse]] = {}
        self.calls: list[dict[str, Any]] = []

    def on(self, method: str, path: str, *responses: RemoteResponse) -> ScriptedRemote:
        self.routes.setdefault((method.upper(), path), []).extend(responses)
        return self

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
        operation: str = "request",
    ) -> RemoteResponse:
        self.calls.append(
            {"method": method.upper(), "path": path, "params": params, "json": json}
        )
        queue = self.routes.get((method.upper(), path))
        if not queue:
            return RemoteResponse(404, {}, {"message": f"No route for {method} {path}"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def calls_to(self, method: str, path: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == method and c["path"] == path]


class SpyCache(BranchCache):
    def __init__(self) -> None:
        super().__init__()
        self.invalidated: list[str] = []

    def invalidate_all(self, branch: str) -> None:
        self.invalidated.append(branch)
        super().invalidate_all(branch)


class InMemoryRefsetStore:
    def __init__(self) -> None:
        self.refsets: dict[int, Refset] = {}
        self.updates = 0
        self._ids = itertools.count(1)

    async def get(self, refset_key: str) -> Refset | None:
        for refset in self.refsets.values():
            if refset.refset_id == refset_key or str(refset.id) == refset_key:
                return refset
        return None

    async def add(self, refset: Refset) -> Refset:
        if refset.id is None:
            refset.id = next(self._ids)
        self.refsets[refset.id] = refset
        return refset

    async def update(self, refset: Refset) -> Refset:
        self.updates += 1
        self.refsets[refset.id] = refset
        return refset

    async def remove(self, refset_key: str) -> bool:
        refset = await self.get(refset_key)
        if refset is None:
            return False
        del self.refsets[refset.id]
        return True

    async def find(
        self, query: str | None = None, *, sort: str | None = None, page: int = 0
    ) -> list[Refset]:
        return [r for r in self.refsets.values() if not query or query in r.name]


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def response(
    status: int = 200, body: Any = None, headers: dict[str, str] | None = None
) -> RemoteResponse:
    return RemoteResponse(status, headers or {}, body)


@pytest.fixture
def fake_snowstorm() -> FakeSnowstorm:
    return FakeSnowstorm()


@pytest.fixture
def make_client() -> Callable[..., SnowstormClient]:
    def _make(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> SnowstormClient:
        kwargs.setdefault("max_retries", 0)
        kwargs.setdefault("retry_base_delay", 0.001)
        kwargs.setdefault("retry_max_delay", 0.01)
        return SnowstormClient(BASE_URL, transport=httpx.MockTransport(handler), **kwargs)

    return _make


@pytest.fixture
def scripted_remote() -> ScriptedRemote:
    return ScriptedRemote()


@pytest.fixture
def limits() -> SyncLimitsConfig:
    return SyncLimitsConfig()


@pytest.fixture
def spy_cache() -> SpyCache:
    return SpyCache()


@pytest.fixture
def refset_store() -> InMemoryRefsetStore:
    return InMemoryRefsetStore()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def refset() -> Refset:
    return Refset(
        refset_id=REFSET_ID,
        name="Lateralizable body structures",
        module_id=MODULE_ID,
        branch_path=BRANCH,
    )
