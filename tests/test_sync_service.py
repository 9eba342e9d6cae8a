from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from refsync.adapters.snowstorm.exports import ExportType
from refsync.adapters.snowstorm.sync.service import RefsetSyncService
from refsync.adapters.snowstorm.sync.workflow import BranchPathWorkflow, OperatorUser
from refsync.domain.exceptions import ActionNotPermittedError, RefsetNotFoundError

from tests.conftest import BRANCH, REFSET_ID, ScriptedRemote, response

ALICE = OperatorUser("alice")


class DownloadingRemote(ScriptedRemote):
    def __init__(self) -> None:
        super().__init__()
        self.downloads: list[tuple[str, Path]] = []

    async def download(self, url: str, destination: str | Path) -> int:
        path = Path(destination)
        path.write_bytes(b"PK\x03\x04")
        self.downloads.append((url, path))
        return 4


@pytest.fixture
def remote() -> DownloadingRemote:
    return DownloadingRemote()


def _service(remote, limits, store, cache) -> RefsetSyncService:
    return RefsetSyncService(
        remote,
        limits,
        persistence=store,
        workflow=BranchPathWorkflow(),
        cache=cache,
        today=lambda: date(2025, 1, 1),
    )


@pytest.mark.asyncio
async def test_unknown_refset_returns_message(remote, limits, refset_store, spy_cache) -> None:
    report = await _service(remote, limits, refset_store, spy_cache).add_members(
        "999", ["100"], ALICE
    )

    assert report.refset_id == "999"
    assert report.message == "Refset 999 was not found"
    assert report.requested == 0
    assert remote.calls == []


@pytest.mark.asyncio
async def test_locked_refset_rejects_edits(remote, limits, refset_store, spy_cache, refset) -> None:
    refset.locked = True
    await refset_store.add(refset)

    report = await _service(remote, limits, refset_store, spy_cache).remove_members(
        "1", ["100"], ALICE
    )

    assert report.refset_id == REFSET_ID
    assert report.operation == "Removed"
    assert report.message == f"Refset {REFSET_ID} is locked"
    assert remote.calls == []
    assert spy_cache.invalidated == []


@pytest.mark.asyncio
async def test_workflow_state_and_user_gate_edits(
    remote, limits, refset_store, spy_cache, refset
) -> None:
    refset.workflow_status = "IN_REVIEW"
    await refset_store.add(refset)
    service = _service(remote, limits, refset_store, spy_cache)

    in_review = await service.add_members("1", ["100"], ALICE)
    refset.workflow_status = "IN_EDIT"
    anonymous = await service.add_members("1", ["100"], OperatorUser(""))

    assert in_review.message == f"Action edit_members is not permitted on refset {REFSET_ID}"
    assert anonymous.message == in_review.message
    assert remote.calls == []


@pytest.mark.asyncio
async def test_ecl_matching_nothing_skips_sync(remote, limits, refset_store, spy_cache, refset) -> None:
    refset.member_count = 7
    await refset_store.add(refset)
    remote.on("GET", f"{BRANCH}/concepts", response(200, {"items": [], "total": 0}))

    report = await _service(remote, limits, refset_store, spy_cache).add_members_from_ecl(
        "1", "<< 999999999", ALICE
    )

    assert report.message == "The ECL expression matched no concepts"
    assert report.member_count == 7
    assert remote.calls_to("GET", f"{BRANCH}/concepts")[0]["params"]["ecl"] == "<< 999999999"
    assert spy_cache.invalidated == []


@pytest.mark.asyncio
async def test_reads_require_a_stored_refset(remote, limits, refset_store, spy_cache) -> None:
    with pytest.raises(RefsetNotFoundError) as exc_info:
        await _service(remote, limits, refset_store, spy_cache).get_member_count("404")

    assert exc_info.value.details == {"refset_key": "404"}


@pytest.mark.asyncio
async def test_update_refset_concept_persists_refset(
    remote, limits, refset_store, spy_cache, refset
) -> None:
    await refset_store.add(refset)
    path = f"browser/{BRANCH}/concepts/{REFSET_ID}"
    remote.on("GET", path, response(200, {"conceptId": REFSET_ID, "active": True}))
    remote.on("PUT", path, response(200, {"conceptId": REFSET_ID, "active": False}))

    await _service(remote, limits, refset_store, spy_cache).update_refset_concept(
        REFSET_ID, ALICE, active=False
    )

    assert refset.active is False
    assert refset.modified_by == "alice"
    assert refset_store.updates == 1
    assert spy_cache.invalidated == [BRANCH]


@pytest.mark.asyncio
async def test_promotion_requires_active_refset(remote, limits, refset_store, spy_cache, refset) -> None:
    refset.active = False
    await refset_store.add(refset)

    with pytest.raises(ActionNotPermittedError):
        await _service(remote, limits, refset_store, spy_cache).promote_refset_branch("1", ALICE)

    assert remote.calls == []


@pytest.mark.asyncio
async def test_member_history_walks_versions_oldest_first(
    remote, limits, refset_store, spy_cache, refset
) -> None:
    await refset_store.add(refset)
    edition = "MAIN/SNOMEDCT-XX"
    remote.on(
        "GET",
        f"branches/{edition}/children",
        response(200, [{"path": f"{edition}/2020-01-31"}, {"path": f"{edition}/2021-01-31"}]),
    )
    member = {
        "memberId": "m-1",
        "refsetId": REFSET_ID,
        "referencedComponentId": "100",
        "released": True,
    }
    remote.on(
        "GET",
        f"{edition}/2020-01-31/members",
        response(200, {"items": [{**member, "active": True, "releasedEffectiveTime": 20200131}]}),
    )
    remote.on(
        "GET",
        f"{edition}/2021-01-31/members",
        response(200, {"items": [{**member, "active": False, "releasedEffectiveTime": 20210131}]}),
    )

    history = await _service(remote, limits, refset_store, spy_cache).get_member_history(
        "1", "100", edition
    )

    assert history == [
        {"version": "2020-01-31", "change": "Added"},
        {"version": "2021-01-31", "change": "Inactivated"},
    ]
    member_calls = [c["path"] for c in remote.calls if c["path"].endswith("/members")]
    assert member_calls == [f"{edition}/2020-01-31/members", f"{edition}/2021-01-31/members"]


@pytest.mark.asyncio
async def test_export_downloads_archive(
    remote, limits, refset_store, spy_cache, refset, tmp_path
) -> None:
    refset.locked = True
    await refset_store.add(refset)
    remote.on(
        "POST",
        "exports",
        response(201, None, {"Location": "http://snowstorm.test/snowstorm/snomed-ct/exports/e-1"}),
    )
    destination = tmp_path / "refset.zip"

    size = await _service(remote, limits, refset_store, spy_cache).export_refset(
        "1", destination, OperatorUser(""), export_type=ExportType.DELTA
    )

    assert size == 4
    assert destination.read_bytes().startswith(b"PK")
    body = remote.calls_to("POST", "exports")[0]["json"]
    assert body["branchPath"] == BRANCH
    assert body["refsetIds"] == [REFSET_ID]
    assert body["type"] == "DELTA"
    assert remote.downloads[0][0] == "http://snowstorm.test/snowstorm/snomed-ct/exports/e-1/archive"
