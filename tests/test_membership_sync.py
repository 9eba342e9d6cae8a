from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from refsync.adapters.snowstorm.errors import RemoteCallFailed, RemoteConnectionError
from refsync.adapters.snowstorm.sync.service import RefsetSyncService
from refsync.adapters.snowstorm.sync.workflow import BranchPathWorkflow, OperatorUser

from tests.conftest import BRANCH, REFSET_ID

ALICE = OperatorUser("alice")


def _service(client, limits, store, cache, sleep) -> RefsetSyncService:
    return RefsetSyncService(
        client,
        limits,
        persistence=store,
        workflow=BranchPathWorkflow(),
        cache=cache,
        sleep=sleep,
        base_url=client.base_url,
    )


@pytest.mark.asyncio
async def test_add_mixes_success_already_member_and_invalid(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    fake_snowstorm.add_concept("200", "Right kidney")
    fake_snowstorm.add_member("200")
    refset.member_count = 1
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        report = await service.add_members("1", ["100", "200", "300"], ALICE)

    assert report.statuses["100"]["status"] == "Success"
    assert report.statuses["100"]["name"] == "Left kidney"
    assert report.statuses["200"]["status"] == "Already Member"
    assert report.statuses["300"]["status"] == "Failed"
    assert report.statuses["300"]["reason"] == "invalid_concept"
    assert (report.succeeded, report.already_member, report.failed) == (1, 1, 1)
    assert report.member_count == 2
    assert refset.member_count == 2
    assert refset.modified_by == "alice"
    assert refset_store.updates == 1
    assert spy_cache.invalidated == [BRANCH]
    # a single new member goes through the plain create call
    assert len(fake_snowstorm.calls("POST", "/members")) == 1
    assert fake_snowstorm.calls("POST", "/members/bulk") == []
    assert recording_sleep.calls == []


@pytest.mark.asyncio
async def test_several_new_members_use_one_bulk_job(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    for concept_id in ("100", "200", "300"):
        fake_snowstorm.add_concept(concept_id, f"Concept {concept_id}")
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        report = await service.add_members(REFSET_ID, "100,200,300", ALICE)

    assert report.succeeded == 3
    assert report.member_count == 3
    bulk_calls = fake_snowstorm.calls("POST", "/members/bulk")
    assert len(bulk_calls) == 1
    sent = json.loads(bulk_calls[0].content)
    assert [body["referencedComponentId"] for body in sent] == ["100", "200", "300"]
    assert all(body["refsetId"] == REFSET_ID and body["active"] for body in sent)
    # initial delay, then one poll while RUNNING
    assert recording_sleep.calls == [0.8, 0.8]


@pytest.mark.asyncio
async def test_adding_twice_does_not_duplicate_members(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        first = await service.add_members("1", ["100"], ALICE)
        second = await service.add_members("1", ["100"], ALICE)

    assert first.succeeded == 1
    assert second.already_member == 1
    assert second.member_count == 1
    assert len(fake_snowstorm.members_of("100")) == 1
    assert spy_cache.invalidated == [BRANCH, BRANCH]


@pytest.mark.asyncio
async def test_remove_then_add_reactivates_released_member(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    member_id = fake_snowstorm.add_member("100", released=True)
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        removed = await service.remove_members("1", ["100"], ALICE)
        assert fake_snowstorm.members[member_id]["active"] is False
        assert removed.member_count == 0
        added = await service.add_members("1", ["100"], ALICE)

    assert removed.statuses["100"]["status"] == "Success"
    assert len(fake_snowstorm.calls("PUT", f"/members/{member_id}")) == 1
    assert fake_snowstorm.calls("DELETE", "/members") == []
    assert added.statuses["100"]["status"] == "Success"
    assert added.member_count == 1
    records = fake_snowstorm.members_of("100")
    assert len(records) == 1
    assert records[0]["memberId"] == member_id
    assert records[0]["active"] is True
    assert records[0]["releasedEffectiveTime"] == 20240131


@pytest.mark.asyncio
async def test_remove_deletes_unreleased_and_flags_non_members(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    fake_snowstorm.add_concept("200", "Right kidney")
    member_id = fake_snowstorm.add_member("100")
    refset.member_count = 1
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        report = await service.remove_members("1", "100, 200", ALICE)

    assert report.statuses["100"] == {
        "operation": "Removed",
        "status": "Success",
        "name": "Left kidney",
        "active": True,
        "reason": None,
    }
    assert report.statuses["200"]["reason"] == "not_member"
    assert report.member_count == 0
    assert fake_snowstorm.members_of("100") == []
    delete = fake_snowstorm.calls("DELETE", "/members")[0]
    assert delete.url.params["force"] == "true"
    assert json.loads(delete.content) == {"memberIds": [member_id]}
    assert spy_cache.invalidated == [BRANCH]


@pytest.mark.asyncio
async def test_failed_bulk_job_marks_chunk_failed_and_still_invalidates(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    fake_snowstorm.add_concept("200", "Right kidney")
    fake_snowstorm.fail_bulk = True
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        report = await service.add_members("1", ["100", "200"], ALICE)

    assert report.failed == 2
    assert {s["reason"] for s in report.statuses.values()} == {"job_failed"}
    assert report.member_count == 0
    assert spy_cache.invalidated == [BRANCH]
    assert service.membership_status(refset)["100"].reason.value == "job_failed"


@pytest.mark.asyncio
async def test_bulk_chunks_follow_configured_batch_size(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    for concept_id in ("100", "200", "300"):
        fake_snowstorm.add_concept(concept_id, f"Concept {concept_id}")
    await refset_store.add(refset)
    small = limits.model_copy(update={"bulk_member_batch_size": 2})

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, small, refset_store, spy_cache, recording_sleep)
        report = await service.add_members("1", ["100", "200", "300"], ALICE)

    bulk_calls = fake_snowstorm.calls("POST", "/members/bulk")
    assert [len(json.loads(call.content)) for call in bulk_calls] == [2, 1]
    assert report.succeeded == 3


@pytest.mark.asyncio
async def test_member_lookups_are_split_by_url_length(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    ids = [f"1000000{i:02d}" for i in range(10)]
    await refset_store.add(refset)
    tight = limits.model_copy(update={"url_max_char_length": 200})

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, tight, refset_store, spy_cache, recording_sleep)
        report = await service.remove_members("1", ids, ALICE)

    lookups = [
        call
        for call in fake_snowstorm.calls("GET", "/members")
        if "referencedComponentId" in call.url.params
    ]
    batches = [call.url.params["referencedComponentId"].split(",") for call in lookups]
    assert [len(batch) for batch in batches] == [4, 4, 2]
    assert [i for batch in batches for i in batch] == ids
    assert report.failed == 10
    assert {s["reason"] for s in report.statuses.values()} == {"not_member"}


@pytest.mark.asyncio
async def test_empty_request_touches_nothing(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        report = await service.add_members("1", " , ", ALICE)

    assert report.requested == 0
    assert report.message == "No concept ids were supplied"
    assert fake_snowstorm.requests == []
    assert spy_cache.invalidated == []


@pytest.mark.asyncio
async def test_failed_count_refresh_keeps_previous_count(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    refset.member_count = 5
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        service.reads.get_member_count = AsyncMock(
            side_effect=RemoteCallFailed(503, "Search index rebuilding", operation="member_count")
        )
        report = await service.add_members("1", ["100"], ALICE)

    assert report.succeeded == 1
    assert report.member_count == 5
    assert refset_store.updates == 0
    assert len(fake_snowstorm.members_of("100")) == 1


@pytest.mark.asyncio
async def test_remove_clears_every_active_record_of_a_concept(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    first = fake_snowstorm.add_member("100")
    second = fake_snowstorm.add_member("100")
    released = fake_snowstorm.add_member("100", released=True)
    refset.member_count = 3
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        report = await service.remove_members("1", ["100"], ALICE)

    assert report.statuses["100"]["status"] == "Success"
    assert report.member_count == 0
    assert fake_snowstorm.active_count() == 0
    delete = fake_snowstorm.calls("DELETE", "/members")[0]
    assert json.loads(delete.content) == {"memberIds": [first, second]}
    assert len(fake_snowstorm.calls("PUT", f"/members/{released}")) == 1


@pytest.mark.asyncio
async def test_remove_reports_failure_when_one_record_of_a_concept_survives(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    fake_snowstorm.add_member("100")
    released = fake_snowstorm.add_member("100", released=True)
    fake_snowstorm.unreachable.append(("PUT", f"/members/{released}"))
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        report = await service.remove_members("1", ["100"], ALICE)

    assert report.statuses["100"]["status"] == "Failed"
    assert fake_snowstorm.active_count() == 1
    assert spy_cache.invalidated == [BRANCH]


@pytest.mark.asyncio
async def test_unreachable_server_during_verification_aborts_add(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    fake_snowstorm.unreachable.append(("POST", "/concepts/search"))
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        with pytest.raises(RemoteConnectionError):
            await service.add_members("1", ["100"], ALICE)

    assert len(fake_snowstorm.calls("POST", "/concepts/search")) == 1
    assert fake_snowstorm.calls("POST", "/members") == []
    assert fake_snowstorm.calls("POST", "/members/bulk") == []
    assert fake_snowstorm.members_of("100") == []
    assert refset_store.updates == 0


@pytest.mark.asyncio
async def test_unreachable_server_during_member_lookup_aborts_remove(
    fake_snowstorm, make_client, limits, refset_store, spy_cache, recording_sleep, refset
) -> None:
    fake_snowstorm.add_concept("100", "Left kidney")
    fake_snowstorm.add_member("100")
    fake_snowstorm.unreachable.append(("GET", "/members"))
    await refset_store.add(refset)

    async with make_client(fake_snowstorm.handler) as client:
        service = _service(client, limits, refset_store, spy_cache, recording_sleep)
        with pytest.raises(RemoteConnectionError):
            await service.remove_members("1", ["100"], ALICE)

    assert len(fake_snowstorm.calls("GET", "/members")) == 1
    assert fake_snowstorm.calls("DELETE", "/members") == []
    assert [r for r in fake_snowstorm.requests if r.method == "PUT"] == []
    assert fake_snowstorm.active_count() == 1
    assert refset_store.updates == 0
