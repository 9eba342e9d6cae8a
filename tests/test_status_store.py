from __future__ import annotations

import unittest

from refsync.adapters.snowstorm.sync.status import MembershipStatusStore
from refsync.domain.models import FailureReason, MembershipOperation, MembershipOutcome


class TestMembershipStatusStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MembershipStatusStore()

    def test_start_marks_every_id_failed(self) -> None:
        session = self.store.start("1", MembershipOperation.ADDED, ["100", "200"])

        assert session.count(MembershipOutcome.FAILED) == 2
        assert all(s.operation is MembershipOperation.ADDED for s in session.statuses.values())

    def test_outcomes_and_descriptions_are_recorded(self) -> None:
        self.store.start("1", MembershipOperation.ADDED, ["100", "200", "300"])

        self.store.describe("1", "100", name="Heart", active=True)
        self.store.mark_success("1", ["100"])
        self.store.mark_already_member("1", "200")
        self.store.mark_failed("1", ["300"], FailureReason.INVALID_CONCEPT)

        snapshot = self.store.snapshot("1")
        assert snapshot["100"].status is MembershipOutcome.SUCCESS
        assert snapshot["100"].name == "Heart"
        assert snapshot["200"].status is MembershipOutcome.ALREADY_MEMBER
        assert snapshot["300"].reason is FailureReason.INVALID_CONCEPT
        assert snapshot["300"].to_dict()["reason"] == "invalid_concept"

    def test_snapshot_is_a_copy(self) -> None:
        self.store.start("1", MembershipOperation.REMOVED, ["100"])

        snapshot = self.store.snapshot("1")
        snapshot["100"].mark_success()

        assert self.store.snapshot("1")["100"].status is MembershipOutcome.FAILED

    def test_next_call_replaces_previous_session(self) -> None:
        self.store.start("1", MembershipOperation.ADDED, ["100"])
        self.store.start("1", MembershipOperation.REMOVED, ["200"])

        snapshot = self.store.snapshot("1")
        assert list(snapshot) == ["200"]
        assert snapshot["200"].operation is MembershipOperation.REMOVED

    def test_unknown_ids_and_sessions_are_ignored(self) -> None:
        self.store.mark_success("missing", ["1"])
        self.store.start("1", MembershipOperation.ADDED, ["100"])
        self.store.mark_failed("1", ["999"], FailureReason.REMOTE_ERROR)

        assert self.store.snapshot("missing") == {}
        assert list(self.store.snapshot("1")) == ["100"]
