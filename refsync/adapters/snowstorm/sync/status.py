"""Per-call membership status sessions.

Each add or remove call on a refset opens a fresh session (id -> status)
that replaces the previous one for that refset. Sessions are read by the
caller after the call returns, so they are never cleared.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from refsync.domain.models import MemberStatus, MembershipOperation, MembershipOutcome

if TYPE_CHECKING:
    from collections.abc import Iterable

    from refsync.domain.models import FailureReason


@dataclass
class MembershipSession:
    refset_key: str
    operation: MembershipOperation
    statuses: dict[str, MemberStatus] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def count(self, outcome: MembershipOutcome) -> int:
        return sum(1 for status in self.statuses.values() if status.status is outcome)


class MembershipStatusStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, MembershipSession] = {}

    def start(
        self,
        refset_key: str,
        operation: MembershipOperation,
        identifiers: Iterable[str],
        *,
        initial: MembershipOutcome = MembershipOutcome.FAILED,
    ) -> MembershipSession:
        """Open a new session with every id in the ``initial`` outcome."""
        session = MembershipSession(
            refset_key=refset_key,
            operation=operation,
            statuses={
                identifier: MemberStatus(operation=operation, status=initial)
                for identifier in identifiers
            },
        )
        with self._lock:
            self._sessions[refset_key] = session
        return session

    def session(self, refset_key: str) -> MembershipSession | None:
        with self._lock:
            return self._sessions.get(refset_key)

    def snapshot(self, refset_key: str) -> dict[str, MemberStatus]:
        with self._lock:
            session = self._sessions.get(refset_key)
            if session is None:
                return {}
            return {
                key: MemberStatus(
                    operation=value.operation,
                    status=value.status,
                    name=value.name,
                    active=value.active,
                    reason=value.reason,
                )
                for key, value in session.statuses.items()
            }

    def describe(
        self,
        refset_key: str,
        identifier: str,
        *,
        name: str | None = None,
        active: bool | None = None,
    ) -> None:
        with self._lock:
            status = self._status(refset_key, identifier)
            if status is None:
                return
            if name is not None:
                status.name = name
            if active is not None:
                status.active = active

    def mark_success(self, refset_key: str, identifiers: Iterable[str]) -> None:
        with self._lock:
            for identifier in identifiers:
                status = self._status(refset_key, identifier)
                if status is not None:
                    status.mark_success()

    def mark_already_member(self, refset_key: str, identifier: str) -> None:
        with self._lock:
            status = self._status(refset_key, identifier)
            if status is not None:
                status.mark_already_member()

    def mark_failed(
        self, refset_key: str, identifiers: Iterable[str], reason: FailureReason
    ) -> None:
        with self._lock:
            for identifier in identifiers:
                status = self._status(refset_key, identifier)
                if status is not None:
                    status.mark_failed(reason)

    def _status(self, refset_key: str, identifier: str) -> MemberStatus | None:
        session = self._sessions.get(refset_key)
        if session is None:
            return None
        return session.statuses.get(identifier)
