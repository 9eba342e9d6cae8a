"""Polling of asynchronous server jobs (merges, reviews, bulk member changes).

A job goes ``SUBMITTED -> POLLING -> {COMPLETED, FAILED, STALE}``. The
submit call must answer with one of the expected statuses and a
``Location`` header; that pointer is then polled at a fixed interval until
the job leaves its running states or the wait budget runs out.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from refsync.adapters.snowstorm.errors import (
    JobFailedError,
    JobTimeoutError,
    MissingStatusPointerError,
)
from refsync.adapters.snowstorm.models import JobStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from refsync.adapters.snowstorm.sync.protocols import RemoteClientProtocol

logger = logging.getLogger(__name__)

RUNNING_STATES = frozenset({"PENDING", "IN_PROGRESS", "SCHEDULED", "RUNNING"})


class JobState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    STALE = "stale"


@dataclass(frozen=True)
class JobPolicy:
    """How one kind of job is polled.

    With ``completed_states`` unset, any status that is not running, failed
    or stale counts as completion. With it set, unknown statuses keep the
    job polling. State names compare case-insensitively.
    """

    operation: str
    poll_interval: float
    max_wait: float
    initial_delay: float = 0.0
    running_states: frozenset[str] = RUNNING_STATES
    completed_states: frozenset[str] | None = None
    failed_states: frozenset[str] = frozenset({"FAILED"})
    stale_states: frozenset[str] = frozenset()
    status_key: str = "status"
    benign_failure: Callable[[str], bool] | None = None

    def classify(self, raw_state: str) -> JobState:
        state = raw_state.upper()
        if state in {s.upper() for s in self.failed_states}:
            return JobState.FAILED
        if state in {s.upper() for s in self.stale_states}:
            return JobState.STALE
        if self.completed_states is not None:
            if state in {s.upper() for s in self.completed_states}:
                return JobState.COMPLETED
            return JobState.POLLING
        if state in {s.upper() for s in self.running_states}:
            return JobState.POLLING
        return JobState.COMPLETED


@dataclass
class JobHandle:
    status_url: str
    policy: JobPolicy
    state: JobState = JobState.SUBMITTED
    polls: int = 0
    last_status: JobStatus | None = None

    @property
    def job_id(self) -> str:
        """Last path segment of the status pointer."""
        return self.status_url.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class JobOutcome:
    state: JobState
    status: JobStatus
    handle: JobHandle
    benign: bool = False
    body: dict[str, Any] = field(default_factory=dict)


class JobPoller:
    def __init__(
        self,
        remote: RemoteClientProtocol,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._remote = remote
        self._sleep = sleep
        self._clock = clock

    async def submit(
        self,
        method: str,
        path: str,
        policy: JobPolicy,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        expected: tuple[int, ...] = (200, 201),
        correlation_id: str | None = None,
    ) -> JobHandle:
        """Issue the mutation and return a handle on its status pointer.

        Raises:
            RemoteCallFailed: The submit answered with an unexpected status
            MissingStatusPointerError: The answer carried no Location header
        """
        response = await self._remote.request(
            method, path, params=params, json=json, operation=policy.operation
        )
        response.expect(*expected, operation=policy.operation)
        location = response.location
        if not location:
            msg = f"{policy.operation} response had no Location header"
            raise MissingStatusPointerError(msg, operation=policy.operation)

        logger.debug(
            "job_submitted",
            extra={
                "correlation_id": correlation_id,
                "operation": policy.operation,
                "status_url": location,
            },
        )
        return JobHandle(status_url=location, policy=policy)

    async def wait(self, handle: JobHandle, *, correlation_id: str | None = None) -> JobOutcome:
        """Poll until the job leaves its running states.

        STALE is returned to the caller, who decides whether to resubmit.

        Raises:
            JobFailedError: The job failed and the failure was not benign
            JobTimeoutError: The job was still running after ``max_wait``
        """
        policy = handle.policy
        handle.state = JobState.POLLING
        started = self._clock()
        if policy.initial_delay > 0:
            await self._sleep(policy.initial_delay)

        while True:
            response = await self._remote.request(
                "GET", handle.status_url, operation="job_status"
            )
            response.expect(200, operation=f"{policy.operation}_status")
            body = response.json_dict()
            status = JobStatus.model_validate(
                {**body, "status": str(body.get(policy.status_key) or "")}
            )
            handle.polls += 1
            handle.last_status = status
            state = policy.classify(status.status)

            if state is JobState.FAILED:
                message = status.failure_message
                if policy.benign_failure is not None and policy.benign_failure(message):
                    handle.state = JobState.COMPLETED
                    logger.info(
                        "job_benign_failure",
                        extra={
                            "correlation_id": correlation_id,
                            "operation": policy.operation,
                            "server_message": message,
                        },
                    )
                    return JobOutcome(JobState.COMPLETED, status, handle, benign=True, body=body)
                handle.state = JobState.FAILED
                logger.error(
                    "job_failed",
                    extra={
                        "correlation_id": correlation_id,
                        "operation": policy.operation,
                        "status_url": handle.status_url,
                        "server_message": message,
                    },
                )
                raise JobFailedError(
                    message or f"{policy.operation} failed",
                    operation=policy.operation,
                    status_url=handle.status_url,
                )

            if state is not JobState.POLLING:
                handle.state = state
                logger.debug(
                    "job_finished",
                    extra={
                        "correlation_id": correlation_id,
                        "operation": policy.operation,
                        "state": state.value,
                        "poll_count": handle.polls,
                    },
                )
                return JobOutcome(state, status, handle, body=body)

            elapsed = self._clock() - started
            if elapsed >= policy.max_wait:
                logger.error(
                    "job_timeout",
                    extra={
                        "correlation_id": correlation_id,
                        "operation": policy.operation,
                        "status_url": handle.status_url,
                        "wait_sec": round(elapsed, 2),
                        "poll_count": handle.polls,
                    },
                )
                msg = f"{policy.operation} still {status.status} after {policy.max_wait}s"
                raise JobTimeoutError(
                    msg, operation=policy.operation, status_url=handle.status_url
                )
            await self._sleep(policy.poll_interval)

    async def run(
        self,
        method: str,
        path: str,
        policy: JobPolicy,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        expected: tuple[int, ...] = (200, 201),
        correlation_id: str | None = None,
    ) -> JobOutcome:
        handle = await self.submit(
            method,
            path,
            policy,
            json=json,
            params=params,
            expected=expected,
            correlation_id=correlation_id,
        )
        return await self.wait(handle, correlation_id=correlation_id)
