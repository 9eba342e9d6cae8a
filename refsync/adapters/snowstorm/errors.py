"""Errors raised by the terminology server adapter."""

from __future__ import annotations

import json
from typing import Any


class SnowstormClientError(Exception):
    """Base exception for terminology server errors."""


class RemoteConnectionError(SnowstormClientError):
    """Transport failure that survived the client's retry policy."""


class SnowstormRetryableError(SnowstormClientError):
    """Error that can be retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteCallFailed(SnowstormClientError):
    """The server answered with a status the call site did not expect."""

    def __init__(self, status: int, reason: str, *, operation: str = "request") -> None:
        super().__init__(f"{operation} failed with status {status}: {reason}")
        self.status = status
        self.reason = reason
        self.operation = operation


class JobError(SnowstormClientError):
    """Base class for asynchronous job failures."""

    def __init__(self, message: str, *, operation: str, status_url: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.status_url = status_url


class JobFailedError(JobError):
    """The job reached its failed state; ``message`` is the server's text."""


class JobTimeoutError(JobError):
    """The job was still running when its wait budget ran out."""


class MissingStatusPointerError(JobError):
    """The submit response carried no ``Location`` header to poll."""


class EnrichmentError(SnowstormClientError):
    """At least one enrichment unit failed; raised after all units were awaited."""

    def __init__(self, message: str, failures: list[BaseException]) -> None:
        super().__init__(message)
        self.failures = failures


def extract_error_message(body: Any) -> str:
    """Pull a readable reason out of an error body.

    JSON bodies contribute their ``message`` field; anything else is used
    as-is. Newlines are collapsed so the reason fits on one log line.
    """
    if body is None:
        return ""
    message: Any = body
    if isinstance(body, bytes):
        message = body.decode("utf-8", errors="replace")
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except ValueError:
            pass
    if isinstance(message, dict):
        message = message.get("message") or message.get("error") or json.dumps(message)
    return " ".join(str(message).split())
