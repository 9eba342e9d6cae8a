"""Identifier list helpers: de-duplication and size-bounded batch splitting.

Remote calls that carry identifier lists are bounded either by count (bulk
bodies) or by the projected length of the serialized request (URL query
strings, JSON arrays). Both splitters keep input order and never drop an
identifier: one whose own projected size exceeds the cap becomes a batch of
its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

T = TypeVar("T")

# Percent-encoded comma between ids in a query-string list
ENCODED_COMMA_LENGTH = 3


@dataclass(frozen=True)
class LengthBudget:
    """Projected-size budget for one templated request.

    The projected length of a batch ``[a, b, c]`` is::

        fixed_length + sum(len(x) + item_overhead) + separator_length * (n - 1)
    """

    max_length: int
    fixed_length: int = 0
    item_overhead: int = 0
    separator_length: int = 1
    max_count: int | None = None

    def __post_init__(self) -> None:
        if self.max_length <= 0:
            msg = "max_length must be positive"
            raise ValueError(msg)
        if self.max_count is not None and self.max_count <= 0:
            msg = "max_count must be positive"
            raise ValueError(msg)

    def item_length(self, identifier: str) -> int:
        return len(identifier) + self.item_overhead

    def projected_length(self, batch: Sequence[str]) -> int:
        if not batch:
            return self.fixed_length
        body = sum(self.item_length(identifier) for identifier in batch)
        return self.fixed_length + body + self.separator_length * (len(batch) - 1)


def url_list_budget(
    base_url: str, max_length: int, *, max_count: int | None = None
) -> LengthBudget:
    """Budget for ids joined by commas into a single query parameter."""
    return LengthBudget(
        max_length=max_length,
        fixed_length=len(base_url),
        item_overhead=0,
        separator_length=ENCODED_COMMA_LENGTH,
        max_count=max_count,
    )


def json_array_budget(max_length: int, *, max_count: int | None = None) -> LengthBudget:
    """Budget for ids serialized as a JSON string array (``["a","b"]``)."""
    return LengthBudget(
        max_length=max_length,
        fixed_length=2,
        item_overhead=2,
        separator_length=1,
        max_count=max_count,
    )


def unique_ordered(identifiers: Iterable[str]) -> list[str]:
    """Drop blanks and duplicates, keeping the first occurrence of each id."""
    seen: set[str] = set()
    result: list[str] = []
    for raw in identifiers:
        identifier = str(raw).strip()
        if not identifier or identifier in seen:
            continue
        seen.add(identifier)
        result.append(identifier)
    return result


def parse_identifiers(value: str | Iterable[str] | None) -> list[str]:
    """Accept a comma-delimited string or an iterable of ids."""
    if value is None:
        return []
    if isinstance(value, str):
        return unique_ordered(value.split(","))
    return unique_ordered(value)


def split_by_count(items: Sequence[T], max_count: int) -> list[list[T]]:
    if max_count <= 0:
        msg = "max_count must be positive"
        raise ValueError(msg)
    return [list(items[i : i + max_count]) for i in range(0, len(items), max_count)]


def split_by_length(identifiers: Sequence[str], budget: LengthBudget) -> list[list[str]]:
    batches: list[list[str]] = []
    current: list[str] = []
    current_length = budget.fixed_length

    for identifier in identifiers:
        item_length = budget.item_length(identifier)
        if current:
            candidate = current_length + budget.separator_length + item_length
            count_full = budget.max_count is not None and len(current) >= budget.max_count
            if candidate > budget.max_length or count_full:
                batches.append(current)
                current = []
                current_length = budget.fixed_length

        if current:
            current_length += budget.separator_length + item_length
        else:
            current_length = budget.fixed_length + item_length
        current.append(identifier)

    if current:
        batches.append(current)
    return batches
