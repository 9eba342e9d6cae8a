"""SQLite implementation of the refset persistence port."""

from __future__ import annotations

from datetime import UTC, datetime

from peewee import fn

from refsync.db.models import RefsetRecord
from refsync.domain.models import Refset
from refsync.infrastructure.persistence.sqlite.base import SqliteBaseRepository

DEFAULT_PAGE_SIZE = 50
_SORTABLE_FIELDS = {
    "name": RefsetRecord.name,
    "refset_id": RefsetRecord.refset_id,
    "modified_at": RefsetRecord.modified_at,
    "member_count": RefsetRecord.member_count,
}

_COPIED_FIELDS = (
    "refset_id",
    "name",
    "module_id",
    "branch_path",
    "member_count",
    "version_status",
    "workflow_status",
    "edit_branch_id",
    "refset_branch_id",
    "project_id",
    "locked",
    "active",
    "modified_by",
    "modified_at",
)


def _to_domain(record: RefsetRecord) -> Refset:
    refset = Refset(**{name: getattr(record, name) for name in _COPIED_FIELDS})
    refset.id = record.id
    if isinstance(refset.modified_at, datetime) and refset.modified_at.tzinfo is None:
        refset.modified_at = refset.modified_at.replace(tzinfo=UTC)
    return refset


def _record_values(refset: Refset) -> dict[str, object]:
    values = {name: getattr(refset, name) for name in _COPIED_FIELDS}
    # SQLite stores naive UTC timestamps.
    modified_at = refset.modified_at
    if modified_at.tzinfo is not None:
        values["modified_at"] = modified_at.astimezone(UTC).replace(tzinfo=None)
    return values


class SqliteRefsetRepositoryAdapter(SqliteBaseRepository):
    """Stores ``Refset`` rows; ``refset_key`` is the row id or the refset SCTID."""

    def __init__(self, session_manager: object, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        super().__init__(session_manager)
        self._page_size = page_size

    @staticmethod
    def _lookup(refset_key: str) -> RefsetRecord | None:
        record = RefsetRecord.get_or_none(RefsetRecord.refset_id == refset_key)
        if record is None and refset_key.isdigit():
            record = RefsetRecord.get_or_none(RefsetRecord.id == int(refset_key))
        return record

    async def get(self, refset_key: str) -> Refset | None:
        def _get() -> Refset | None:
            record = self._lookup(str(refset_key))
            return _to_domain(record) if record else None

        return await self._execute(_get, operation_name="get_refset", read_only=True)

    async def add(self, refset: Refset) -> Refset:
        def _insert() -> Refset:
            record = RefsetRecord.create(**_record_values(refset))
            refset.id = record.id
            return refset

        return await self._execute(_insert, operation_name="add_refset")

    async def update(self, refset: Refset) -> Refset:
        """Write every tracked field of ``refset`` back to its row.

        Raises:
            LookupError: If no row matches the refset.
        """

        def _update() -> Refset:
            key = str(refset.id) if refset.id is not None else refset.refset_id
            record = self._lookup(key)
            if record is None:
                msg = f"Refset {key} is not stored"
                raise LookupError(msg)
            for name, value in _record_values(refset).items():
                setattr(record, name, value)
            record.save()
            refset.id = record.id
            return refset

        return await self._execute(_update, operation_name="update_refset")

    async def remove(self, refset_key: str) -> bool:
        def _delete() -> bool:
            record = self._lookup(str(refset_key))
            if record is None:
                return False
            return record.delete_instance() > 0

        return await self._execute(_delete, operation_name="remove_refset")

    async def find(
        self, query: str | None = None, *, sort: str | None = None, page: int = 0
    ) -> list[Refset]:
        """Refsets whose name or SCTID contains ``query``, one page at a time.

        ``sort`` is a field name, prefixed with ``-`` for descending order.
        """

        def _find() -> list[Refset]:
            select = RefsetRecord.select()
            if query:
                needle = f"%{query.lower()}%"
                select = select.where(
                    (fn.LOWER(RefsetRecord.name) ** needle) | (RefsetRecord.refset_id ** needle)
                )
            descending = bool(sort and sort.startswith("-"))
            field = _SORTABLE_FIELDS.get((sort or "name").lstrip("-"), RefsetRecord.name)
            select = select.order_by(field.desc() if descending else field.asc(), RefsetRecord.id)
            select = select.limit(self._page_size).offset(max(page, 0) * self._page_size)
            return [_to_domain(record) for record in select]

        return await self._execute(_find, operation_name="find_refsets", read_only=True)
