"""Peewee ORM models for the local refset store."""

from __future__ import annotations

import datetime as _dt
from datetime import UTC
from typing import Any

import peewee

# Initialised with the concrete database by ``DatabaseSessionManager``.
database_proxy: peewee.Database = peewee.DatabaseProxy()


def _utcnow() -> _dt.datetime:
    """Naive UTC now; SQLite columns hold naive UTC timestamps."""
    return _dt.datetime.now(UTC).replace(tzinfo=None)


class BaseModel(peewee.Model):
    """Base model bound to the lazily initialised database proxy."""

    def save(self, *args: Any, **kwargs: Any) -> int:
        if hasattr(self, "updated_at"):
            self.updated_at = _utcnow()
        return super().save(*args, **kwargs)

    class Meta:
        database = database_proxy
        legacy_table_names = False


class RefsetRecord(BaseModel):
    id = peewee.AutoField()
    refset_id = peewee.TextField(unique=True)
    name = peewee.TextField()
    module_id = peewee.TextField()
    branch_path = peewee.TextField()
    member_count = peewee.IntegerField(default=-1)
    version_status = peewee.TextField(default="In Development")
    workflow_status = peewee.TextField(default="READY_FOR_EDIT")
    edit_branch_id = peewee.TextField(null=True)
    refset_branch_id = peewee.TextField(null=True)
    project_id = peewee.TextField(null=True)
    locked = peewee.BooleanField(default=False)
    active = peewee.BooleanField(default=True)
    modified_by = peewee.TextField(null=True)
    modified_at = peewee.DateTimeField(default=_utcnow)
    created_at = peewee.DateTimeField(default=_utcnow)
    updated_at = peewee.DateTimeField(default=_utcnow)

    class Meta:
        table_name = "refsets"
        indexes = ((("name",), False),)


ALL_MODELS: tuple[type[BaseModel], ...] = (RefsetRecord,)
