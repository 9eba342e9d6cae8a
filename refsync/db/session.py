"""Database session management for the local refset store.

The session manager owns the SQLite connection, binds the model proxy and
runs blocking peewee work off the event loop with a timeout and a short
retry on ``database is locked``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import peewee

from refsync.db.models import ALL_MODELS, database_proxy

DB_OPERATION_TIMEOUT = 30.0
DB_MAX_RETRIES = 3


@dataclass
class DatabaseSessionManager:
    """Peewee-backed session manager used by the sqlite repositories.

    Attributes:
        path: Path to the SQLite database file, or ":memory:".
        operation_timeout: Default timeout for one operation in seconds.
        max_retries: Retries for locked/busy errors.
    """

    path: str
    operation_timeout: float = field(default=DB_OPERATION_TIMEOUT)
    max_retries: int = field(default=DB_MAX_RETRIES)
    _logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    _database: peewee.SqliteDatabase = field(init=False)
    _write_lock: asyncio.Lock = field(init=False)

    def __post_init__(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._database = peewee.SqliteDatabase(
            self.path,
            pragmas={"journal_mode": "wal", "synchronous": "normal", "foreign_keys": 1},
            check_same_thread=False,
        )
        database_proxy.initialize(self._database)
        self._write_lock = asyncio.Lock()

    @property
    def database(self) -> peewee.SqliteDatabase:
        return self._database

    def connection_context(self) -> Any:
        return self._database.connection_context()

    def migrate(self) -> None:
        """Create tables if they do not exist."""
        with self._database.connection_context():
            self._database.create_tables(ALL_MODELS, safe=True)
        self._logger.info("db_migrated", extra={"path": self.path})

    async def _safe_db_operation(
        self,
        operation: Any,
        *args: Any,
        timeout: float | None = None,
        operation_name: str = "database_operation",
        read_only: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Run ``operation`` in a worker thread inside a connection context.

        Raises:
            TimeoutError: If the operation exceeds ``timeout``.
            peewee.OperationalError: If the database stays locked after retries.
        """
        if timeout is None:
            timeout = self.operation_timeout

        def _op_wrapper() -> Any:
            with self._database.connection_context():
                return operation(*args, **kwargs)

        async def _run() -> Any:
            if read_only:
                return await asyncio.to_thread(_op_wrapper)
            async with self._write_lock:
                return await asyncio.to_thread(_op_wrapper)

        retries = 0
        while True:
            try:
                return await asyncio.wait_for(_run(), timeout=timeout)
            except TimeoutError:
                self._logger.exception(
                    "db_operation_timeout",
                    extra={"operation": operation_name, "timeout": timeout},
                )
                raise
            except peewee.OperationalError as exc:
                error_msg = str(exc).lower()
                if ("locked" in error_msg or "busy" in error_msg) and retries < self.max_retries:
                    retries += 1
                    wait_time = 0.1 * (2**retries)
                    self._logger.warning(
                        "db_locked_retrying",
                        extra={
                            "operation": operation_name,
                            "retry": retries,
                            "wait_time": wait_time,
                            "error": str(exc),
                        },
                    )
                    await asyncio.sleep(wait_time)
                    continue
                self._logger.exception(
                    "db_operational_error",
                    extra={"operation": operation_name, "retries": retries},
                )
                raise

    def close(self) -> None:
        if not self._database.is_closed():
            self._database.close()
