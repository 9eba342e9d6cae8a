"""Operator CLI for reference set membership.

Examples::

    python -m refsync.cli.members register 723264001 --name "Lateralizable" \
        --module-id 900000000000207008 --branch MAIN/SNOMEDCT-XX
    python -m refsync.cli.members add 723264001 100 200 300
    python -m refsync.cli.members add 723264001 --ecl "<< 404684003"
    python -m refsync.cli.members remove 723264001 100,200
    python -m refsync.cli.members count 723264001
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from refsync.adapters.snowstorm.client import SnowstormClient
from refsync.adapters.snowstorm.sync.service import RefsetSyncService
from refsync.adapters.snowstorm.sync.workflow import BranchPathWorkflow, OperatorUser
from refsync.config import AppConfig, load_config
from refsync.core.logging_utils import setup_json_logging
from refsync.db.session import DatabaseSessionManager
from refsync.domain.models import Refset
from refsync.infrastructure.persistence.sqlite.refset_repository import (
    SqliteRefsetRepositoryAdapter,
)

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Add, remove and count reference set members on the terminology server",
        allow_abbrev=False,
    )
    parser.add_argument("--db-path", type=Path, help="Override the configured SQLite path.")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level for this session.",
    )
    parser.add_argument("--user", help="User recorded as the refset's last modifier.")
    commands = parser.add_subparsers(dest="command", required=True)

    register = commands.add_parser("register", help="Store a refset and its working branch.")
    register.add_argument("refset_id")
    register.add_argument("--name", required=True)
    register.add_argument("--module-id", required=True)
    register.add_argument("--branch", required=True, help="Working branch, e.g. MAIN/SNOMEDCT-XX")

    add = commands.add_parser("add", help="Add concepts as members.")
    add.add_argument("refset")
    add.add_argument("concept_ids", nargs="*", help="Ids, space or comma separated.")
    add.add_argument("--ecl", help="Add every concept matching this ECL expression.")
    add.add_argument("--ids-file", type=Path, help="File with one concept id per line.")

    remove = commands.add_parser("remove", help="Remove members.")
    remove.add_argument("refset")
    remove.add_argument("concept_ids", nargs="*", help="Ids, space or comma separated.")
    remove.add_argument("--ids-file", type=Path, help="File with one concept id per line.")

    count = commands.add_parser("count", help="Print the active member count.")
    count.add_argument("refset")
    return parser.parse_args(argv)


def _resolve_ids(args: argparse.Namespace) -> list[str]:
    identifiers: list[str] = []
    for raw in args.concept_ids:
        identifiers.extend(part for part in raw.split(",") if part.strip())
    if args.ids_file:
        identifiers.extend(
            line.strip()
            for line in args.ids_file.read_text(encoding="utf-8").splitlines()
            if line.strip()
        )
    return identifiers


def _prepare_config(args: argparse.Namespace) -> AppConfig:
    try:
        cfg = load_config()
    except RuntimeError as exc:
        msg = f"Configuration error: {exc}. Check SNOWSTORM_* and REFSET_* variables."
        raise SystemExit(msg) from exc

    runtime = cfg.runtime
    if args.db_path:
        runtime = runtime.model_copy(update={"db_path": str(args.db_path)})
    if args.log_level:
        runtime = runtime.model_copy(update={"log_level": args.log_level})
    return replace(cfg, runtime=runtime)


async def run_members_cli(
    args: argparse.Namespace, *, config: AppConfig | None = None, transport: Any = None
) -> dict[str, Any]:
    """Execute one CLI command and return its JSON-ready result."""
    cfg = config or _prepare_config(args)
    setup_json_logging(
        cfg.runtime.log_level, use_loguru=cfg.runtime.use_loguru, log_file=cfg.runtime.log_file
    )

    db = DatabaseSessionManager(cfg.runtime.db_path, operation_timeout=cfg.database.operation_timeout)
    db.migrate()
    repository = SqliteRefsetRepositoryAdapter(db, page_size=cfg.database.page_size)
    user = OperatorUser(user_id=args.user or getpass.getuser())

    try:
        if args.command == "register":
            refset = await repository.add(
                Refset(
                    refset_id=args.refset_id,
                    name=args.name,
                    module_id=args.module_id,
                    branch_path=args.branch,
                    modified_by=user.user_id,
                )
            )
            return {"refset_id": refset.refset_id, "id": refset.id, "branch": refset.branch_path}

        async with SnowstormClient.from_config(cfg.terminology, transport=transport) as client:
            service = RefsetSyncService.from_client(
                client, cfg.limits, persistence=repository, workflow=BranchPathWorkflow()
            )
            if args.command == "count":
                member_count = await service.get_member_count(args.refset)
                return {"refset": args.refset, "member_count": member_count}
            if args.command == "add":
                if args.ecl:
                    report = await service.add_members_from_ecl(args.refset, args.ecl, user)
                else:
                    report = await service.add_members(args.refset, _resolve_ids(args), user)
            else:
                report = await service.remove_members(args.refset, _resolve_ids(args), user)
            return report.model_dump()
    finally:
        db.close()


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m refsync.cli.members``."""
    args = parse_args(argv)
    try:
        result = asyncio.run(run_members_cli(args))
    except KeyboardInterrupt:  # pragma: no cover - user cancelled
        return 1
    except Exception as exc:
        logger.exception("cli_members_failed", exc_info=exc)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
