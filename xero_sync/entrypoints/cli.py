from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Callable

from xero_sync.bootstrap.container import AppContainer, build_container
from xero_sync.bootstrap.logging import configure_logging, install_exception_hook
from xero_sync.bootstrap.settings import resolve_log_dir
from xero_sync.core.errors import AppError
from xero_sync.domain.models import EntityType, RunStatus, SyncDirection
from xero_sync.domain.sync_models import SyncOptions
from xero_sync.domain.time_utils import parse_timestamp

logger = logging.getLogger("xero_sync.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

PULL_ENTITIES = {
    "contacts": EntityType.CONTACT,
    "customers": EntityType.CUSTOMER,
    "suppliers": EntityType.SUPPLIER,
    "invoices": EntityType.INVOICE,
    "payments": EntityType.PAYMENT,
}
PUSH_ENTITIES = dict(PULL_ENTITIES)


class UsageError(Exception):
    pass


def _entity_type(value: str) -> EntityType:
    normalized = value.strip().upper()
    try:
        return EntityType(normalized)
    except ValueError:
        mapped = PULL_ENTITIES.get(value.strip().lower())
        if mapped is None:
            raise argparse.ArgumentTypeError(f"unknown entity type: {value}") from None
        return mapped


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="xero-sync", description="Two-way sync between the ERP and Xero")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also write log lines to stderr")
    subcommands = parser.add_subparsers(dest="command", required=True)

    pull = subcommands.add_parser("pull", help="Pull records from Xero")
    pull.add_argument("entity", choices=sorted(PULL_ENTITIES))
    pull.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    pull.add_argument("--modified-since", help="Only records modified after this ISO timestamp")
    pull.add_argument("--include-archived", action="store_true", help="Include archived contacts")
    pull.add_argument("--page-size", type=int, help="Records per Xero page")
    pull.add_argument("--actor", help="Name recorded in the sync log")

    push = subcommands.add_parser("push", help="Push local contacts, invoices or payments to Xero")
    push.add_argument("entity", choices=sorted(PUSH_ENTITIES))
    push.add_argument("--ids", type=int, nargs="+", default=[], help="Only these local ids")
    push.add_argument("--dry-run", action="store_true", help="Report what would change without calling Xero")
    push.add_argument("--actor", help="Name recorded in the sync log")

    sync_all = subcommands.add_parser("sync-all", help="Run every entity in dependency order")
    sync_all.add_argument("--direction", choices=[item.value for item in SyncDirection], default="pull")
    sync_all.add_argument("--dry-run", action="store_true")
    sync_all.add_argument("--actor", help="Name recorded in the sync log")

    subcommands.add_parser("conflicts", help="List records waiting for conflict resolution")

    resolve = subcommands.add_parser("resolve", help="Resolve a pending conflict")
    resolve.add_argument("entity_type", type=_entity_type)
    resolve.add_argument("entity_id", type=int)
    resolve.add_argument("resolution", choices=["use_local", "use_remote", "manual"])
    resolve.add_argument("--data", help="JSON object with the field values for a manual resolution")

    queue = subcommands.add_parser("queue", help="Durable auto-sync queue")
    queue_commands = queue.add_subparsers(dest="queue_command", required=True)
    drain = queue_commands.add_parser("drain", help="Process queued sync jobs")
    drain.add_argument("--max-jobs", type=int, help="Stop after this many jobs")
    queue_commands.add_parser("status", help="Show the number of pending jobs")
    return parser


def _options(args: argparse.Namespace) -> SyncOptions:
    modified_since = None
    if getattr(args, "modified_since", None):
        try:
            modified_since = parse_timestamp(args.modified_since)
        except ValueError as exc:
            raise UsageError(f"invalid --modified-since: {args.modified_since}") from exc
        if modified_since is None:
            raise UsageError(f"invalid --modified-since: {args.modified_since}")
    return SyncOptions(
        dry_run=bool(getattr(args, "dry_run", False)),
        modified_since=modified_since,
        include_archived=bool(getattr(args, "include_archived", False)),
        local_ids=tuple(getattr(args, "ids", None) or ()),
        page_size=getattr(args, "page_size", None),
        actor=getattr(args, "actor", None),
    )


def _manual_data(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise UsageError(f"--data is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise UsageError("--data must be a JSON object")
    return data


def _run_command(args: argparse.Namespace, container: AppContainer) -> tuple[dict[str, Any], int]:
    if args.command == "pull":
        result = container.orchestrator.run(PULL_ENTITIES[args.entity], SyncDirection.PULL, options=_options(args))
        return result.to_dict(), EXIT_FAILED if result.status is RunStatus.FAILED else EXIT_OK
    if args.command == "push":
        result = container.orchestrator.run(PUSH_ENTITIES[args.entity], SyncDirection.PUSH, options=_options(args))
        return result.to_dict(), EXIT_FAILED if result.status is RunStatus.FAILED else EXIT_OK
    if args.command == "sync-all":
        result = container.orchestrator.sync_all(SyncDirection(args.direction), _options(args))
        return result.to_dict(), EXIT_FAILED if result.status is RunStatus.FAILED else EXIT_OK
    if args.command == "conflicts":
        conflicts = container.conflicts_service.list_conflicts()
        payload = {
            "count": len(conflicts),
            "conflicts": [{**asdict(item), "entity_type": item.entity_type.value} for item in conflicts],
        }
        return payload, EXIT_OK
    if args.command == "resolve":
        record = container.conflicts_service.resolve_conflict(
            args.entity_type,
            args.entity_id,
            args.resolution,
            _manual_data(args.data),
        )
        payload = {
            "entity_type": record.entity_type.value,
            "local_id": record.local_id,
            "xero_id": record.xero_id,
            "outcome": record.outcome.value,
        }
        return payload, EXIT_OK
    if args.queue_command == "status":
        return {"pending": container.auto_sync.pending_count()}, EXIT_OK
    summary = container.auto_sync.drain(args.max_jobs)
    return summary.to_dict(), EXIT_FAILED if summary.failed else EXIT_OK


def main(
    argv: list[str] | None = None,
    container_factory: Callable[[], AppContainer] = build_container,
) -> int:
    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return EXIT_USAGE if exc.code else EXIT_OK

    log_dir = resolve_log_dir()
    configure_logging(log_dir, console_level=logging.INFO if args.verbose else None)
    install_exception_hook(log_dir)

    container = container_factory()
    try:
        payload, exit_code = _run_command(args, container)
    except UsageError as exc:
        sys.stderr.write(f"{exc}\n")
        return EXIT_USAGE
    except AppError as exc:
        logger.warning("Command %s failed: %s", args.command, exc)
        payload, exit_code = {"error": str(exc), "error_type": type(exc).__name__}, EXIT_FAILED
    finally:
        container.orchestrator.shutdown()

    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    logger.info("Command finished", extra={"extra": {"command": args.command, "exit_code": exit_code}})
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
