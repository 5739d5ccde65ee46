"""Command line interface.

Usage:
    filesync [--config FILE] COMMAND [OPTIONS]

Examples:
    # Register a mapping and plan it
    filesync add file:///data/photos s3://backup/photos --name photos
    filesync sync photos

    # Apply everything that is queued
    filesync proc

    # Inspect and prune the queue
    filesync show
    filesync rm s3://backup/photos/tmp.jpg
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from . import __version__
from .config.loader import ConfigurationError
from .config.manager import ConfigManager
from .core import ApplyStatus, FileSyncConnector, SyncEngineError
from .database import BlacklistMatchType, init_database, close_database
from .endpoints.base import StorageError
from .main import main as serve_main
from .utils.logging import setup_logging, get_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filesync",
        description="Cache-backed file synchronization between local, S3 and Google Drive storage"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", help="Mappings file (YAML or JSON) synced into the database first")
    parser.add_argument("--database-url", help="Database URL (default: DB_URL setting)")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL setting)")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Plan one mapping, or all of them")
    sync.add_argument("name", nargs="?", help="Mapping name or id")
    sync.add_argument("--apply", action="store_true", help="Apply the queued actions after planning")

    proc = subparsers.add_parser("proc", help="Apply one queued action, or every eligible one")
    proc.add_argument("--id", dest="action_id", help="Action id")
    proc.add_argument("--mapping", help="Only actions of this mapping")

    show = subparsers.add_parser("show", help="List queued actions")
    listing = show.add_mutually_exclusive_group()
    listing.add_argument("--mappings", action="store_true", help="List mappings instead")
    listing.add_argument("--blacklist", action="store_true", help="List blacklist rules instead")

    add = subparsers.add_parser("add", help="Register a mapping")
    add.add_argument("src_url")
    add.add_argument("dst_url")
    add.add_argument("--name", help="Unique mapping name")
    add.add_argument("--bidirectional", action="store_true", help="Copy destination-only files back to the source")

    blacklist = subparsers.add_parser("blacklist", help="Exclude URLs from syncing")
    blacklist.add_argument("url")
    blacklist.add_argument(
        "--match-type",
        choices=[m.value for m in BlacklistMatchType],
        help="How the rule matches (default: SYNC_BLACKLIST_MATCH_TYPE setting)"
    )
    blacklist.add_argument("--remove", action="store_true", help="Delete the rule instead of adding it")

    rm = subparsers.add_parser("rm", help="Discard queued actions touching a URL")
    rm.add_argument("url")

    requeue = subparsers.add_parser("requeue", help="Reset a failed action")
    requeue.add_argument("action_id")

    subparsers.add_parser("serve", help="Run the HTTP control plane")

    return parser


def _print(args: argparse.Namespace, payload, lines: List[str]):
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        for line in lines:
            print(line)


async def run_command(args: argparse.Namespace, connector: FileSyncConnector) -> int:
    """Run one sub-command; returns the process exit code."""
    if args.command == "sync":
        results = [await connector.sync_mapping(args.name)] if args.name else await connector.sync_all()
        lines = []
        for result in results:
            icon = "✅" if result.success else ("⏹️" if result.cancelled else "❌")
            lines.append(
                f"{icon} {result.mapping_name or result.mapping_id}: "
                f"{len(result.enqueued)} queued, {result.duplicates} already queued, {len(result.errors)} errors"
            )
            for error in result.errors:
                lines.append(f"   - {error.kind}: {error.identity} ({error.message})")
        _print(args, [r.to_dict() for r in results], lines)

        exit_code = 0 if all(r.success for r in results) else 1
        if args.apply:
            report = await connector.process_all()
            _print(args, report.to_dict(), [
                f"Applied {report.count(ApplyStatus.SUCCESS)} of {len(report.results)} actions"
            ])
            if report.failures:
                exit_code = 1
        return exit_code

    if args.command == "proc":
        if args.action_id:
            result = await connector.process_action(args.action_id)
            _print(args, result.to_dict(), [
                f"{result.status.value}: {result.src_url} -> {result.dst_url}"
                + (f" ({result.error_kind}: {result.message})" if result.error_kind else "")
            ])
            return 0 if result.status in (ApplyStatus.SUCCESS, ApplyStatus.SKIPPED) else 1

        report = await connector.process_all(args.mapping)
        lines = [f"Applied {report.count(ApplyStatus.SUCCESS)} of {len(report.results)} actions"]
        for failure in report.failures:
            lines.append(f"   ❌ {failure.action_id} {failure.error_kind}: {failure.message}")
        _print(args, report.to_dict(), lines)
        return 1 if report.failures else 0

    if args.command == "show":
        if args.mappings:
            mappings = connector.list_mappings()
            _print(args, [m.model_dump(mode="json") for m in mappings], [
                f"{m.id}\t{m.name or '-'}\t{m.src_url} -> {m.dst_url}"
                f"{' (bidirectional)' if m.bidirectional else ''}\tlast run: {m.last_run or 'never'}"
                for m in mappings
            ])
            return 0

        if args.blacklist:
            rules = connector.list_blacklist()
            _print(args, [r.model_dump(mode="json") for r in rules], [
                f"{r.id}\t{r.match_type.value}\t{r.blacklist_url}" for r in rules
            ] or ["No blacklist rules"])
            return 0

        actions = connector.list_sync_cache()
        _print(args, [a.model_dump(mode="json") for a in actions], [
            f"{a.id}\t{a.action.value}\t{a.status.value}\t{a.src_url} -> {a.dst_url}"
            + (f"\t[{a.error_kind}: {a.last_error}]" if a.needs_attention else "")
            for a in actions
        ] or ["No pending actions"])
        return 0

    if args.command == "add":
        mapping = connector.add_mapping(args.src_url, args.dst_url, args.name, args.bidirectional)
        _print(args, mapping.model_dump(mode="json"), [f"✅ Mapping {mapping.id} registered"])
        return 0

    if args.command == "blacklist":
        if args.remove:
            removed = connector.remove_blacklist_rule(args.url)
            _print(args, {"removed": removed}, [f"Removed {removed} blacklist rules"])
            return 0 if removed else 1

        match_type = BlacklistMatchType(args.match_type) if args.match_type else None
        rule = connector.add_blacklist_rule(args.url, match_type)
        _print(args, rule.model_dump(mode="json"), [
            f"✅ Blacklisted {rule.blacklist_url} ({rule.match_type.value})"
        ])
        return 0

    if args.command == "rm":
        removed = connector.remove_pending(args.url)
        _print(args, {"removed": removed}, [f"Removed {removed} pending actions"])
        return 0 if removed else 1

    if args.command == "requeue":
        requeued = connector.requeue_action(args.action_id)
        _print(args, {"requeued": requeued}, ["Requeued" if requeued else "Action not found"])
        return 0 if requeued else 1

    raise SyncEngineError(f"Unknown command: {args.command}", kind="invalid_request")


async def _run(args: argparse.Namespace) -> int:
    connector = FileSyncConnector(db_manager=init_database(args.database_url, create_tables=True))
    try:
        if args.config:
            ConfigManager(connector.mappings, connector.blacklist, args.config).sync_to_database()
        return await run_command(args, connector)
    finally:
        await connector.close()
        close_database()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(log_level=args.log_level, log_format="console")
    logger = get_logger("cli")

    if args.command == "serve":
        asyncio.run(serve_main(args.config))
        return 0

    try:
        return asyncio.run(_run(args))
    except (SyncEngineError, ConfigurationError, StorageError) as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"❌ {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
