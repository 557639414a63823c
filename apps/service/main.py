import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict
from typing import Any, List, Optional

from pydantic import ValidationError

from packages.shared.paths import ensure_app_dirs
from packages.shared.store import ConfigStore
from packages.core.logging_ import setup_logging
from packages.core.monitor.process_detector import snapshot
from packages.core.monitor.scan_loop import ScanLoop
from packages.core.storage.models import BlockType
from packages.core.storage.repository import Repository

log = logging.getLogger(__name__)

BLOCK_TYPE_CHOICES = {
    "full-path": BlockType.FULL_PATH,
    "process-name": BlockType.PROCESS_NAME,
    "window-title": BlockType.WINDOW_TITLE,
    "app-id": BlockType.APP_ID,
}


def _print_json(data: Any) -> None:
    if isinstance(data, list):
        data = [asdict(d) for d in data]
    elif data is not None and not isinstance(data, dict):
        data = asdict(data)
    print(json.dumps(data, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="process-watcher",
        description="Record which executables run on this host and terminate blocked ones.",
    )
    parser.add_argument("--db", help="SQLite database path (default: from config.json)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_run = subparsers.add_parser("run", help="Run the scan loop in the foreground (Ctrl+C to stop)")
    p_run.add_argument("--interval-ms", type=int, help="Override the polling period")
    p_run.add_argument("--no-block", action="store_true", help="Track runs only, never terminate")

    subparsers.add_parser("apps", help="List known apps")

    p_runs = subparsers.add_parser("runs", help="List the most recent app runs")
    p_runs.add_argument("--limit", type=int, help="Number of runs (default: from config.json)")

    subparsers.add_parser("rules", help="List block rules")
    subparsers.add_parser("block-types", help="List block rule types")
    subparsers.add_parser("snapshot", help="Print the processes a scan would observe")

    p_add = subparsers.add_parser("add-rule", help="Create a block rule")
    p_add.add_argument("type", choices=sorted(BLOCK_TYPE_CHOICES))
    p_add.add_argument("value", help="Path, process name, window title or app id")

    p_update = subparsers.add_parser("update-rule", help="Replace an existing block rule")
    p_update.add_argument("id", type=int)
    p_update.add_argument("type", choices=sorted(BLOCK_TYPE_CHOICES))
    p_update.add_argument("value")

    p_delete = subparsers.add_parser("delete-rule", help="Delete a block rule")
    p_delete.add_argument("id", type=int)

    return parser


def _run_loop(loop: ScanLoop) -> int:
    def signal_handler(sig, frame):
        log.info("Received signal %s, shutting down...", sig)
        loop.stop()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    loop.on_event(lambda evt: log.info("Event: %s", evt))
    loop.start()
    # join() with a timeout keeps the main thread responsive to signals
    while not loop.stopping():
        loop.join(timeout=0.5)
    loop.join()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    ensure_app_dirs()
    setup_logging(verbose=args.verbose)

    cfg = ConfigStore().load()
    if args.db:
        cfg.db_path = args.db

    if args.command == "snapshot":
        _print_json(snapshot())
        return 0

    repo = Repository(cfg.resolved_db_path())

    if args.command == "run":
        if args.interval_ms:
            cfg.poll_interval_ms = args.interval_ms
        if args.no_block:
            cfg.enforce_block_rules = False
        log.info("Starting scan loop, db=%s, period=%dms", repo.db_path, cfg.poll_interval_ms)
        return _run_loop(ScanLoop(cfg.to_monitor_config(), repo))

    if args.command == "apps":
        _print_json(repo.list_apps())
    elif args.command == "runs":
        _print_json(repo.list_recent_runs(args.limit or cfg.recent_runs_limit))
    elif args.command == "rules":
        _print_json(repo.list_block_rules())
    elif args.command == "block-types":
        _print_json(repo.list_block_types())
    elif args.command in ("add-rule", "update-rule"):
        rule_id = args.id if args.command == "update-rule" else None
        try:
            rule = repo.upsert_block_rule(BLOCK_TYPE_CHOICES[args.type], args.value, rule_id=rule_id)
        except ValidationError as e:
            print(f"[ERROR] Invalid block rule: {e.errors()[0]['msg']}", file=sys.stderr)
            return 2
        if rule is None:
            print(f"[ERROR] Block rule {rule_id} not found", file=sys.stderr)
            return 1
        _print_json(rule)
    elif args.command == "delete-rule":
        if not repo.delete_block_rule(args.id):
            print(f"[ERROR] Block rule {args.id} not found", file=sys.stderr)
            return 1
        _print_json({"deleted": args.id})

    return 0


if __name__ == "__main__":
    sys.exit(main())
