"""
Command-line interface for the link scanner.

This module provides the main CLI entry point with commands for:
- scan: Classify one or more URLs through the full scan pipeline
- collections: Manage collections of flagged items
- graphs: Manage relationship graphs
- config: Configuration management and persisted settings
- self-test: Validate configuration and API access
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Hashable, Optional

from . import __version__
from .config import ScannerConfig
from .enums import ItemType, ScanStatus
from .event_logger import EventLogger
from .exceptions import LinkScannerError
from .models import ScanResult
from .orchestrator import ScanOrchestrator
from .persistence import JsonFileStore, KeyValueStore, MemoryStore
from .self_test import SelfTest, run_self_test
from .settings import (
    create_default_config,
    load_auto_track,
    load_config_from_env,
    load_config_from_file,
    load_settings_from_store,
    save_auto_track,
    save_config_to_file,
    save_settings_to_store,
)
from .tracking_store import TrackingStore
from .virustotal_client import VirusTotalClient


DEFAULT_CONFIG_PATH = Path.home() / ".link_scanner" / "config.json"

STATUS_ICONS = {
    ScanStatus.MALICIOUS: "🔴",
    ScanStatus.SUSPICIOUS: "🟠",
    ScanStatus.CLEAN: "🟢",
    ScanStatus.ERROR: "⚠️",
}


@dataclass(frozen=True)
class ConsoleSite:
    """Presentation site for a URL given on the command line."""

    label: str

    def is_attached(self) -> bool:
        return True


def load_config(config_path: Optional[str]) -> Optional[ScannerConfig]:
    """Load the file config (or defaults), then overlay the environment."""
    config = None
    if config_path:
        config = load_config_from_file(Path(config_path))
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return None
    return load_config_from_env(config or create_default_config())


def open_store(config: ScannerConfig) -> KeyValueStore:
    if config.persistence is None:
        return MemoryStore()
    return JsonFileStore(config.persistence.state_file_path, config.persistence.hmac_secret)


def create_logger(config: ScannerConfig, verbose: bool = False) -> EventLogger:
    return EventLogger.from_config(
        output_format=config.logging.output_format,
        level=config.logging.level,
        debug=config.debug or verbose,
    )


def format_result(url: str, status: ScanStatus, result: Optional[ScanResult]) -> str:
    line = f"{STATUS_ICONS.get(status, '?')} {url}: {status.value.upper()}"
    if result is not None:
        line += (
            f" ({result.malicious} malicious, {result.suspicious} suspicious,"
            f" {result.harmless} harmless of {result.total_engines} engines)"
        )
        engines = list(result.malicious_engines) + list(result.suspicious_engines)
        if engines:
            line += f"\n    Flagged by: {', '.join(engines)}"
        if result.report_link:
            line += f"\n    Report: {result.report_link}"
    return line


async def scan_urls(
    urls: list[str],
    config: ScannerConfig,
    store: KeyValueStore,
    timeout: float,
    logger: Optional[EventLogger] = None,
    client: Optional[VirusTotalClient] = None,
) -> int:
    """
    Scan URLs through the orchestrator and print each verdict.

    Returns:
        Exit code (0 when every URL got a verdict, 1 otherwise)
    """
    verdicts: dict[str, ScanStatus] = {}
    expected: set[str] = set()
    finished = asyncio.Event()

    def sink(site: Hashable, url: str, status: ScanStatus, result: Optional[ScanResult]) -> None:
        if not status.is_terminal:
            return
        verdicts[url] = status
        print(format_result(url, status, result))
        if expected and expected.issubset(verdicts):
            finished.set()

    async with ScanOrchestrator(config, sink=sink, client=client, store=store, logger=logger) as orchestrator:
        if not orchestrator.active:
            print("Error: Scanning is disabled or no API key is configured (set VT_API_KEY)", file=sys.stderr)
            return 1

        for raw_url in urls:
            url = orchestrator.request_scan(raw_url, ConsoleSite(raw_url))
            if url is None:
                print(f"⏭️  {raw_url}: ignored")
                continue
            expected.add(url)

        if not expected or expected.issubset(verdicts):
            return 0 if all(verdicts.get(u) is not ScanStatus.ERROR for u in expected) else 1

        # First tick immediately, then the regular cadence
        await orchestrator.process_next()

        stop_event = asyncio.Event()
        runner = asyncio.create_task(orchestrator.run(stop_event))
        try:
            await asyncio.wait_for(finished.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pending = sorted(expected - set(verdicts))
            print(f"Timed out after {timeout:.0f}s; still pending: {', '.join(pending)}", file=sys.stderr)
        finally:
            stop_event.set()
            orchestrator.scheduler.stop()
            await runner

        tracking_store = orchestrator.tracking_store
        if tracking_store is not None:
            for collection in tracking_store.list_collections():
                counts = tracking_store.collection_threat_counts(
                    collection, lambda item: verdicts.get(item, ScanStatus.UNSCANNED)
                )
                if counts["malicious"] or counts["suspicious"]:
                    print(
                        f"Collection '{collection.name}': {counts['malicious']} malicious, "
                        f"{counts['suspicious']} suspicious"
                    )

    failed = [u for u in expected if verdicts.get(u) in (None, ScanStatus.ERROR)]
    print(f"\nSummary: {len(verdicts)}/{len(expected)} URL(s) classified")
    return 0 if not failed else 1


def cmd_scan(args: argparse.Namespace) -> int:
    """Handle the 'scan' command."""
    config = load_config(args.config)
    if config is None:
        return 1

    store = open_store(config)
    try:
        config = load_settings_from_store(store, config)
    except LinkScannerError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    return asyncio.run(scan_urls(
        urls=args.urls,
        config=config,
        store=store,
        timeout=args.timeout,
        logger=create_logger(config, args.verbose),
    ))


async def _run_tracking_action(args: argparse.Namespace, config: ScannerConfig, store: KeyValueStore) -> int:
    async with VirusTotalClient.from_config(config.api) as client:
        tracking_store = TrackingStore(store, client=client, logger=create_logger(config))

        if args.kind == "collections":
            if args.action == "create":
                collection = await tracking_store.create_collection(args.name, args.description or "")
                where = "locally" if collection.is_local else "on VirusTotal"
                print(f"Created collection '{collection.name}' {where} with ID {collection.id}")
                return 0
            if args.action == "add":
                result = await tracking_store.add_item(args.id, args.item, ItemType(args.type))
                if result.fallback:
                    print(f"Remote add failed; stored in local collection {result.record_id}")
                elif result.added:
                    print(f"Added to collection {result.record_id}")
                else:
                    print(f"Already in collection {result.record_id}")
                return 0
        else:
            if args.action == "create":
                graph = await tracking_store.create_graph(args.name, args.description or "")
                where = "locally" if graph.is_local else "on VirusTotal"
                print(f"Created graph '{graph.name}' {where} with ID {graph.id}")
                return 0
            if args.action == "link":
                result = await tracking_store.add_relationship(args.id, args.source, args.target, args.type)
                if result.fallback:
                    print(f"Remote add failed; stored in local graph {result.record_id}")
                elif result.added:
                    print(f"Added relationship to graph {result.record_id}")
                else:
                    print(f"Relationship already exists in graph {result.record_id}")
                return 0
    return 1


def _print_records(tracking_store: TrackingStore, kind: str) -> None:
    records = tracking_store.list_collections() if kind == "collections" else tracking_store.list_graphs()
    if not records:
        print(f"No {kind} found.")
        return
    for record in records:
        size = len(record.items) if kind == "collections" else len(record.relationships)
        noun = "item(s)" if kind == "collections" else "relationship(s)"
        origin = "local" if record.is_local else "remote"
        mirror = f", mirrors {record.mirror_of}" if record.mirror_of else ""
        print(f"  {record.id}  {record.name} [{origin}{mirror}] - {size} {noun}")


def cmd_tracking(args: argparse.Namespace) -> int:
    """Handle the 'collections' and 'graphs' commands."""
    config = load_config(args.config)
    if config is None:
        return 1

    store = open_store(config)
    try:
        config = load_settings_from_store(store, config)
        tracking_store = TrackingStore(store)

        if args.action == "list":
            _print_records(tracking_store, args.kind)
            return 0

        if args.action == "delete":
            if args.kind == "collections":
                deletion = tracking_store.delete_collection(args.id)
            else:
                deletion = tracking_store.delete_graph(args.id)
            if not deletion.removed:
                print(f"Not found: {args.id}", file=sys.stderr)
                return 1
            print(f"Removed {args.id} from local storage")
            if deletion.remote_persists:
                print("Note: this only removes it from local storage, not from VirusTotal")
            return 0

        if args.action == "remove":
            collection = tracking_store.remove_item(args.id, args.item)
            print(f"Removed {args.item} from '{collection.name}'")
            return 0

        return asyncio.run(_run_tracking_action(args, config, store))
    except LinkScannerError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def cmd_self_test(args: argparse.Namespace) -> int:
    """Handle the 'self-test' command."""
    config = load_config(args.config)
    if config is None:
        return 1

    try:
        config = load_settings_from_store(open_store(config), config)
    except LinkScannerError as e:
        print(f"Warning: Could not read persisted settings: {e.message}", file=sys.stderr)

    result = asyncio.run(run_self_test(config=config, print_output=True))
    return 0 if result.success else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(f"  API key: {'configured' if config.has_api_key else 'missing'}")
        print(f"  Enabled: {config.enabled}")
        print(f"  Debug: {config.debug}")
        print(f"  Threshold: {config.threshold}")
        print(f"  Rate limit: {config.rate_limit.max_requests}/{config.rate_limit.window_seconds:.0f}s")
        print(f"  Tick: {config.scheduler.tick_seconds:.0f}s, re-queue delay: {config.scheduler.requeue_delay_seconds:.0f}s")
        if config.persistence:
            print(f"  State file: {config.persistence.state_file_path}")
        print(f"  Log level: {config.logging.level} ({config.logging.output_format})")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        config = create_default_config()
        if save_config_to_file(config, config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1

        validation = SelfTest(config).validate_config()
        for error in validation.errors:
            print(f"  ✗ {error}")
        for warning in validation.warnings:
            print(f"  ! {warning}")
        if not validation.valid:
            return 1
        print(f"Configuration at {config_path} is valid.")
        return 0

    elif args.action in ("set", "auto-track"):
        config = load_config_from_file(config_path) if config_path.exists() else create_default_config()
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1
        store = open_store(config)
        try:
            if args.action == "set":
                config = load_settings_from_store(store, config)
                if args.api_key is not None:
                    config.api.api_key = args.api_key.strip()
                if args.threshold is not None:
                    config.threshold = args.threshold
                if args.enabled is not None:
                    config.enabled = args.enabled == "on"
                if args.debug is not None:
                    config.debug = args.debug == "on"
                save_settings_to_store(store, config)
                print("Settings saved.")
            else:
                flags = load_auto_track(store, config.auto_track)
                if args.collections is not None:
                    flags.collections_enabled = args.collections == "on"
                if args.graphs is not None:
                    flags.graphs_enabled = args.graphs == "on"
                save_auto_track(store, flags)
                print(
                    f"Auto-track: collections={'on' if flags.collections_enabled else 'off'}, "
                    f"graphs={'on' if flags.graphs_enabled else 'off'}"
                )
        except LinkScannerError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        return 0

    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="link-scanner",
        description="Rate-limited VirusTotal URL scanner with collection tracking",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'scan' command
    scan_parser = subparsers.add_parser(
        "scan",
        help="Scan one or more URLs",
    )
    scan_parser.add_argument(
        "urls",
        nargs="+",
        help="URLs to scan",
    )
    scan_parser.add_argument(
        "--timeout", "-t",
        type=float,
        default=300.0,
        help="Give up on pending URLs after this many seconds (default: 300)",
    )
    scan_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    scan_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    scan_parser.set_defaults(func=cmd_scan)

    # 'collections' command
    collections_parser = subparsers.add_parser(
        "collections",
        help="Manage collections",
    )
    collections_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    collections_sub = collections_parser.add_subparsers(dest="action", required=True)
    collections_sub.add_parser("list", help="List collections")
    create_collection = collections_sub.add_parser("create", help="Create a collection")
    create_collection.add_argument("name")
    create_collection.add_argument("--description", "-d")
    add_item = collections_sub.add_parser("add", help="Add an item to a collection")
    add_item.add_argument("id")
    add_item.add_argument("item")
    add_item.add_argument(
        "--type",
        choices=[item_type.value for item_type in ItemType],
        default=ItemType.URL.value,
        help="Item type (default: url)",
    )
    remove_item = collections_sub.add_parser("remove", help="Remove an item from a collection")
    remove_item.add_argument("id")
    remove_item.add_argument("item")
    delete_collection = collections_sub.add_parser("delete", help="Delete a collection locally")
    delete_collection.add_argument("id")
    collections_parser.set_defaults(func=cmd_tracking, kind="collections")

    # 'graphs' command
    graphs_parser = subparsers.add_parser(
        "graphs",
        help="Manage relationship graphs",
    )
    graphs_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    graphs_sub = graphs_parser.add_subparsers(dest="action", required=True)
    graphs_sub.add_parser("list", help="List graphs")
    create_graph = graphs_sub.add_parser("create", help="Create a graph")
    create_graph.add_argument("name")
    create_graph.add_argument("--description", "-d")
    link = graphs_sub.add_parser("link", help="Add a relationship to a graph")
    link.add_argument("id")
    link.add_argument("source")
    link.add_argument("target")
    link.add_argument("type")
    delete_graph = graphs_sub.add_parser("delete", help="Delete a graph locally")
    delete_graph.add_argument("id")
    graphs_parser.set_defaults(func=cmd_tracking, kind="graphs")

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate", "set", "auto-track"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.add_argument("--api-key", help="VirusTotal API key (set)")
    config_parser.add_argument("--threshold", type=int, help="Suspicious engine threshold (set)")
    config_parser.add_argument("--enabled", choices=["on", "off"], help="Enable scanning (set)")
    config_parser.add_argument("--debug", choices=["on", "off"], help="Debug logging (set)")
    config_parser.add_argument("--collections", choices=["on", "off"], help="Auto-track into first collection")
    config_parser.add_argument("--graphs", choices=["on", "off"], help="Auto-track into first graph")
    config_parser.set_defaults(func=cmd_config)

    # 'self-test' command
    self_test_parser = subparsers.add_parser(
        "self-test",
        help="Validate configuration and API access",
    )
    self_test_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    self_test_parser.set_defaults(func=cmd_self_test)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
