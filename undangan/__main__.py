"""CLI entry point for undangan."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .errors import StoreError
from .store import DocumentStore, create_store


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level = getattr(logging, log_level.upper(), logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


def _make_shim(config, store):
    from .sync import SyncShim

    return SyncShim(
        store,
        state_path=config.sync.state_path,
        snapshot_interval_seconds=config.sync.snapshot_interval_seconds,
        probe_interval_seconds=config.sync.probe_interval_seconds,
    )


async def cmd_init(args: argparse.Namespace) -> int:
    """Create missing data documents."""
    config = load_config(args.config)
    store = create_store(config)
    await store.initialize()

    if config.storage.backend == "file":
        print(f"Data directory: {Path(config.storage.data_dir).expanduser().resolve()}")
    elif config.storage.backend == "cache":
        print(f"Cache file: {Path(config.storage.cache_path).expanduser()}")
    else:
        print(f"Remote store: {config.remote.url}")
    return 0


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the REST API server."""
    config = load_config(args.config)

    import uvicorn

    from .server import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    store = create_store(config)
    await store.initialize()

    print("Starting Undangan API")
    print(f"Storage: {config.storage.backend}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, store)

    try:
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if args.verbose else "warning",
            )
        )
        await server.serve()
    finally:
        await store.close()

    return 0


async def cmd_stats(args: argparse.Namespace) -> int:
    """Print aggregate statistics."""
    config = load_config(args.config)
    store = create_store(config)

    try:
        stats = await store.get_stats()
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await store.close()

    if args.json_output:
        print(json.dumps(stats, indent=2))
        return 0

    print(f"Comments: {stats['total_comments']} ({stats['top_level_comments']} top-level)")
    print(f"  Attending:     {stats['attending']}")
    print(f"  Not attending: {stats['not_attending']}")
    print(f"  Likes:         {stats['total_likes']}")
    print(f"  Today:         {stats['comments_today']}")
    print(f"Guests: {stats['total_guests']} ({stats['guests_today']} today)")
    for category, count in sorted(stats["popular_categories"].items()):
        print(f"  {category}: {count}")
    print(f"Views: {stats['total_views']}")
    return 0


async def cmd_comment_add(args: argparse.Namespace) -> int:
    """Add a comment, queuing it if the store is unreachable."""
    config = load_config(args.config)
    store = create_store(config)

    if not config.sync.enabled:
        try:
            comment = await store.add_comment(
                args.name, args.presence, args.body, gif_url=args.gif_url, parent_id=args.parent_id
            )
        except StoreError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        finally:
            await store.close()
        print(f"Added comment {comment.id} ({comment.uuid})")
        return 0

    shim = _make_shim(config, store)
    await shim.start()

    try:
        # Earlier queued writes go first
        if shim.pending:
            await shim.flush_queue()
        outcome = await shim.add_comment(
            args.name, args.presence, args.body, gif_url=args.gif_url, parent_id=args.parent_id
        )
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await shim.close()

    comment = outcome.value
    if outcome.queued:
        print(f"Store unreachable, comment queued as {comment.uuid}")
    else:
        print(f"Added comment {comment.id} ({comment.uuid})")
    return 0


async def cmd_sync_status(args: argparse.Namespace) -> int:
    """Show the offline queue."""
    config = load_config(args.config)
    shim = _make_shim(config, create_store(config))

    status = shim.status()
    print(f"State: {status['state']}")
    print(f"Pending writes: {status['pending_writes']}")
    for pending in shim.pending:
        print(f"  {pending.id}  {pending.operation}  queued {pending.created_at.isoformat()}")
    return 0


async def cmd_sync_flush(args: argparse.Namespace) -> int:
    """Replay queued writes against the store."""
    config = load_config(args.config)
    shim = _make_shim(config, create_store(config))
    await shim.start()

    try:
        result = await shim.flush_queue()
    finally:
        await shim.close()

    print(f"Flush: {result.status.value}, replayed {result.replayed}, remaining {result.remaining}")
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
    return 0 if result.remaining == 0 else 1


async def cmd_sync_drop(args: argparse.Namespace) -> int:
    """Discard one queued write."""
    config = load_config(args.config)
    shim = _make_shim(config, create_store(config))

    try:
        dropped = shim.discard(args.pending_id)
    except StoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    await asyncio.to_thread(shim.save_snapshot)

    print(f"Dropped {dropped.operation} {dropped.id}")
    return 0


async def cmd_export(args: argparse.Namespace) -> int:
    """Write all documents to a backup file."""
    config = load_config(args.config)
    store = create_store(config)
    if not isinstance(store, DocumentStore):
        print("Export needs the file or cache storage backend", file=sys.stderr)
        return 1

    data = await store.export_data()
    args.file.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    print(f"Exported to {args.file}")
    return 0


async def cmd_import(args: argparse.Namespace) -> int:
    """Replace all documents from a backup file."""
    config = load_config(args.config)
    store = create_store(config)
    if not isinstance(store, DocumentStore):
        print("Import needs the file or cache storage backend", file=sys.stderr)
        return 1

    try:
        data = json.loads(args.file.read_text(encoding="utf-8"))
        await store.import_data(data)
    except (OSError, ValueError, StoreError) as e:
        print(f"Error importing {args.file}: {e}", file=sys.stderr)
        return 1

    print(f"Imported {args.file}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="undangan",
        description="Comments, guests and settings store for an invitation site",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml, skipped if missing)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        dest="json_logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    init_parser = subparsers.add_parser("init", help="Create missing data files")
    init_parser.set_defaults(func=cmd_init)

    serve_parser = subparsers.add_parser("serve", help="Start the REST API server")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port (default: from config)")
    serve_parser.add_argument("--host", type=str, default=None, help="Host (default: from config)")
    serve_parser.set_defaults(func=cmd_serve)

    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output stats as JSON",
    )
    stats_parser.set_defaults(func=cmd_stats)

    # Comment commands
    comment_parser = subparsers.add_parser("comment", help="Manage comments")
    comment_subparsers = comment_parser.add_subparsers(dest="comment_command", help="Comment commands")

    comment_add = comment_subparsers.add_parser("add", help="Add a comment")
    comment_add.add_argument("name", help="Author name")
    comment_add.add_argument(
        "--presence",
        choices=["attending", "not_attending"],
        required=True,
        help="Attendance answer",
    )
    comment_add.add_argument("--body", required=True, help="Comment text")
    comment_add.add_argument("--gif-url", default=None, help="Attached GIF URL")
    comment_add.add_argument("--parent-id", type=int, default=None, help="Reply to this comment id")
    comment_add.set_defaults(func=cmd_comment_add)

    # Sync commands
    sync_parser = subparsers.add_parser("sync", help="Inspect or flush the offline queue")
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")

    sync_status = sync_subparsers.add_parser("status", help="Show queued writes")
    sync_status.set_defaults(func=cmd_sync_status)

    sync_flush = sync_subparsers.add_parser("flush", help="Replay queued writes")
    sync_flush.set_defaults(func=cmd_sync_flush)

    sync_drop = sync_subparsers.add_parser("drop", help="Discard one queued write")
    sync_drop.add_argument("pending_id", help="Placeholder id of the queued write")
    sync_drop.set_defaults(func=cmd_sync_drop)

    # Backup commands
    export_parser = subparsers.add_parser("export", help="Export all data to a JSON file")
    export_parser.add_argument("file", type=Path)
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import data from a JSON backup")
    import_parser.add_argument("file", type=Path)
    import_parser.set_defaults(func=cmd_import)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "comment" and not args.comment_command:
        comment_parser.print_help()
        return 1

    if args.command == "sync" and not args.sync_command:
        sync_parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except (ValueError, StoreError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
