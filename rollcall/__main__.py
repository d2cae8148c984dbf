"""CLI entry point for Rollcall."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import StorageError
from .limits import (
    has_reached_participants_limit,
    has_reached_sessions_limit,
    should_warn,
)
from .remote import RemoteStore, static_session_provider
from .repository import EntityRepository
from .storage import LocalStore
from .sync import SyncEngine, SyncStatus


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_engine(config: Config) -> SyncEngine:
    """Wire Local Store, remote client, repository and engine from config."""
    store = LocalStore(config.storage.db_path, namespace=config.storage.namespace)
    sessions = static_session_provider(
        config.remote.user_id,
        config.remote.access_token,
        cache_seconds=config.remote.session_cache_seconds,
    )

    remote = None
    if config.remote.enabled:
        remote = RemoteStore(
            config.remote.url,
            config.remote.api_key,
            session_provider=sessions,
            max_retries=config.remote.retry_max_attempts,
            timeout=config.remote.timeout_seconds,
            backoff_seconds=config.remote.retry_backoff_seconds,
        )

    repository = EntityRepository(store, remote=remote, session_provider=sessions)
    repository.open()
    return SyncEngine(repository, min_interval_seconds=config.sync.min_interval_seconds)


def _print_result(result, as_json: bool) -> None:
    data = {
        "status": result.status.value,
        "pushed": result.entries_pushed,
        "pulled": result.entries_pulled,
        "deleted": result.entries_deleted,
        "dropped": result.entries_dropped,
        "phase": result.phase.value if result.phase else None,
        "error": str(result.error) if result.error else None,
    }
    if as_json:
        print(json.dumps(data, indent=2))
        return

    print(f"Sync {data['status']}")
    print(f"  Pushed: {data['pushed']}  Pulled: {data['pulled']}  "
          f"Deleted: {data['deleted']}  Dropped: {data['dropped']}")
    if data["error"]:
        print(f"  Error: {data['error']} (during {data['phase']})")


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single sync pass."""
    config = load_config(args.config)
    engine = build_engine(config)

    try:
        if engine.remote is None:
            print("Remote not configured (set remote.url and remote.api_key)", file=sys.stderr)
            return 1
        await engine.repository.check_online()
        result = await engine.sync_now(force=True)
        _print_result(result, args.json)
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        engine.store.close()

    return 0 if result.status in (SyncStatus.SUCCESS, SyncStatus.SKIPPED) else 1


async def cmd_run(args: argparse.Namespace) -> int:
    """Sync continuously until interrupted."""
    config = load_config(args.config)
    if not config.sync.enabled:
        print("Sync disabled in configuration")
        return 0

    engine = build_engine(config)
    interval = args.interval or config.sync.interval_seconds

    print(f"Starting Rollcall sync: {config.device.name}")
    print(f"Remote: {config.remote.url or 'not configured'}")
    print(f"Interval: {interval}s")

    stop = asyncio.Event()
    try:
        await engine.repository.check_online()
        await engine.sync_loop(interval_seconds=interval, stop_event=stop)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        stop.set()
        engine.store.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show connectivity and sync status."""
    config = load_config(args.config)
    engine = build_engine(config)

    try:
        online = await engine.repository.check_online()
        session = await engine.repository.current_session()
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "device": config.device.name,
            "remote": {
                "url": config.remote.url or None,
                "configured": config.remote.enabled,
                "online": online,
                "signed_in": session is not None,
            },
            "storage": engine.store.get_stats(),
            "sync": engine.get_sync_status(),
        }
    finally:
        engine.store.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("Rollcall Status Check")
    print("=====================")
    print(f"Device: {status_data['device']}")
    print()

    remote = status_data["remote"]
    print(f"Remote ({remote['url'] or 'not configured'}):")
    print(f"  Status: {'Online' if remote['online'] else 'Offline'}")
    print(f"  Signed in: {'Yes' if remote['signed_in'] else 'No'}")
    print()

    sync = status_data["sync"]
    print("Sync:")
    print(f"  Last sync: {sync['last_sync'] or 'never'}")
    print(f"  Consecutive failures: {sync['consecutive_failures']}")
    if sync["last_error"]:
        print(f"  Last error: {sync['last_error']}")
    pending = sum(sync["pending"].values())
    print(f"  Pending changes: {pending}")
    for name, count in sync["pending"].items():
        if count:
            print(f"    - {name}: {count}")

    return 0


async def cmd_clubs(args: argparse.Namespace) -> int:
    """List clubs with their usage against the free-tier limits."""
    config = load_config(args.config)
    engine = build_engine(config)
    limits = config.limits.to_limits()

    try:
        await engine.repository.check_online()
        clubs = await engine.repository.get_clubs()
        rows = []
        for club in clubs:
            usage = engine.repository.get_club_usage(club.id)
            rows.append((club, usage))
    finally:
        engine.store.close()

    if args.json:
        print(json.dumps(
            [
                {
                    **club.to_dict(),
                    "participants": usage.participants,
                    "sessions": usage.sessions,
                }
                for club, usage in rows
            ],
            indent=2,
        ))
        return 0

    if not rows:
        print("No clubs")
        return 0

    for club, usage in rows:
        owner = "unclaimed" if club.is_unclaimed else f"owner {club.owner_id}"
        print(f"{club.name} [{club.id}] ({owner})")
        print(f"  Participants: {usage.participants}/{limits.participants_per_club}", end="")
        if has_reached_participants_limit(usage.participants, limits):
            print(" (limit reached)")
        elif should_warn(usage.participants, limits.participants_per_club):
            print(" (near limit)")
        else:
            print()
        print(f"  Sessions: {usage.sessions}/{limits.sessions_per_club}", end="")
        if has_reached_sessions_limit(usage.sessions, limits):
            print(" (limit reached)")
        elif should_warn(usage.sessions, limits.sessions_per_club):
            print(" (near limit)")
        else:
            print()

    return 0


async def cmd_join(args: argparse.Namespace) -> int:
    """Join a shared club by its share code."""
    config = load_config(args.config)
    engine = build_engine(config)

    try:
        await engine.repository.check_online()
        club = await engine.repository.join_club_by_code(args.code)
    finally:
        engine.store.close()

    if club is None:
        print(f"Could not join club with code {args.code}", file=sys.stderr)
        return 1

    print(f"Joined {club.name} [{club.id}]")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="rollcall",
        description="Offline-first club roster and attendance sync",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
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
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync pass")
    sync_parser.add_argument("--json", action="store_true", help="Output result as JSON")
    sync_parser.set_defaults(func=cmd_sync)

    # Run command
    run_parser = subparsers.add_parser("run", help="Sync continuously")
    run_parser.add_argument(
        "-i", "--interval",
        type=int,
        default=None,
        help="Seconds between passes (default: sync.interval_seconds)",
    )
    run_parser.set_defaults(func=cmd_run)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check connectivity and sync status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    # Clubs command
    clubs_parser = subparsers.add_parser("clubs", help="List clubs and usage")
    clubs_parser.add_argument("--json", action="store_true", help="Output clubs as JSON")
    clubs_parser.set_defaults(func=cmd_clubs)

    # Join command
    join_parser = subparsers.add_parser("join", help="Join a club by share code")
    join_parser.add_argument("code", help="Club share code")
    join_parser.set_defaults(func=cmd_join)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    is_async = getattr(args, "is_async", False) or asyncio.iscoroutinefunction(func)

    if is_async:
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
