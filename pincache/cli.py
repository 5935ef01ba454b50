"""
pincache CLI: keep pinned content in sync with registry contenthash records.

Commands:
  pincache past -b N       - Reconcile entries changed in the last N blocks
  pincache missed          - Reconcile blocks missed since the stored cursor
  pincache listen          - Listen for live changes and pin wrappers
  pincache unresponsive    - Reprocess quarantined (unresponsive) entries
  pincache info            - Show cursor, pinned and quarantined counts
  pincache reset           - Delete the stored cache state
  pincache api start       - Start the status API (optionally with the listener)
  pincache api status      - Query a running status API
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any


def _load_config(args: argparse.Namespace) -> dict[str, Any]:
    """Load config and configure logging. Exits on invalid config."""
    from pincache.config import ConfigError, load_config

    try:
        config = load_config(getattr(args, "config", None))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    level = config["log_level"]
    if getattr(args, "verbose", False):
        level = "DEBUG"
    elif getattr(args, "quiet", False):
        level = "WARNING"
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    return config


def _get_runner(args: argparse.Namespace):
    """Build a CacheRunner from config. Exits on config or state errors."""
    from pincache.config import ConfigError
    from pincache.state import PinCacheError
    from pincache.wiring import build_runner

    config = _load_config(args)
    try:
        return config, build_runner(config)
    except (ConfigError, PinCacheError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _run_batch(label: str, operation) -> None:
    from pincache.state import PinCacheError

    try:
        stats = operation()
    except PinCacheError as e:
        print(f"Error: {label} failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"{label}: {stats}")


def cmd_past(args: argparse.Namespace) -> None:
    """Reconcile entries changed within the last N blocks."""
    if args.blocks < 0:
        print("Error: --blocks must be >= 0", file=sys.stderr)
        sys.exit(1)
    _config, runner = _get_runner(args)
    _run_batch("Past blocks", lambda: runner.run_catch_up(args.blocks))


def cmd_missed(args: argparse.Namespace) -> None:
    """Reconcile blocks missed while the process was offline."""
    _config, runner = _get_runner(args)
    _run_batch("Missed blocks", runner.run_from_last_cursor)


def cmd_unresponsive(args: argparse.Namespace) -> None:
    """Give quarantined entries another pass."""
    _config, runner = _get_runner(args)
    _run_batch("Unresponsive entries", runner.reprocess_quarantine)


def cmd_listen(args: argparse.Namespace) -> None:
    """Listen for live changes until interrupted."""
    from pincache.state import PinCacheError

    _config, runner = _get_runner(args)
    listener = runner.start_live_listening()
    try:
        listener.wait()
    except KeyboardInterrupt:
        print("\nShutting down...")
    except PinCacheError as e:
        print(f"Error: listener stopped: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        listener.stop()


def cmd_info(args: argparse.Namespace) -> None:
    """Show cursor, pinned and quarantined counts from the stored state."""
    from pincache.state import PinCacheError
    from pincache.wiring import build_store

    config = _load_config(args)
    store = build_store(config)
    try:
        state = store.load(config["start_block"])
    except PinCacheError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    summary = state.summary()
    print(f"Last block number was {summary['cursor']}")
    print(f"There are {summary['pinned_count']} pinned entries")
    print(f"There are {summary['pinned_hashes']} pinned content hashes")
    print(f"There are {summary['quarantined_count']} quarantined entries")
    print(f"There are {summary['pending_unpin_count']} hashes waiting to be unpinned")


def cmd_reset(args: argparse.Namespace) -> None:
    """Delete the stored cache state."""
    from pincache.state import PinCacheError
    from pincache.wiring import build_store

    config = _load_config(args)
    store = build_store(config)
    if not store.exists():
        print(f"No cache state at {store.path}")
        return
    try:
        store.reset()
    except PinCacheError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Deleted {store.path}")


def cmd_api_start(args: argparse.Namespace) -> None:
    """Start the status API server."""
    from pincache.api import run_api

    config, runner = _get_runner(args)
    host = args.host or config["api_host"]
    port = args.port if args.port is not None else config["api_port"]
    run_api(runner, host=host, port=port, listen=args.listen)


def cmd_api_status(args: argparse.Namespace) -> None:
    """Query a running status API."""
    import json
    import urllib.error
    import urllib.request

    from pincache import API_DEFAULT_HOST, API_DEFAULT_PORT

    host = args.host or API_DEFAULT_HOST
    port = args.port if args.port is not None else API_DEFAULT_PORT
    url = f"http://{host}:{port}/status"

    try:
        req = urllib.request.Request(url, method="GET")
        with urllib.request.urlopen(req, timeout=5) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.URLError as e:
        print(f"Error: Cannot reach API at {url}: {e.reason}", file=sys.stderr)
        sys.exit(1)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"pincache API: {url}")
    print(f"  healthy:     {'yes' if data.get('healthy') else 'NO'}")
    print(f"  cursor:      {data.get('cursor', '?')}")
    print(f"  pinned:      {data.get('pinned_count', '?')}")
    print(f"  quarantined: {data.get('quarantined_count', '?')}")
    print(f"  pending:     {data.get('pending_unpin_count', '?')}")
    listener = data.get("listener")
    if listener:
        state = "running" if listener.get("running") else "STOPPED"
        print(f"  listener:    {state}, {listener.get('processed', 0)} processed")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="pincache",
        description="Pin content referenced by registry contenthash records.",
    )
    from pincache import __version__
    parser.add_argument("--version", action="version", version=f"pincache {__version__}")
    parser.add_argument("-c", "--config", help="Config file (or set PINCACHE_CONFIG)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings")
    sub = parser.add_subparsers(dest="command")

    # past
    p_past = sub.add_parser("past", help="Run for a past block count")
    p_past.add_argument("-b", "--blocks", type=int, required=True, help="Past block count")

    # missed
    sub.add_parser("missed", help="Run for blocks missed while offline")

    # listen
    sub.add_parser("listen", help="Listen for events and pin wrappers")

    # unresponsive
    sub.add_parser("unresponsive", help="Reprocess quarantined entries")

    # info
    sub.add_parser("info", help="Show cursor, pinned and quarantined counts")

    # reset
    sub.add_parser("reset", help="Delete the cache state file")

    # api (with subcommands)
    p_api = sub.add_parser("api", help="Status API HTTP server")
    api_sub = p_api.add_subparsers(dest="api_command")

    p_api_start = api_sub.add_parser("start", help="Start the status API server")
    p_api_start.add_argument("-p", "--port", type=int, help="Listen port (default: 8080)")
    p_api_start.add_argument("--host", help="Bind address (default: 127.0.0.1)")
    p_api_start.add_argument(
        "-l", "--listen", action="store_true", help="Also listen for live events"
    )

    p_api_status = api_sub.add_parser("status", help="Show API service status")
    p_api_status.add_argument("-p", "--port", type=int, help="API port (default: 8080)")
    p_api_status.add_argument("--host", help="API host (default: 127.0.0.1)")

    args = parser.parse_args(argv)

    if not args.command:
        print("pincache: pin content referenced by registry contenthash records")
        print()
        print("Usage:")
        print("  pincache past -b 10000")
        print("  pincache missed")
        print("  pincache listen")
        print("  pincache unresponsive")
        print("  pincache info")
        print("  pincache reset")
        print("  pincache api start [--port N] [--host ADDR] [--listen]")
        print("  pincache api status")
        print()
        print("Run 'pincache <command> --help' for details on any command.")
        sys.exit(0)

    if args.command == "api":
        api_commands = {
            "start": cmd_api_start,
            "status": cmd_api_status,
        }
        ac = getattr(args, "api_command", None)
        if not ac:
            print("Usage: pincache api {start|status}")
            sys.exit(0)
        api_commands[ac](args)
        return

    commands = {
        "past": cmd_past,
        "missed": cmd_missed,
        "listen": cmd_listen,
        "unresponsive": cmd_unresponsive,
        "info": cmd_info,
        "reset": cmd_reset,
    }

    commands[args.command](args)


if __name__ == "__main__":
    main()
