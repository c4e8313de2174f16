"""Command line entry point: run either end of the link from a terminal."""
from __future__ import annotations

import argparse
import json
import os
import sys
import threading
from pathlib import Path
from typing import IO, Optional, Sequence

from gnss_client.link_bridge import LinkEvent, LocationReceived, StateChanged, StatusReceived
from gnss_client.runtime import ClientRuntime
from gnss_server.listener import ListenerStartError
from gnss_server.position_bridge import ServerSnapshot
from gnss_server.replay_source import ReplayPositionSource
from gnss_server.runtime import ServerRuntime
from gnss_shared.logging_utils import configure_logging, debug_enabled_from_env, get_logger
from gnss_shared.preferences import Preferences
from gnss_shared.wire_codec import location_to_dict

_LOGGER = get_logger("CLI")


def default_config_dir() -> Path:
    base = os.getenv("XDG_CONFIG_HOME")
    root = Path(base).expanduser() if base else Path.home() / ".config"
    return root / "gnss-share"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gnss-share",
        description="Share live GNSS positions over a local TCP link.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config-dir", type=Path, default=default_config_dir(), help="Directory holding gnss_share_settings.json")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file name inside the log directory")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the position source and accept receivers")
    serve.add_argument("--fixes", default="-", help="JSON-lines fix file, or - for stdin")
    serve.add_argument("--interval", type=float, default=1.0, help="Seconds between replayed fixes")
    serve.add_argument("--host", default="0.0.0.0", help="Address to listen on")
    serve.add_argument("--port", type=int, default=None, help="Port to listen on (defaults to the saved preference)")

    receive = commands.add_parser("receive", help="Connect to a server and print received locations")
    target = receive.add_mutually_exclusive_group()
    target.add_argument("--server", default=None, help="Server address (disables gateway lookup)")
    target.add_argument("--gateway", action="store_true", help="Use the default gateway as the server address")
    receive.add_argument("--port", type=int, default=None, help="Server port (defaults to the saved preference)")
    receive.add_argument("--save", action="store_true", help="Persist the chosen server settings")
    return parser


def _wait_for_interrupt(stop: threading.Event) -> None:
    try:
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted, shutting down")


def _run_serve(args: argparse.Namespace, preferences: Preferences, stop: threading.Event) -> int:
    path = None if args.fixes == "-" else Path(args.fixes)
    source = ReplayPositionSource(path, interval=args.interval)

    def _on_status(snapshot: ServerSnapshot) -> None:
        _LOGGER.info(
            "%s | clients=%d satellites=%d status=%s",
            snapshot.reason,
            snapshot.clients,
            snapshot.satellites,
            snapshot.status,
        )

    runtime = ServerRuntime(
        source,
        host=args.host,
        port=args.port if args.port is not None else preferences.port,
        status_listener=_on_status,
    )
    try:
        runtime.start()
    except ListenerStartError as exc:
        print(f"gnss-share: {exc}", file=sys.stderr)
        return 1
    try:
        _wait_for_interrupt(stop)
    finally:
        runtime.stop()
    return 0


def print_event(event: LinkEvent, out: IO[str]) -> None:
    """Write one link event as a JSON line."""
    if isinstance(event, LocationReceived):
        document = {"location": location_to_dict(event.update), "received_at": event.received_at_ms}
    elif isinstance(event, StatusReceived):
        document = {"status": event.text}
    elif isinstance(event, StateChanged):
        document = {"state": event.state.name, "message": event.message}
    else:
        return
    out.write(json.dumps(document) + "\n")
    out.flush()


def _run_receive(args: argparse.Namespace, preferences: Preferences, stop: threading.Event) -> int:
    if args.server:
        preferences.use_gateway_ip = False
        preferences.server_address = args.server
    elif args.gateway:
        preferences.use_gateway_ip = True
    if args.port is not None:
        preferences.port = args.port
    if args.save:
        preferences.save()
    runtime = ClientRuntime(preferences, lambda event: print_event(event, sys.stdout))
    runtime.start()
    try:
        _wait_for_interrupt(stop)
    finally:
        runtime.stop()
    return 0


def main(argv: Optional[Sequence[str]] = None, *, stop: Optional[threading.Event] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    preferences = Preferences(args.config_dir)
    debug = args.debug or preferences.debug_logging or debug_enabled_from_env()
    configure_logging(debug=debug, log_file=args.log_file, retention=preferences.log_retention)
    stop_event = stop or threading.Event()
    if args.command == "serve":
        return _run_serve(args, preferences, stop_event)
    return _run_receive(args, preferences, stop_event)


if __name__ == "__main__":
    sys.exit(main())
