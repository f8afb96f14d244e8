"""
main.py  –  command-line entry point

    serve     run the relay in the foreground
    ping      print the relay's latest record
    push      push a timestamp (prints the ack, including any redirect)
    redirect  set the one-shot redirect
    follow    keep a JSON feed file positioned on the relay's timestamp
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Any, Dict, List, Optional

import config
from errors import BindConflict, RelayError
from events import EventManager, QueueSink
from relay_client import RelayClient
from relay_server import RelayServer
from sync_driver import SyncDriver

log = logging.getLogger("main")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=level, format=getattr(config, "LOG_FORMAT", None))


def _parse_fields(pairs: List[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep:
            raise SystemExit(f"--field expects key=value, got {pair!r}")
        try:
            out[key] = json.loads(raw)
        except ValueError:
            out[key] = raw
    return out


def _load_feed(path: str, context: str) -> List[Any]:
    """Feed file: a list of {id, timestamp} or {context: [ … ]}."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get(context, [])
    return list(data)


# ── subcommands ────────────────────────────────────────────────────────────
def cmd_serve(args) -> int:
    server = RelayServer()
    try:
        server.start(args.port)
    except BindConflict as exc:
        log.error("%s", exc)
        return 1
    print(f"🌐 Timestamp relay listening on port {server.port}")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


def cmd_ping(args) -> int:
    print(json.dumps(RelayClient(args.port).ping(), indent=2))
    return 0


def cmd_push(args) -> int:
    record = _parse_fields(args.field)
    record["gmt"] = args.gmt
    print(json.dumps(RelayClient(args.port).push(record)))
    return 0


def cmd_redirect(args) -> int:
    print(json.dumps(RelayClient(args.port).set_redirect(args.timestamp)))
    return 0


def cmd_follow(args) -> int:
    driver = SyncDriver(
        relay=RelayClient(args.port),
        feed=lambda ctx: _load_feed(args.feed, ctx),
        current_context=lambda: args.context,
        sink=QueueSink(),
        interval=args.interval,
    )
    driver.enable()
    try:
        while True:
            for act in EventManager.drain():
                if act["type"] == "move_to_item":
                    print(f"→ {act['context']}: {act['id']}")
            time.sleep(0.1)
    except KeyboardInterrupt:
        pass
    finally:
        driver.disable()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="timestamp-relay",
                                description="Relay a playback timestamp to a chronological feed.")
    p.add_argument("--port", type=int, default=config.RELAY_PORT)
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("serve", help="run the relay").set_defaults(func=cmd_serve)
    sub.add_parser("ping", help="show the latest record").set_defaults(func=cmd_ping)

    sp = sub.add_parser("push", help="push a timestamp")
    sp.add_argument("gmt")
    sp.add_argument("--field", action="append", default=[], metavar="KEY=VALUE")
    sp.set_defaults(func=cmd_push)

    sp = sub.add_parser("redirect", help="set the one-shot redirect")
    sp.add_argument("timestamp")
    sp.set_defaults(func=cmd_redirect)

    sp = sub.add_parser("follow", help="sync a JSON feed file to the relay")
    sp.add_argument("feed")
    sp.add_argument("--context", default="default")
    sp.add_argument("--interval", type=float, default=config.CHECK_INTERVAL)
    sp.set_defaults(func=cmd_follow)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    try:
        return args.func(args)
    except RelayError as exc:
        log.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
