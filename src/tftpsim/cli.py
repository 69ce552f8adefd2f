from __future__ import annotations

import argparse
import logging
import threading
from pathlib import Path

from .client import TftpClient
from .console import ClientConsole, RelayConsole, ServerConsole
from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RELAY_IDLE_MS,
    DEFAULT_TIMEOUT_MS,
    RELAY_PORT,
    SERVER_PORT,
)
from .fault import FaultSwitch
from .relay import ErrorSimulator
from .retry import RetryPolicy
from .server import TftpServer
from .storage import FileStore


def _policy(args: argparse.Namespace) -> RetryPolicy:
    return RetryPolicy(timeout_ms=args.timeout_ms, max_retries=args.max_retries)


def _store(root: str) -> FileStore:
    Path(root).mkdir(parents=True, exist_ok=True)
    return FileStore(root)


def cmd_server(args: argparse.Namespace) -> int:
    server = TftpServer(_store(args.root), host=args.host, port=args.port, policy=_policy(args))
    if args.no_console:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            server.shutdown(cancel=True)
        return 0

    t = threading.Thread(target=server.serve_forever, name="server", daemon=True)
    t.start()
    try:
        ServerConsole(server).cmdloop()
    except KeyboardInterrupt:
        server.shutdown(cancel=True)
    return 0


def cmd_relay(args: argparse.Namespace) -> int:
    relay = ErrorSimulator(
        FaultSwitch(),
        host=args.host,
        port=args.port,
        server=(args.server_host, args.server_port),
        idle_timeout_ms=args.idle_timeout_ms,
        reply_wait_ms=args.timeout_ms,
    )
    t = threading.Thread(target=relay.serve_forever, name="relay", daemon=True)
    t.start()
    try:
        RelayConsole(relay).cmdloop()
    except KeyboardInterrupt:
        relay.shutdown(cancel=True)
    return 0


def cmd_client(args: argparse.Namespace) -> int:
    client = TftpClient(
        _store(args.root),
        server_host=args.server_host,
        server_port=args.server_port,
        policy=_policy(args),
        mode=args.mode,
    )
    try:
        ClientConsole(client).cmdloop()
    except KeyboardInterrupt:
        client.close(cancel=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tftpsim", description="TFTP client, server and error simulator.")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_retry(x: argparse.ArgumentParser) -> None:
        x.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
        x.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)

    server = sub.add_parser("server", help="serve files from a directory")
    add_retry(server)
    server.add_argument("--root", default="SERVERDATA")
    server.add_argument("--host", default="0.0.0.0")
    server.add_argument("--port", type=int, default=SERVER_PORT)
    server.add_argument("--no-console", action="store_true", help="run until interrupted, without a console")
    server.set_defaults(func=cmd_server)

    relay = sub.add_parser("relay", help="relay client traffic to a server and inject faults")
    add_retry(relay)
    relay.add_argument("--host", default="0.0.0.0")
    relay.add_argument("--port", type=int, default=RELAY_PORT)
    relay.add_argument("--server-host", default="127.0.0.1")
    relay.add_argument("--server-port", type=int, default=SERVER_PORT)
    relay.add_argument("--idle-timeout-ms", type=int, default=DEFAULT_RELAY_IDLE_MS)
    relay.set_defaults(func=cmd_relay)

    client = sub.add_parser("client", help="interactive client")
    add_retry(client)
    client.add_argument("--root", default="CLIENTDATA")
    client.add_argument("--server-host", default="127.0.0.1")
    client.add_argument("--server-port", type=int, default=RELAY_PORT, help="the relay's port by default")
    client.add_argument("--mode", default="octet", choices=["octet", "netascii"])
    client.set_defaults(func=cmd_client)

    return parser


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(threadName)s: %(message)s",
    )
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
