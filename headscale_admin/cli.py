from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from typing import Any, Dict, List, Optional

import uvicorn

from headscale_admin.config import get_settings
from headscale_admin.logger import configure_logging
from headscale_admin.security import MIN_PASSWORD_LENGTH, hash_password
from headscale_admin.services.aggregator import Aggregator
from headscale_admin.services.formatting import node_to_view
from headscale_admin.services.upstream import ControlApiClient


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _control_client() -> ControlApiClient:
    settings = get_settings()
    return ControlApiClient(
        settings.control_api_url,
        settings.control_api_key,
        timeout_seconds=settings.control_api_timeout_seconds,
        retries=settings.control_api_retries,
    )


async def _with_aggregator(action: str) -> Any:
    client = _control_client()
    try:
        aggregator = Aggregator(client)
        if action == "stats":
            snapshot = await aggregator.fetch_snapshot()
            return snapshot.to_payload(include_health=True)
        return await aggregator.fetch_node_list()
    finally:
        await client.close()


def cmd_serve(args: argparse.Namespace) -> int:
    settings = get_settings()
    uvicorn.run(
        "headscale_admin.main:create_app",
        factory=True,
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        reload=args.reload,
        log_config=None,
    )
    return 0


def cmd_hash_password(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise RuntimeError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    print(hash_password(password))
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    configure_logging(args.log_level)
    _print_json(asyncio.run(_with_aggregator("stats")))
    return 0


def cmd_nodes(args: argparse.Namespace) -> int:
    configure_logging(args.log_level)
    nodes = asyncio.run(_with_aggregator("nodes"))
    rows: List[Dict[str, Any]] = [node_to_view(node) for node in nodes]
    print("ID\tNAME\tUSER\tSTATUS\tLAST_SEEN")
    for row in rows:
        status = "online" if row["online"] else "offline"
        print(f"{row['id']}\t{row['name']}\t{row['user_name']}\t{status}\t{row['last_seen']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="headscale-admin", description="Headscale admin console")
    parser.add_argument("--log-level", default="WARNING")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the web console")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=cmd_serve)

    hash_cmd = sub.add_parser("hash-password", help="Print an argon2 hash for ADMIN_PASSWORD_HASH")
    hash_cmd.add_argument("--password", default=None)
    hash_cmd.set_defaults(func=cmd_hash_password)

    stats = sub.add_parser("stats", help="Print the current network snapshot as JSON")
    stats.set_defaults(func=cmd_stats)

    nodes = sub.add_parser("nodes", help="List nodes registered with the control API")
    nodes.set_defaults(func=cmd_nodes)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
