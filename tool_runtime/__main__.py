"""Operator CLI for tool_runtime.

Usage:
    python -m tool_runtime stats                        # last 60 minutes
    python -m tool_runtime stats --minutes 1440 --format json
    python -m tool_runtime prune --days 30              # apply audit retention

    python -m tool_runtime check servers.json my-server # handshake + tool list
    python -m tool_runtime tools servers.yaml my-server --format json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from tool_runtime.audit import SqliteAuditStore, get_tool_call_stats
from tool_runtime.client import ProtocolClient
from tool_runtime.config import RuntimeConfig, load_server_config
from tool_runtime.errors import ToolRuntimeError
from tool_runtime.models import ServerIdentity


def _db_path(args: argparse.Namespace, config: RuntimeConfig) -> Path:
    return Path(args.db).expanduser() if args.db else config.audit_db_path


def _format_ms(ms: float | None) -> str:
    if not ms:
        return "-"
    return f"{ms:.1f}ms" if ms < 1000 else f"{ms / 1000:.2f}s"


def _find_server(config_path: str, server_id: str) -> ServerIdentity:
    try:
        servers = load_server_config(config_path)
    except (OSError, ValueError) as exc:
        print(f"Cannot read server config {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    for server in servers:
        if server.id == server_id or server.name == server_id:
            return server
    known = ", ".join(s.id for s in servers) or "none"
    print(f"Unknown server {server_id!r}. Configured: {known}", file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# stats / prune
# ---------------------------------------------------------------------------


def cmd_stats(args: argparse.Namespace, config: RuntimeConfig) -> None:
    db_path = _db_path(args, config)
    if not db_path.exists():
        print(f"No audit database at {db_path}.", file=sys.stderr)
        sys.exit(1)
    store = SqliteAuditStore(db_path)
    try:
        stats = get_tool_call_stats(store, minutes=args.minutes)
    finally:
        store.close()

    if args.format == "json":
        print(json.dumps(stats, indent=2))
        return
    _print_stats_table(stats, args.minutes)


def _print_stats_table(stats: dict[str, Any], minutes: float) -> None:
    print(f"\nTool calls in the last {minutes:g} minutes: {stats['total_calls']}")
    if not stats["total_calls"]:
        return
    print(
        f"Success rate: {stats['success_rate'] * 100:.1f}%   "
        f"Avg duration: {_format_ms(stats['avg_duration_ms'])}\n"
    )
    headers = ["Tool", "Calls", "Errors", "Avg Dur"]
    rows = [
        [name, str(t["calls"]), str(t["errors"]), _format_ms(t["avg_duration_ms"])]
        for name, t in sorted(stats["by_tool"].items(), key=lambda kv: -kv[1]["calls"])
    ]
    widths = [max(len(h), 8) for h in headers]
    for row in rows:
        widths = [max(w, len(v)) for w, v in zip(widths, row)]
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    print(fmt.format(*headers))
    print("─" * (sum(widths) + 2 * (len(widths) - 1)))
    for row in rows:
        print(fmt.format(*row))


def cmd_prune(args: argparse.Namespace, config: RuntimeConfig) -> None:
    db_path = _db_path(args, config)
    if not db_path.exists():
        print(f"No audit database at {db_path}.", file=sys.stderr)
        sys.exit(1)
    store = SqliteAuditStore(db_path)
    try:
        removed = store.prune(args.days or config.audit_retention_days)
    finally:
        store.close()
    print(f"Removed {removed} audit rows.")


# ---------------------------------------------------------------------------
# check / tools
# ---------------------------------------------------------------------------


async def _check(server: ServerIdentity, config: RuntimeConfig, timeout: float | None) -> dict[str, Any]:
    client = ProtocolClient(config)
    try:
        return await client.test_connection(server, timeout)
    finally:
        await client.aclose()


async def _tools(server: ServerIdentity, config: RuntimeConfig, timeout: float | None) -> list[dict[str, Any]]:
    client = ProtocolClient(config)
    try:
        return (await client.list_tools(server, timeout))["tools"]
    finally:
        await client.aclose()


def cmd_check(args: argparse.Namespace, config: RuntimeConfig) -> None:
    server = _find_server(args.config, args.server)
    try:
        result = asyncio.run(_check(server, config, args.timeout))
    except ToolRuntimeError as exc:
        print(f"Connection test failed: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.format == "json":
        print(json.dumps(result, indent=2, default=str))
        return
    info = result["serverInfo"].get("serverInfo", {})
    print(f"OK  {server.id} ({server.transport})")
    print(f"    server:   {info.get('name', '-')} {info.get('version', '')}".rstrip())
    print(f"    protocol: {result['serverInfo'].get('protocolVersion', '-')}")
    print(f"    tools:    {len(result['tools'])}")


def cmd_tools(args: argparse.Namespace, config: RuntimeConfig) -> None:
    server = _find_server(args.config, args.server)
    try:
        tools = asyncio.run(_tools(server, config, args.timeout))
    except ToolRuntimeError as exc:
        print(f"Listing tools failed: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.format == "json":
        print(json.dumps(tools, indent=2, default=str))
        return
    if not tools:
        print("No tools.")
        return
    width = max(len(str(t.get("name", ""))) for t in tools)
    for tool in tools:
        description = (tool.get("description") or "").splitlines()
        print(f"{tool.get('name', ''):<{width}}  {description[0] if description else ''}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="tool_runtime",
        description="Tool-call audit stats and tool server diagnostics",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # stats
    stats_p = sub.add_parser("stats", help="Aggregate recent tool calls from the audit log")
    stats_p.add_argument("--minutes", type=float, default=60, help="Look-back window in minutes")
    stats_p.add_argument("--db", help="Audit database path (default: TOOL_RUNTIME_AUDIT_DB)")
    stats_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")
    stats_p.set_defaults(handler=cmd_stats)

    # prune
    prune_p = sub.add_parser("prune", help="Delete audit rows past the retention window")
    prune_p.add_argument("--days", type=int, help="Retention in days (default: TOOL_RUNTIME_AUDIT_RETENTION_DAYS)")
    prune_p.add_argument("--db", help="Audit database path (default: TOOL_RUNTIME_AUDIT_DB)")
    prune_p.set_defaults(handler=cmd_prune)

    # check
    check_p = sub.add_parser("check", help="Test connectivity to a configured tool server")
    check_p.add_argument("config", help="Server config file (JSON or YAML, mcpServers layout)")
    check_p.add_argument("server", help="Server id or name")
    check_p.add_argument("--timeout", type=float, help="Seconds (default: TOOL_RUNTIME_CHECK_TIMEOUT)")
    check_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")
    check_p.set_defaults(handler=cmd_check)

    # tools
    tools_p = sub.add_parser("tools", help="List the tools a configured server exposes")
    tools_p.add_argument("config", help="Server config file (JSON or YAML, mcpServers layout)")
    tools_p.add_argument("server", help="Server id or name")
    tools_p.add_argument("--timeout", type=float, help="Seconds (default: TOOL_RUNTIME_CHECK_TIMEOUT)")
    tools_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")
    tools_p.set_defaults(handler=cmd_tools)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    args.handler(args, RuntimeConfig.from_env())


if __name__ == "__main__":
    main()
