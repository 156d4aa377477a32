"""Argparse-based CLI for browser-netcap.

Parses all commands and dispatches to the client module or handles
daemon-management commands directly.
"""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from browser_netcap.cdp import list_page_targets
from browser_netcap.client import (
    clear_requests,
    ensure_daemon,
    find_request,
    get_request,
    list_requests,
    resolve_tab_id,
    stop_daemon,
)
from browser_netcap.config import NetcapConfig, get_version, load_config
from browser_netcap.errors import NetcapError
from browser_netcap.models import NetworkRequest
from browser_netcap.session import get_log_path, is_pid_alive, read_state


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_request_line(req: NetworkRequest) -> str:
    duration = f"{round(req.duration)}ms" if req.duration is not None else "..."
    status = str(req.status) if req.status is not None else ("ERR" if req.failed else "...")
    url = req.url if len(req.url) <= 60 else req.url[:60] + "..."
    failed = "  FAILED" if req.failed else ""
    return f"#{req.id:<4} {req.method:<6} {status:<3} {url}  {duration:>6}{failed}"


def format_request_detail(
    req: NetworkRequest,
    headers: bool = False,
    body: bool = False,
    request_body: bool = False,
) -> str:
    duration = f"{round(req.duration)}ms" if req.duration is not None else "pending"
    if req.status is not None:
        status = str(req.status)
    else:
        status = "FAILED" if req.failed else "..."
    lines = [f"{req.method} {status} {req.url}  {duration}"]
    if req.error:
        lines.append(f"Error: {req.error}")
    lines.append("")

    # Headers are the default view when no body was asked for.
    if headers or not (body or request_body):
        lines.append("Request Headers:")
        lines.extend(f"  {k}: {v}" for k, v in req.request_headers.items())
        lines.append("")
        if req.response_headers:
            lines.append("Response Headers:")
            lines.extend(f"  {k}: {v}" for k, v in req.response_headers.items())
            lines.append("")

    if request_body and req.request_body:
        lines.extend(["Request Body:", req.request_body, ""])

    if body:
        if req.response_body:
            lines.extend(["Response Body:", req.response_body])
        else:
            lines.append("Response Body: (not captured)")

    return "\n".join(lines).rstrip("\n")


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Subparser registration
# ---------------------------------------------------------------------------


def _register_subcommands(subparsers: argparse._SubParsersAction) -> None:
    p = subparsers.add_parser(
        "network", help="List network requests or show details of a specific request"
    )
    p.add_argument("id", nargs="?", type=int, default=None, help="Request id to show")
    p.add_argument("--tab", default=None, help="Tab id (or unique prefix)")
    p.add_argument("-f", "--filter", default=None, help="Filter by URL substring")
    p.add_argument(
        "-t",
        "--type",
        default=None,
        help="Filter by type (comma-separated: xhr,fetch,document,script,stylesheet,image,font,websocket,other)",
    )
    p.add_argument("--failed", action="store_true", help="Show only failed requests")
    p.add_argument("--headers", action="store_true", help="Show headers")
    p.add_argument("--body", action="store_true", help="Show response body")
    p.add_argument("--request-body", action="store_true", help="Show request body")
    p.add_argument("--clear", action="store_true", help="Clear captured requests")

    subparsers.add_parser("tabs", help="List open tabs")
    subparsers.add_parser("start", help="Start the network daemon")
    subparsers.add_parser("stop", help="Stop the network daemon")
    subparsers.add_parser("status", help="Show daemon status")

    p = subparsers.add_parser("logs", help="Show the daemon log")
    p.add_argument("-n", "--lines", type=int, default=50, help="Number of lines (0 for all)")


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_network(args: argparse.Namespace, config: NetcapConfig) -> None:
    tab_id = resolve_tab_id(config.browser, args.tab) if args.tab else None

    if args.clear:
        if clear_requests(config, tab_id):
            print("Network requests cleared")
        else:
            print("Network daemon was not running")
        return

    if args.id is not None:
        if tab_id is not None:
            req = get_request(config, tab_id, args.id)
        else:
            req = find_request(config, args.id)
        if req is None:
            _fail(f"Request #{args.id} not found")
        print(format_request_detail(req, args.headers, args.body, args.request_body))
        return

    types = args.type.split(",") if args.type else None
    requests = list_requests(config, tab_id, args.filter, types, args.failed)
    if not requests:
        print("No requests captured")
        return
    for req in requests:
        print(format_request_line(req))


def _cmd_tabs(config: NetcapConfig) -> None:
    tabs = list_page_targets(config.browser)
    if not tabs:
        print("No tabs open")
        return
    for tab in tabs:
        url = tab.get("url", "")
        print(f"{tab.get('id', '')[:8]}  {url[:60]}  {tab.get('title', '')}")


def _cmd_status(config: NetcapConfig) -> None:
    state = read_state()
    if state is None:
        print("Network daemon: not running")
        return
    alive = is_pid_alive(state.pid)
    print(f"Network daemon: {'running' if alive else 'stale'}")
    print(f"  - pid: {state.pid}")
    print(f"  - socket: {state.socket_path}")
    print(f"  - browser: {config.browser.http_url}")
    print(f"  - log: {get_log_path()}")


def _cmd_logs(args: argparse.Namespace) -> None:
    log_path = get_log_path()
    if not log_path.exists():
        print("No daemon log found.", file=sys.stderr)
        print(f"Expected: {log_path}", file=sys.stderr)
        sys.exit(1)
    lines = log_path.read_text(encoding="utf-8").splitlines()
    if args.lines > 0:
        lines = lines[-args.lines :]
    for line in lines:
        print(line)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate handler."""

    parser = argparse.ArgumentParser(
        prog="netcap",
        description="Capture browser network traffic through a background CDP daemon",
    )
    parser.add_argument("--config", default=None, help="Path to config file")
    parser.add_argument("-v", "--version", action="store_true", help="Print version")

    subparsers = parser.add_subparsers(dest="command")
    _register_subcommands(subparsers)

    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if args.version:
        print(get_version())
        return
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(args.config)
        if args.command == "network":
            _cmd_network(args, config)
        elif args.command == "tabs":
            _cmd_tabs(config)
        elif args.command == "start":
            state = ensure_daemon(config)
            print(f"Network daemon running (pid {state.pid})")
        elif args.command == "stop":
            if stop_daemon():
                print("Network daemon stopped")
            else:
                print("Network daemon was not running")
        elif args.command == "status":
            _cmd_status(config)
        elif args.command == "logs":
            _cmd_logs(args)
    except NetcapError as e:
        _fail(str(e))
