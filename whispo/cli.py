"""
Whispo CLI: run and inspect the context protocol layer.

Usage:
    python -m whispo.cli serve [--config PATH]
    python -m whispo.cli tools
    python -m whispo.cli call PROVIDER TOOL --arguments '{"limit": 3}'
    python -m whispo.cli context [--transcript TEXT]
    python -m whispo.cli health [--server-url URL]

Commands:
    serve     Connect the configured providers and serve local tools over HTTP
              until interrupted.
    tools     Connect providers, print every discovered tool as JSON and report
              providers that failed.
    call      Call one tool. PROVIDER "local" runs a built-in tool.
    context   Print a context snapshot as JSON.
    health    Query a running server's /health endpoint.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from whispo.core.config import LOCAL_NAMESPACE, WhispoConfig
from whispo.mcp.errors import ContextProtocolError
from whispo.platform import get_default_config_path
from whispo.runtime import WhispoRuntime

logger = logging.getLogger("Whispo.cli")

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FORMAT,
        stream=sys.stderr,
    )


def _load_config(args: argparse.Namespace) -> WhispoConfig:
    path = args.config or Path(os.environ.get("WHISPO_CONFIG", get_default_config_path()))
    config = WhispoConfig.from_yaml(str(path))
    if args.log_level:
        config = config.model_copy(update={"log_level": args.log_level})
    return config


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _error_payload(exc: ContextProtocolError) -> Dict[str, Any]:
    return {"error": exc.to_error_object(), "type": type(exc).__name__}


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

async def _serve(runtime: WhispoRuntime) -> int:
    try:
        failures = await runtime.start(serve=True)
        for name, exc in failures.items():
            logger.warning("Provider %s unavailable: %s", name, exc)
        await runtime.serve_forever()
    finally:
        await runtime.stop()
    return 0


async def _tools(runtime: WhispoRuntime) -> int:
    try:
        await runtime.start(serve=False)
        listing = await runtime.invoker.list_tools()
    finally:
        await runtime.stop()
    payload = listing.to_dict()
    payload["local"] = [entry.descriptor.to_mcp() for entry in runtime.state.registry.entries(LOCAL_NAMESPACE)]
    _print_json(payload)
    return 1 if listing.failures else 0


async def _call(runtime: WhispoRuntime, provider: str, tool: str, arguments: Dict[str, Any]) -> int:
    try:
        if provider == LOCAL_NAMESPACE:
            result = await runtime.dispatcher.call(tool, arguments)
        else:
            await runtime.start(serve=False)
            if runtime.state.registry.get(provider, tool) is None and provider in runtime.invoker.ready_providers():
                await runtime.invoker.refresh_provider(provider)
            result = await runtime.invoker.call_tool(provider, tool, arguments)
    except ContextProtocolError as exc:
        _print_json(_error_payload(exc))
        return 1
    finally:
        await runtime.stop()
    _print_json(result)
    return 0


async def _context(runtime: WhispoRuntime, transcript: Optional[str]) -> int:
    try:
        await runtime.start(serve=False)
        snapshot = await runtime.aggregator.build_snapshot()
        payload: Dict[str, Any] = {"snapshot": snapshot.to_dict()}
        if transcript is not None:
            payload["transcript"] = transcript
            payload["enhanced"] = await runtime.aggregator.enhance(transcript, snapshot)
    finally:
        await runtime.stop()
    _print_json(payload)
    return 0


def _check_server_health(url: str, token: Optional[str], timeout_seconds: float) -> tuple[bool, Any]:
    headers = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    try:
        response = requests.get(f"{url.rstrip('/')}/health", headers=headers, timeout=timeout_seconds)
        if response.status_code == 200:
            return True, response.json()
        return False, f"http_{response.status_code}"
    except requests.RequestException as exc:
        return False, str(exc)


def cmd_health(args: argparse.Namespace, config: WhispoConfig) -> int:
    server = config.mcp.server
    url = args.server_url or f"http://{server.host}:{server.port}"
    ok, detail = _check_server_health(url, server.auth_token, args.timeout_seconds)
    if ok:
        _print_json(detail)
        return 0
    print(f"Whispo server at {url} is not healthy: {detail}", file=sys.stderr)
    return 2


# ─────────────────────────────────────────────────────────────────────────────
# Argument parser
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="whispo",
        description="Whispo context protocol layer.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  whispo serve\n"
               "  whispo tools --config ./whispo.yaml\n"
               "  whispo call local get_transcription_history --arguments '{\"limit\": 3}'\n"
               "  whispo context --transcript 'open pie torch docs'\n",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="YAML config file (default: WHISPO_CONFIG or the platform config dir).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Override the configured log level.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Serve local tools over HTTP until interrupted.")
    subparsers.add_parser("tools", help="List tools from every connected provider.")

    call = subparsers.add_parser("call", help="Call one tool and print its result.")
    call.add_argument("provider", help=f"Provider name, or '{LOCAL_NAMESPACE}' for built-in tools.")
    call.add_argument("tool", help="Tool name.")
    call.add_argument(
        "--arguments",
        default="{}",
        metavar="JSON",
        help="Tool arguments as a JSON object.",
    )

    context = subparsers.add_parser("context", help="Print a context snapshot.")
    context.add_argument(
        "--transcript",
        default=None,
        help="Also run the enhancer on this transcript.",
    )

    health = subparsers.add_parser("health", help="Check a running server.")
    health.add_argument(
        "--server-url",
        default=None,
        metavar="URL",
        help="Server base URL (default: configured host and port).",
    )
    health.add_argument(
        "--timeout-seconds",
        type=float,
        default=3.0,
        help="HTTP timeout for the health check.",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _load_config(args)
    _configure_logging(config.log_level)
    logger.debug("Loaded config: %s", config.summary())

    if args.command == "health":
        return cmd_health(args, config)

    if args.command == "call":
        try:
            arguments = json.loads(args.arguments)
        except ValueError as exc:
            parser.error(f"--arguments is not valid JSON: {exc}")
        if not isinstance(arguments, dict):
            parser.error("--arguments must be a JSON object")

    runtime = WhispoRuntime(config)
    try:
        if args.command == "serve":
            return asyncio.run(_serve(runtime))
        if args.command == "tools":
            return asyncio.run(_tools(runtime))
        if args.command == "call":
            return asyncio.run(_call(runtime, args.provider, args.tool, arguments))
        if args.command == "context":
            return asyncio.run(_context(runtime, args.transcript))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
