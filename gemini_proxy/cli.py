from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Callable, cast

import yaml

from gemini_proxy.config import build_proxy_config
from gemini_proxy.payloads import ChatMessage
from gemini_proxy.proxy import GeminiProxy, ProxyConfig, plan_attempts
from gemini_proxy.settings import get_settings


def _mask_secret(value: str | None) -> str | None:
    if not value:
        return None
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


def _load_proxy_config() -> ProxyConfig:
    get_settings.cache_clear()
    return build_proxy_config(get_settings())


def cmd_serve(args: argparse.Namespace) -> int:
    from gemini_proxy.main import run

    run(host=args.host, port=args.port)
    return 0


def cmd_show_config(args: argparse.Namespace) -> int:
    config = _load_proxy_config()
    payload: dict[str, Any] = {
        "override_url": config.override_url,
        "api_key": _mask_secret(config.api_key),
        "timeout_seconds": config.timeout_seconds,
        "default_targets": [
            {"url": target.url, "shape": target.shape.value}
            for target in config.default_targets
        ],
        "attempt_plan": [
            {"url": planned.target.url, "shape": planned.target.shape.value}
            for planned in plan_attempts(config)
        ],
    }
    print(yaml.safe_dump(payload, sort_keys=False).rstrip())
    return 0


async def _probe(config: ProxyConfig, messages: list[ChatMessage]) -> dict[str, Any]:
    proxy = GeminiProxy(config)
    try:
        outcome = await proxy.forward(messages)
    finally:
        await proxy.close()
    return {
        "request_id": outcome.request_id,
        "status": outcome.status_code,
        "attempts": [attempt.as_dict() for attempt in outcome.attempts],
        "content": outcome.content,
    }


def cmd_probe(args: argparse.Namespace) -> int:
    config = _load_proxy_config()
    if args.timeout_seconds is not None:
        config.timeout_seconds = args.timeout_seconds
    messages = [ChatMessage(role=args.role, content=args.message)]
    summary = asyncio.run(_probe(config, messages))
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 0 if summary["status"] < 400 else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gemini-proxy",
        description="Run and inspect the Gemini chat proxy.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP proxy.")
    serve_cmd.add_argument("--host", default="0.0.0.0")
    serve_cmd.add_argument("--port", type=int, default=8000)
    serve_cmd.set_defaults(handler=cmd_serve)

    show_cmd = subparsers.add_parser(
        "show-config",
        help="Print the effective upstream targets and attempt order.",
    )
    show_cmd.set_defaults(handler=cmd_show_config)

    probe_cmd = subparsers.add_parser(
        "probe",
        help="Send one message through the fallback chain and print the result.",
    )
    probe_cmd.add_argument("--message", required=True)
    probe_cmd.add_argument("--role", default="user")
    probe_cmd.add_argument("--timeout-seconds", type=float, default=None)
    probe_cmd.set_defaults(handler=cmd_probe)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
