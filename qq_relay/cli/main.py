"""CLI: qq-relay serve, config validate, parse, estimate."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

from ..config import load_config, validate_config
from ..core.markup import parse_message
from ..token_counter import create_token_counter


def cmd_serve(args):
    """Start the relay HTTP listener."""
    import uvicorn

    from ..server import create_app

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(config_path=args.config)
    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"Config error: {err}", file=sys.stderr)
        sys.exit(1)

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config)
    print(
        f"qq-relay on {host}:{port} -> gateway {config.gateway.base_url}, "
        f"completions {config.openai.base_url}",
        flush=True,
    )
    uvicorn.run(
        app, host=host, port=port, log_level=args.log_level,
        timeout_graceful_shutdown=2,
    )


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Listen: {config.server.host}:{config.server.port} ({config.server.workers} workers)")
        print(f"  Gateway: {config.gateway.base_url}")
        print(f"  Completions: {config.openai.base_url}")
        if config.openai.proxy:
            print(f"  Proxy: {config.openai.proxy}")
        print(
            f"  Models: {config.models.default_model} / "
            f"{config.models.escalated_model} ({config.models.escalation_prefix}) / "
            f"{config.models.vision_model} (images)"
        )
        print(
            f"  History: {config.history.max_entries} entries, "
            f"{config.history.soft_token_limit:,}/{config.history.hard_token_limit:,} tokens"
        )


def cmd_parse(args):
    """Print the structured form of a CQ-annotated message."""
    parsed = parse_message(args.message)
    print(json.dumps(dataclasses.asdict(parsed), ensure_ascii=False, indent=2))


def cmd_estimate(args):
    """Print the token estimate for a piece of text."""
    counter = create_token_counter(args.mode)
    print(counter(args.text))


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="qq-relay",
        description="Relay QQ private messages to an OpenAI-compatible chat service",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the relay HTTP listener")
    serve_parser.add_argument("--host", default=None, help="Override server.host")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Override server.port")
    serve_parser.add_argument(
        "--log-level", default="info",
        choices=["debug", "info", "warning", "error"],
    )

    # parse
    parse_parser = subparsers.add_parser("parse", help="Parse a CQ-annotated message")
    parse_parser.add_argument("message", help="Raw message string")

    # estimate
    estimate_parser = subparsers.add_parser("estimate", help="Estimate tokens for text")
    estimate_parser.add_argument("text", help="Text to estimate")
    estimate_parser.add_argument("--mode", default="estimate", help="Token counter mode")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "parse":
        cmd_parse(args)
    elif args.command == "estimate":
        cmd_estimate(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: qq-relay config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
