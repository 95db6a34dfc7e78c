"""CLI: chat-relay serve, validate, show-session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from ..config import load_config, validate_config
from ..sessions.store import SessionStore, record_to_json
from ..storage import build_object_store


def cmd_serve(args):
    """Start the HTTP relay."""
    import uvicorn

    from ..proxy import create_app
    from ..types import ConfigError

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Uvicorn force-cancels open SSE responses after the graceful-shutdown
    # timeout; the resulting CancelledError tracebacks are noise.
    class _SuppressCancelled(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info:
                exc_type = record.exc_info[0]
                if exc_type is asyncio.CancelledError:
                    return False
            return True

    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    try:
        app = create_app(config_path=args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"chat-relay on {args.host}:{args.port}")
    uvicorn.run(
        app, host=args.host, port=args.port, log_level=args.log_level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_validate(args):
    """Validate config file and environment."""
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
        print(f"  Environment: {config.environment}")
        print(f"  Upstream: {config.upstream.service_url} ({config.upstream.model})")
        print(f"  Storage: {config.storage.backend}")
        print(f"  Analytics: {config.analytics.backend}")


def cmd_show_session(args):
    """Print one stored session record as JSON."""
    config = load_config(args.config)
    store = SessionStore(build_object_store(config.storage), folder=config.storage.folder)
    record = asyncio.run(store.load(args.user_id, args.session_id))
    if record is None:
        print(f"No session {args.session_id} for user {args.user_id}.", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(record_to_json(record), indent=2))


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="chat-relay",
        description="Session store and streaming relay for a browser chat front end",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP relay")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8080, help="Listen port")
    serve_parser.add_argument(
        "--log-level", default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level for the relay and uvicorn",
    )

    # validate
    subparsers.add_parser("validate", help="Validate config file")

    # show-session
    show_parser = subparsers.add_parser("show-session", help="Print a stored session record")
    show_parser.add_argument("user_id", help="User id (identity header value)")
    show_parser.add_argument("session_id", help="Session id (unsigned cookie value)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "validate":
        cmd_validate(args)
    elif args.command == "show-session":
        cmd_show_session(args)


if __name__ == "__main__":
    main()
