"""CLI: chat-relay serve, secret, hint, transcripts, config validate."""

from __future__ import annotations

import argparse
import random
import sys

from ..config import load_config, validate_config
from ..identity import make_secret
from ..storage import create_store


def _get_store(config_path: str | None = None):
    config = load_config(config_path)
    return create_store(config.storage), config


def cmd_serve(args):
    """Start the relay server."""
    import asyncio
    import logging as _logging

    import uvicorn

    from ..server import create_app

    # Uvicorn force-cancels open websocket tasks after the graceful-shutdown
    # timeout, which logs a CancelledError traceback.
    class _SuppressCancelled(_logging.Filter):
        def filter(self, record: _logging.LogRecord) -> bool:
            if record.exc_info:
                exc_type = record.exc_info[0]
                if exc_type is asyncio.CancelledError:
                    return False
            return True

    _logging.basicConfig(
        level=_logging.DEBUG if args.verbose else _logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    config = load_config(args.config)
    errors = validate_config(config)
    if errors:
        for e in errors:
            print(f"  - {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(config=config, config_path=args.config)
    print(f"chat-relay on {args.host}:{args.port} -> {config.upstream.url}")
    uvicorn.run(
        app, host=args.host, port=args.port, log_level="info",
        timeout_graceful_shutdown=2,
    )


def cmd_secret(args):
    """Print a fresh admin secret."""
    print(make_secret())


def cmd_hint(args):
    """Print sample questions from the stored client config."""
    store, config = _get_store(args.config)
    try:
        client = store.get_client_config() or config.client
    finally:
        store.close()
    if client is None or not client.questions:
        print("No questions configured.")
        return
    k = min(args.count or config.server.hint_count, len(client.questions))
    for q in random.sample(client.questions, k):
        print(f"- {q}")


def cmd_transcripts(args):
    """List the most recent transcripts."""
    store, config = _get_store(args.config)
    try:
        records = store.list_transcripts(limit=args.limit)
    finally:
        store.close()

    if not records:
        print("No transcripts yet.")
        return

    print(f"{'Id':<48} {'Finish':<14} {'Chars':>6}  Question")
    print("-" * 100)
    for r in records:
        question = r.question.replace("\n", " ")
        if len(question) > 40:
            question = question[:37] + "..."
        print(f"{r.id:<48} {r.finish_reason or '-':<14} {len(r.answer):>6}  {question}")


def cmd_config_validate(args):
    """Validate the config file."""
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)
    print("Config is valid.")
    print(f"  Upstream: {config.upstream.url}")
    print(f"  Storage:  {config.storage.backend} ({config.storage.root})")
    print(f"  Origins:  {', '.join(config.server.allowed_origins)}")
    if config.client is not None:
        print(f"  Model:    {config.client.prompt.model}")


def main():
    parser = argparse.ArgumentParser(
        prog="chat-relay",
        description="Relay visitor questions to a streaming chat-completion API",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the relay server")
    serve_parser.add_argument("--port", "-p", type=int, default=8787)
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    # secret
    subparsers.add_parser("secret", help="Generate an admin secret")

    # hint
    hint_parser = subparsers.add_parser("hint", help="Print sample questions")
    hint_parser.add_argument("--count", "-n", type=int, help="Number of questions")

    # transcripts
    transcripts_parser = subparsers.add_parser("transcripts", help="List recent transcripts")
    transcripts_parser.add_argument("--limit", "-n", type=int, default=20, help="Max transcripts")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "secret":
        cmd_secret(args)
    elif args.command == "hint":
        cmd_hint(args)
    elif args.command == "transcripts":
        cmd_transcripts(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            config_parser.print_help()
            sys.exit(1)


if __name__ == "__main__":
    main()
