"""Command-line interface for the Android TV bridge.

Provides the main entry point for running the HTTP bridge server.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="atvbridge",
        description="HTTP bridge for Android TV pairing and remote control",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/atvbridge.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP bridge server")
    serve_parser.add_argument(
        "--host", type=str, default=None,
        help="Interface to listen on (default from config: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default from config: 3000)",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the atvbridge CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from atvbridge.config.settings import load_settings
    from atvbridge.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        import uvicorn

        from atvbridge.api.server import create_app

        if args.host:
            settings.server.host = args.host
        if args.port:
            settings.server.port = args.port

        logger.info("Starting bridge server")
        app = create_app(settings)
        uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
