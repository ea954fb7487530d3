"""Serve the billing API with uvicorn."""

from __future__ import annotations

import argparse

import uvicorn

from escrowchat.backend.api import create_app
from escrowchat.backend.config import load_settings
from escrowchat.backend.logging_config import configure_logging


def parse_args(default_host: str, default_port: int) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Escrow chat billing server")
    parser.add_argument("--host", default=default_host)
    parser.add_argument("--port", type=int, default=default_port)
    parser.add_argument("--no-scheduler", action="store_true", help="do not run the expiration sweep")
    return parser.parse_args()


def main() -> None:
    settings = load_settings()
    args = parse_args(settings.host, settings.port)
    configure_logging(settings.log_level, settings.log_json)
    app = create_app(settings=settings, start_scheduler=not args.no_scheduler)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
