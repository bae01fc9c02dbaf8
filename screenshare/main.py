"""
Relay process entrypoint.

``serve`` runs the signaling relay under uvicorn; ``status`` asks a running
relay for its health report.  :func:`run` is the console-script target.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from . import RelayConfig
from .api.server import RelayManager, create_app
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app) -> AsyncIterator[None]:
    LOG.info("Relay lifespan starting")
    try:
        yield
    finally:
        LOG.info("Relay lifespan shutting down")


async def serve(config: RelayConfig) -> None:
    """
    Run the relay inside an asyncio loop until SIGINT/SIGTERM.
    """

    import uvicorn

    manager = RelayManager.from_config(config)
    app = create_app(config=config, manager=manager, lifespan=lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down relay...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    LOG.info("Relay listening on %s:%d", config.host, config.port)
    await server.serve()


def health_url(url: str) -> str:
    """
    Map a relay address (``ws://``/``http://``, with or without path) to its
    health endpoint.
    """

    parts = urlsplit(url if "://" in url else f"http://{url}")
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/")
    if path in ("", "/ws"):
        path = ""
    return urlunsplit((scheme, parts.netloc, f"{path}/health", "", ""))


def fetch_health(
    url: str,
    *,
    timeout: float = 5.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> dict:
    with httpx.Client(timeout=timeout, transport=transport) as client:
        response = client.get(health_url(url))
        response.raise_for_status()
        return response.json()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Screen share signaling relay")
    parser.add_argument("--log-level", default="INFO", help="root log level")
    commands = parser.add_subparsers(dest="command")

    serve_parser = commands.add_parser("serve", help="run the signaling relay")
    serve_parser.add_argument("--profile", default="default", help="relay profile to load")
    serve_parser.add_argument("--host", default=None, help="bind host (overrides the profile)")
    serve_parser.add_argument("--port", type=int, default=None, help="bind port (overrides profile and env)")

    status_parser = commands.add_parser("status", help="query a running relay's health")
    status_parser.add_argument("--url", default="http://127.0.0.1:9090", help="relay address")
    status_parser.add_argument("--timeout", type=float, default=5.0, help="request timeout in seconds")

    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args([*(argv if argv is not None else sys.argv[1:]), "serve"])
    return args


def build_config(args: argparse.Namespace) -> RelayConfig:
    config = RelayConfig.from_profile(args.profile)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    return config


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "status":
        try:
            report = fetch_health(args.url, timeout=args.timeout)
        except httpx.HTTPError as exc:
            LOG.error("Relay at %s is unreachable: %s", args.url, exc)
            return 1
        print(json.dumps(report, indent=2))
        return 0

    config = build_config(args)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Relay interrupted by user.")
    return 0


if __name__ == "__main__":
    sys.exit(run())
