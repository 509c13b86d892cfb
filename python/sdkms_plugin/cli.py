"""
Command-line entry point.

Usage:
    sdkms-plugin [serve] [--config PATH]
    sdkms-plugin status --socket PATH

Or run directly:
    python -m sdkms_plugin serve --config /etc/fortanix/k8s-sdkms-plugin.json

Exit status: 0 after a graceful drain (SIGINT/SIGTERM) or a healthy status
probe, 1 on fatal configuration or bind errors.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from . import __version__
from .config import DEFAULT_CONFIG_PATH, load_config
from .errors import BindError, ConfigError
from .identity import compute_fingerprint
from .rpc import RPCClient, RPCError
from .sdkms import SdkmsProvider
from .service import HEALTHZ_OK, RUNTIME_NAME, SERVICE_NAME, V1BETA1, V2BETA1, build_server
from .validator import validate_config

logger = logging.getLogger("sdkms_plugin")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


async def serve(config_path: str) -> int:
    """Load, validate, bind and serve until a termination signal."""
    logger.info("Reading config...")
    try:
        config = load_config(config_path)
        config.check_fields()
    except ConfigError as e:
        logger.error("Invalid config: %s", e)
        return 1

    provider = SdkmsProvider.from_config(config)
    try:
        try:
            await validate_config(config, provider)
        except ConfigError as e:
            logger.error("Invalid config: %s", e)
            return 1

        logger.info("Starting RPC service...")
        server = build_server(config, provider, compute_fingerprint(config))

        # Handlers go in before the bind so an early signal still drains
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        received: List[str] = []

        def _on_signal(sig: signal.Signals) -> None:
            received.append(sig.name)
            stop.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal, sig)

        try:
            try:
                await server.start()
            except BindError as e:
                logger.error("Failed to start RPC server: %s", e)
                return 1

            logger.info(
                "version: %s, %s, runtime: %s (%s)", V1BETA1, V2BETA1, RUNTIME_NAME, __version__
            )
            logger.info("Service started successfully.")
            await stop.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        logger.info("Signal: '%s', shutting down RPC service...", received[0])
        await server.drain()
        return 0
    finally:
        await provider.close()


async def status(socket_path: str, timeout: float) -> int:
    """Query v2beta1 Status and print it as JSON."""
    try:
        async with RPCClient(socket_path) as client:
            result = await client.call(
                f"{V2BETA1}.{SERVICE_NAME}/Status", timeout=timeout
            )
    except (OSError, RPCError) as e:
        logger.error("Status request failed: %s", e)
        return 1
    print(json.dumps(result, indent=2))
    return 0 if result.get("healthz") == HEALTHZ_OK else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sdkms-plugin",
        description="Key management plugin backed by Fortanix SDKMS",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="serve the plugin (default)")
    serve_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="config file location")

    status_parser = sub.add_parser("status", help="query a running plugin")
    status_parser.add_argument("--socket", required=True, help="plugin socket path")
    status_parser.add_argument("--timeout", type=float, default=5.0, help="deadline in seconds")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT, stream=sys.stderr)

    if args.command == "status":
        return asyncio.run(status(args.socket, args.timeout))
    config_path = getattr(args, "config", DEFAULT_CONFIG_PATH)
    return asyncio.run(serve(config_path))


if __name__ == "__main__":
    sys.exit(main())
