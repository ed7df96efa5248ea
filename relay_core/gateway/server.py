"""
Gateway process entry point.

Startup sequence:
    1. load the persisted configuration
    2. bind the listening socket, preferring the persisted port and
       renegotiating within the configured range if the bind loses a race
    3. compare the bound port with the persisted one (drift is logged with
       a remediation hint, never written back)
    4. serve the app with uvicorn on the pre-bound socket

USAGE:
    python -m relay_core.gateway --port 11435 --model llama3.2:1b
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

import uvicorn

from relay_core.config import RelayConfig, check_drift, get_config
from relay_core.errors import ConfigDrift, RelayError
from relay_core.gateway.app import create_app
from relay_core.gateway.backend import BackendClient
from relay_core.network import bind_with_retry

logger = logging.getLogger(__name__)


def serve(
    config: RelayConfig,
    port: Optional[int] = None,
    model: Optional[str] = None,
    host: Optional[str] = None,
) -> None:
    """Bind and run the gateway until interrupted."""
    model_identifier = model or config.model_identifier
    bind_host = host or config.gateway_host
    low, high = config.port_range

    sock = bind_with_retry(
        low,
        high,
        preferred=port if port is not None else config.gateway_port,
        host=bind_host,
        retries=config.bind_retries,
    )
    bound_port = sock.getsockname()[1]

    try:
        check_drift(config, bound_port)
    except ConfigDrift as e:
        logger.error(f"{e}")
        logger.error(f"  Hint: {e.hint}")

    app = create_app(
        model_identifier,
        BackendClient(config.backend_url),
        generate_timeout=config.generate_timeout,
        health_timeout=config.health_timeout,
    )

    logger.info(f"Gateway running on port {bound_port} with model {model_identifier}")
    server = uvicorn.Server(
        uvicorn.Config(app, log_level=os.getenv("RELAY_LOG_LEVEL", "info").lower(), access_log=False)
    )
    try:
        server.run(sockets=[sock])
    finally:
        sock.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="relay-gateway",
        description="Relay gateway - simplified inference API in front of the local engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Port to bind (default: persisted GATEWAY_PORT, else first free in range)",
    )
    parser.add_argument(
        "--model", "-m",
        default=None,
        help="Model identifier to serve (default: persisted MODEL_IDENTIFIER)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Address to bind (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=os.getenv("RELAY_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        serve(get_config(), port=args.port, model=args.model, host=args.host)
    except KeyboardInterrupt:
        logger.info("Shutdown by keyboard interrupt")
    except RelayError as e:
        logger.error(f"{e}")
        if e.hint:
            logger.error(f"  Hint: {e.hint}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
