"""
Entry point for the voice chat bridge.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from voice_bridge.config import Configuration
from voice_bridge.gateway.client import GatewayClient
from voice_bridge.logging_utils import configure_logging
from voice_bridge.server import ServerConfig, run_websocket_server


async def main() -> None:
    """Main entry point - HTTP/WebSocket bridge with graceful shutdown handling."""
    config = Configuration()
    configure_logging(config.get_logging_config().get("level", "INFO"))

    gateway_config = config.get_gateway_config()
    bridge_config = config.get_bridge_config()
    server_settings = config.get_server_config()
    token = config.gateway_token

    # Setup graceful shutdown handler
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        """Handle shutdown signals gracefully."""
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    logging.info(
        "Voice Chat Bridge listening on %s:%d",
        server_settings["host"],
        server_settings["port"],
    )
    logging.info(
        "  Gateway: %s (agent: %s)", gateway_config["url"], gateway_config["agent_id"]
    )
    logging.info("  Name: %s", bridge_config["agent_name"])
    logging.info(
        "  Timeout: %.1fs", gateway_config["http_client"]["read_timeout"]
    )
    if config.websocket_token is None:
        logging.info("  WebSocket auth: disabled")

    async with GatewayClient(gateway_config, token) as gateway:
        try:
            server_config = ServerConfig(
                gateway=gateway,
                configuration=config,
                shutdown_event=shutdown_event,
            )
            await run_websocket_server(server_config)
        except Exception as e:
            logging.error(f"Application error: {e}")
            raise
        finally:
            logging.info("Application shutdown complete")


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except ValueError as e:
        # Configuration problems are reported without a traceback
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
