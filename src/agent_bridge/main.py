"""Daemon entry point: config, logging and the uvicorn server."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .registry import SessionRegistry
from .server import create_app

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def resolve_port(config: dict) -> int:
    """AGENT_BRIDGE_PORT wins over server.port."""
    env_port = os.environ.get("AGENT_BRIDGE_PORT")
    if env_port:
        try:
            return int(env_port)
        except ValueError:
            logger.warning(f"Ignoring invalid AGENT_BRIDGE_PORT={env_port!r}")
    return int(config.get("server", {}).get("port", DEFAULT_PORT))


class AgentBridgeApp:
    """Main application orchestrator."""

    def __init__(self, config: dict, registry: Optional[SessionRegistry] = None):
        self.config = config
        self.host = config.get("server", {}).get("host", DEFAULT_HOST)
        self.port = resolve_port(config)

        self.registry = registry or SessionRegistry(config=config)
        self.app = create_app(registry=self.registry, config=config)

    async def start(self):
        """Serve until uvicorn is told to exit."""
        logger.info("Starting Agent Bridge...")
        if not self.registry.tmux.available:
            logger.warning("tmux not found; multiplexer-managed sessions are unavailable")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        await server.serve()

    def stop(self):
        """Terminate every session."""
        logger.info("Stopping Agent Bridge...")
        self.registry.shutdown()
        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    config = load_config(os.environ.get("AGENT_BRIDGE_CONFIG", DEFAULT_CONFIG_PATH))

    level_name = str(config.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = AgentBridgeApp(config)
    try:
        await app.start()
    finally:
        # uvicorn handles SIGINT/SIGTERM by returning from serve()
        await asyncio.to_thread(app.stop)


def run():
    """Entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
