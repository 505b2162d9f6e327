"""
Entry point for running the supervisor via `python -m gateway_supervisor`.

Materializes the gateway configuration, then starts the FastAPI server with
uvicorn. A configuration that cannot be written is fatal.
"""

import logging
import sys

import uvicorn

from .config import config
from .main import configure_logging, create_app
from .secret_store import SecretResolver
from .workspace import ConfigurationError, materialize

logger = logging.getLogger("gateway_supervisor")


def main():
    """Run the supervisor server."""
    configure_logging(config)
    logger.info(f"Gateway supervisor ({config.agent_id}) starting")

    try:
        materialize(config, SecretResolver.from_config(config))
    except ConfigurationError as e:
        logger.error(f"Initialization failed: {e}")
        sys.exit(1)

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
