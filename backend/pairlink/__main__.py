"""Run the pairlink server: ``python -m pairlink``."""
import logging

import uvicorn

from pairlink.config import get_config

logger = logging.getLogger(__name__)


def main() -> None:
    config = get_config()
    logger.info(f"Starting pairlink server on {config.server.host}:{config.server.port}")
    uvicorn.run(
        "pairlink.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.server.log_level,
    )


if __name__ == "__main__":
    main()
