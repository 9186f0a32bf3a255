"""Main entrypoint for macstats."""
import logging
import sys

import uvicorn

from .config import load_config
from .server import create_app

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def main():
    """Main entrypoint."""
    config = load_config()
    configure_logging(config.log_level)

    logger.info("macstats v1.0.0")
    logger.info(f"Sampling every {config.sampling.fast_interval_seconds}s, power every {config.sampling.slow_interval_seconds}s")

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
