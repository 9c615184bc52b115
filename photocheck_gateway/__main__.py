from __future__ import annotations

import logging
import os
import sys
import uvicorn

from .app import create_app
from .config_loader import get_storage_info, load_config_from_env


def setup_logging() -> None:
    """
    Configure logging for service deployment.

    Logs are formatted with timestamp, logger name, level, and message and
    go to stdout, where the service manager collects them.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Set uvicorn logging to INFO to capture server events
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)


def main() -> None:
    setup_logging()

    logger = logging.getLogger(__name__)
    logger.info("Starting Photocheck Gateway server")

    config = load_config_from_env()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info(
        f"Server configuration: host={host}, port={port}, "
        f"verify_workers={config.verify_concurrency}, validate_workers={config.validate_concurrency}"
    )
    logger.info(f"Storage configuration: {get_storage_info()}")

    uvicorn.run(create_app(config), host=host, port=port)


if __name__ == "__main__":
    main()
