"""Run the HTTP service: ``python -m partition_lookup`` or ``partition-lookup``."""

import logging
import sys

import uvicorn

from partition_lookup.api import create_app
from partition_lookup.config import load_config_from_env
from partition_lookup.errors import ConfigurationError
from partition_lookup.logging_utils import setup_production_logging

logger = logging.getLogger("partition_lookup")


def main() -> int:
    try:
        config = load_config_from_env()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Refusing to start: {e}")
        return 2

    setup_production_logging(level=config.log_level, format=config.log_format)
    app = create_app(config)

    # log_config=None keeps uvicorn on the handlers installed above
    uvicorn.run(
        app,
        host=config.http_host,
        port=config.http_port,
        log_level=config.log_level.lower(),
        log_config=None,
        workers=1,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
