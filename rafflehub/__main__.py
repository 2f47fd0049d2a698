"""Run the raffle HTTP server: ``python -m rafflehub``."""

import atexit
import logging
import sys

from .config import Settings
from .errors import ConfigurationError, UpstreamUnavailableError
from .logging_setup import configure_logging
from .service import RaffleService

logger = logging.getLogger("rafflehub")


def main() -> int:
    configure_logging()
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logger.critical("Refusing to start: %s", e.message)
        return 1

    configure_logging(settings.log_level)
    logger.info("Configuration: %s", settings.describe())

    try:
        service = RaffleService.from_settings(settings)
    except UpstreamUnavailableError as e:
        logger.critical("Refusing to start: %s", e.message)
        return 1
    atexit.register(service.close)

    from .web import create_app

    app = create_app(service=service)
    logger.info("Serving on 0.0.0.0:%d", settings.port)
    app.run(host="0.0.0.0", port=settings.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
