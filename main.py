"""
Main entry point for the slot reservation service.
Serves the customer API, the Stripe webhook and runs the expiry sweeper.
"""

import sys

from aiohttp import web

from api import create_app
from config import settings
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=settings.log_level, log_file="service.log"
)


def main() -> None:
    """Validate configuration and run the web server until interrupted."""
    try:
        settings.validate_all_required()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if settings.store_backend == "memory":
        logger.warning(
            "Using the in-memory store: holds and bookings are lost on restart "
            "and not shared between instances"
        )

    app = create_app()
    logger.info(
        f"Starting slot reservation service on {settings.host}:{settings.port} "
        f"({settings.environment})"
    )
    web.run_app(app, host=settings.host, port=settings.port, print=None)
    logger.info("Service shutdown complete")


if __name__ == "__main__":
    main()
