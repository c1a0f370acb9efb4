"""
Run the TradeDesk API server.

  python run_api.py

Schema migrations run separately (python scripts/migrate.py upgrade); the
server still creates missing tables on startup for local SQLite runs.
"""

import uvicorn

from tradedesk.api import create_api_app
from tradedesk.config import get_settings
from tradedesk.utils.logging import get_logger, setup_logging


def main():
    """Run the API server."""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger = get_logger(__name__)

    app = create_api_app(app_settings=settings)

    logger.info(
        "Starting TradeDesk API",
        host=settings.api_host,
        port=settings.api_port,
        docs=f"http://{settings.api_host}:{settings.api_port}/docs",
    )

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
