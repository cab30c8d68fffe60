"""
Logging setup.

Configures the loguru logger for the ledger service: keeps the default
stderr sink and adds a rotating file sink when a log file is configured.
"""

from loguru import logger

from .config import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure logger with file rotation."""
    settings = settings or get_settings()
    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="1 day",
            retention="7 days",
            level=settings.log_level,
            encoding="utf-8",
            enqueue=True,
        )

    logger.info("Starting license ledger...")
