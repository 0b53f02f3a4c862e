"""Logging configuration for the reminders service."""
import logging
import sys

logger = logging.getLogger("event_reminders")


def configure_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("[%(asctime)s][%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(console_handler)

    # Package loggers propagate to root; only the level is pinned here.
    logger.setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
