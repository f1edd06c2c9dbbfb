import logging
import sys
from typing import List, Optional

ROOT_LOGGER_NAME = "orderly"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name when writing to a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname)
        if not color:
            return super().format(record)

        original = record.levelname
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger in the orderly namespace.

    Args:
        name: Optional suffix, e.g. "data.repository" -> "orderly.data.repository"
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name.startswith(ROOT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(
    level: str = "INFO",
    fmt: str = DEFAULT_FORMAT,
    colored: bool = True,
    custom_formatter: Optional[logging.Formatter] = None,
    handlers: Optional[List[logging.Handler]] = None,
) -> logging.Logger:
    """
    Configure the root logger.

    Custom handlers replace the default stderr handler. A custom formatter is
    applied to every handler that does not already carry one.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if custom_formatter is not None:
        formatter = custom_formatter
    elif colored and sys.stderr.isatty():
        formatter = ColoredFormatter(fmt)
    else:
        formatter = logging.Formatter(fmt)

    if not handlers:
        handlers = [logging.StreamHandler()]

    for handler in handlers:
        if handler.formatter is None:
            handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return get_logger()


def configure_logging_from_config(config) -> logging.Logger:
    """Configure logging from the ``logging.*`` configuration keys."""
    return configure_logging(
        level=config.get("logging.level", "INFO"),
        fmt=config.get("logging.format", DEFAULT_FORMAT),
        colored=config.get_bool("logging.colored", True),
    )
