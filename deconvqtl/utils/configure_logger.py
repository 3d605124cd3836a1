import logging
from enum import IntEnum
from typing import Literal

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogLevel(IntEnum):
    """Logging levels accepted on the command line."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def from_string(cls, level_str: str) -> int:
        """
        Convert a level name to its numeric logging level.

        :param level_str: One of DEBUG, INFO, WARNING, ERROR, CRITICAL (any case).
        :return: The numeric logging level.
        :raises ValueError: If the name is not a known level.

        """
        try:
            return cls[level_str.upper()].value
        except KeyError:
            raise ValueError(
                f"Invalid log level: {level_str}. "
                f"Choose from {', '.join(level.name for level in cls)}."
            )


def configure_logger(
    name: str,
    level: int = logging.INFO,
    handler_type: Literal["console", "file"] = "console",
    log_file: str = "deconvqtl.log",
) -> logging.Logger:
    """
    Configure a named logger with a single console or file handler.

    Calling this more than once replaces the handler rather than adding another.

    :param name: Name of the logger, eg "main".
    :param level: Numeric logging level.
    :param handler_type: Either "console" or "file".
    :param log_file: Path of the log file when `handler_type` is "file".
    :return: The configured logger.
    :raises ValueError: If `handler_type` is not recognised.

    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler: logging.Handler
    if handler_type == "console":
        handler = logging.StreamHandler()
    elif handler_type == "file":
        handler = logging.FileHandler(log_file)
    else:
        raise ValueError(f"Invalid handler_type: {handler_type}")

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    return logger
