"""Process-wide logging setup for the driver, its clients and the HTTP API."""

import logging
import os
import sys

from pydantic import BaseModel

# SDK and transport loggers that flood DEBUG output with request dumps
NOISY_LOGGERS = ("anthropic", "httpx", "botocore", "boto3", "urllib3", "uvicorn.access")


class LogConfig(BaseModel):
    """Level and line format, overridable through LOG_LEVEL."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"


def setup_logging(config: LogConfig | None = None) -> None:
    """Route all records to stdout and quiet the SDK loggers.

    Called once by the API entry point; replaces handlers installed earlier
    (for example by uvicorn).
    """
    if config is None:
        config = LogConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Return the module logger, leveled from LOG_LEVEL unless ``level`` is given."""
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return logger
