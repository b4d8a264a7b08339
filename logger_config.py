import logging
import os
import sys
from pathlib import Path

LOGGER_NAME = "rest_server"
ACCESS_LOGGER_NAME = "rest_server.access"


def setup_logger():
    logger = logging.getLogger(LOGGER_NAME)
    # Every module calls this at import time; configure only once
    if logger.handlers:
        return logger

    # Create logs directory if it doesn't exist
    logs_dir = Path(os.getenv("REST_SERVER_LOG_DIR", "logs"))
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)

    # Create formatters
    file_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # File handler (for detailed logging)
    file_handler = logging.FileHandler(logs_dir / "rest_server.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    # Console handler (for basic logging)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)

    # Add handlers to logger
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


def setup_access_logger(path: str):
    """Logger writing one combined-log-format line per request to path."""
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.setLevel(logging.INFO)
    access_logger.propagate = False

    target = os.path.abspath(path)
    for handler in access_logger.handlers[:]:
        if getattr(handler, "baseFilename", None) == target:
            return access_logger
        access_logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(target)
    handler.setFormatter(logging.Formatter('%(message)s'))
    access_logger.addHandler(handler)
    return access_logger
