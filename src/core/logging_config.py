"""
Logging configuration for scheduled scans and the operator server.

Console output goes to stderr so CLI commands can print JSON reports on
stdout; every configured logger also writes a rotating file under
config.logs_dir.
"""

import logging
import logging.handlers
from typing import Optional

from .config import Config, config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at INFO.
_QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool")


def setup_logging(
    logger_name: str = "anomaly_engine",
    settings: Optional[Config] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure and return a logger instance.

    Handlers are attached once per name. Engine modules log through
    ``logging.getLogger(__name__)``, so configuring the package name (``"src"``)
    captures every engine logger.

    Args:
        logger_name: Name of the logger (typically the entry point or package name)
        settings: Configuration to read level and logs_dir from (defaults to the global config)
        log_file: File name under logs_dir (defaults to "<logger_name>.log")

    Returns:
        Configured logger instance
    """
    settings = settings or config
    logger = logging.getLogger(logger_name)
    if logger.handlers:
        return logger

    level = settings.log_level.upper()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        settings.logs_dir / (log_file or f"{logger_name}.log"),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
