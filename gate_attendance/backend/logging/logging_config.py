import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ..config.config import settings

LOG_FORMAT = "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s"


def setup_logging(log_dir: str = None, level: str = None):
    """
    Installs the application-wide logging configuration.

    Records go both to stdout (for `docker logs`) and to a rotating file under
    the configured log directory, so gate scans can be audited after the fact.
    """
    log_path = Path(log_dir or settings.LOG_DIR)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    # Drop handlers installed by uvicorn so every record uses one format.
    if logger.hasHandlers():
        logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(stdout_handler)

    # 5 MB per file, five rotated files kept.
    file_handler = RotatingFileHandler(
        log_path / "app.log",
        maxBytes=5*1024*1024,
        backupCount=5
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
