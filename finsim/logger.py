# finsim/logger.py
import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure the root logger once; later calls only adjust the level."""
    root_logger = logging.getLogger()
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not any(getattr(h, "_finsim", False) for h in root_logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        console_handler._finsim = True
        root_logger.addHandler(console_handler)

    _configure_third_party_loggers()
    return root_logger


def _configure_third_party_loggers():
    # aiohttp: request/response chatter
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    # SQLAlchemy: statement echo is controlled by the engine, keep the logger quiet
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
