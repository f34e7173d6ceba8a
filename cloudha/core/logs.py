"""Logging setup shared by the CLI and embedding processes"""

import logging
from pathlib import Path
from typing import Optional

SILLY = 5
logging.addLevelName(SILLY, "SILLY")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "info", log_file: Optional[str] = None):
    """Configure root logging with a console handler and optional file handler"""
    numeric_level = SILLY if level.lower() == "silly" else getattr(logging, level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            logging.getLogger(__name__).warning(f"Cannot write log file {log_file}: {e}")

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, handlers=handlers, force=True)
