from __future__ import annotations
import logging
import logging.config
from pathlib import Path
from typing import Optional
import yaml

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
PACKAGE_LOGGER = "scrape_pipeline"


def setup_logging(config_path: str = "configs/logging.yaml", level: Optional[int] = None) -> None:
    """
    Setup logging from a dictConfig YAML file.

    Without the file, falls back to basicConfig. When `level` is given it
    overrides the package logger level from the file (used by --verbose).
    """
    path = Path(config_path)
    if not path.exists():
        logging.basicConfig(level=level or logging.INFO, format=LOG_FORMAT)
    else:
        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f)
        logging.config.dictConfig(cfg)

    if level is not None:
        logging.getLogger(PACKAGE_LOGGER).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
