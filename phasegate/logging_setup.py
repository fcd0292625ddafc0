"""
Logging setup for hosts embedding the engine.

Library modules only call logging.getLogger(__name__); handlers are
installed here, once, by the host (the CLI or an application).
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from .config import LoggingConfig

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data)


def setup_logging(config: LoggingConfig) -> logging.Logger:
    """
    Configure the 'phasegate' logger hierarchy

    Args:
        config: Logging section of the engine configuration

    Returns:
        The configured package logger
    """
    root = logging.getLogger("phasegate")
    root.setLevel(config.level.upper())

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if config.format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    if config.console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())

    root.propagate = False
    return root
