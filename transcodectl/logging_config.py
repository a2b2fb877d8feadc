import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

_LOG_FILE: Optional[Path] = None
_CONFIGURED = False

PRODUCTION_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEVELOPMENT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(filename)s:%(lineno)d: %(message)s"


def configure_logging(
    prefix: str,
    *,
    env: str = "development",
    level: str = "INFO",
    log_dir: Optional[Path] = None,
) -> Optional[Path]:
    """Configure root logging to stdout and, when a log directory is set, a file.

    Returns the log file path, or ``None`` when logging to the console only.
    """

    global _CONFIGURED, _LOG_FILE

    if _CONFIGURED:
        return _LOG_FILE

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(
        fmt=PRODUCTION_FORMAT if env == "production" else DEVELOPMENT_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    env_dir = os.getenv("TRANSCODECTL_LOG_DIR")
    if log_dir is None and env_dir:
        log_dir = Path(env_dir).expanduser()

    log_file: Optional[Path] = None
    if log_dir is not None:
        log_directory = Path(log_dir)
        log_directory.mkdir(parents=True, exist_ok=True)
        log_file = log_directory / f"{prefix}-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        root.info("Logging to %s", log_file)

    _CONFIGURED = True
    _LOG_FILE = log_file
    return log_file

