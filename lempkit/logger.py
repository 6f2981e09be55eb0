import logging
import os
from pathlib import Path
from typing import Union

from rich.logging import RichHandler

from lempkit.ui import UI_LOGGER_NAME, console

LOGGER_NAME: str = "lempkit"
DEFAULT_LOG_FILE: str = "/var/log/server_setup.log"
LOG_FORMAT: str = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"


def _not_ui_record(record: logging.LogRecord) -> bool:
    # Console messages are already printed by the ui helpers.
    return not record.name.startswith(UI_LOGGER_NAME)


def setup_logger(
    log_file: Union[str, Path] = DEFAULT_LOG_FILE, verbose: bool = False
) -> logging.Logger:
    """Set up and configure the lempkit logger."""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(file_handler)

    if verbose:
        console_handler = RichHandler(console=console, rich_tracebacks=True)
        console_handler.setLevel(logging.DEBUG)
        console_handler.addFilter(_not_ui_record)
        logger.addHandler(console_handler)

    try:
        # Secure the log file
        os.chmod(str(log_file), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")

    return logger
