"""
log.py
~~~~~~

Logging setup for the binding.

configure_logging() sets up console logging from the environment.
init_log() routes the 'caffeshim' logger to a file, replacing any file
destination installed earlier.
"""

import os
import logging
from datetime import datetime
from typing import Optional

from caffeshim.config import Settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# File destination installed by init_log (None until the first call)
_file_handler: Optional[logging.FileHandler] = None


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Set up logging based on environment.

    - In production: Silence noisy third-party logs, keep binding logs
    - In development: Show everything at the configured level
    """
    settings = settings or Settings.from_env()
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    if settings.is_production:
        for logger_name in ['werkzeug', 'flask_cors']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('caffeshim').setLevel(logging.INFO)


def init_log(log_base_filename: str) -> str:
    """
    Send binding logs to a file.

    Args:
        log_base_filename: Path of the log file. Parent directories are
            created when missing.

    Returns:
        The absolute path of the log file
    """
    global _file_handler

    package_logger = logging.getLogger('caffeshim')
    if _file_handler is not None:
        package_logger.removeHandler(_file_handler)
        _file_handler.close()

    log_dir = os.path.dirname(log_base_filename)
    if log_dir and not os.path.exists(log_dir):
        os.makedirs(log_dir)

    _file_handler = logging.FileHandler(log_base_filename)
    _file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(_file_handler)
    if package_logger.level == logging.NOTSET:
        package_logger.setLevel(logging.INFO)

    path = os.path.abspath(log_base_filename)
    package_logger.info(f"Logging to {path}")
    return path


def is_log_inited() -> bool:
    return _file_handler is not None


def init_default_log(log_dir: str) -> str:
    """Open INFO<timestamp>.txt under log_dir unless a log file is already set."""
    if _file_handler is not None:
        return _file_handler.baseFilename
    # Colons are not valid in file names on every platform
    now = datetime.now().replace(microsecond=0).isoformat().replace(':', '-')
    return init_log(os.path.join(log_dir, f'INFO{now}.txt'))
