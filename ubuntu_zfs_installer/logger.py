#!/usr/bin/env python3
# Logger Module
# Leveled logging to a per-run log file plus colored console output

import logging
import os
from datetime import datetime

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "ubuntu_zfs_installer"
LOG_DIR = "/var/log/ubuntu-zfs-installer"
FALLBACK_LOG_DIR = "/tmp/ubuntu-zfs-installer"

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

console = Console()


def debug_enabled(environ=None):
    """Return True when the DEBUG environment variable asks for verbose output"""
    value = (environ if environ is not None else os.environ).get("DEBUG", "")
    return value.lower() not in ("", "0", "false", "no", "off")


def _log_file_path(log_dir):
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return os.path.join(log_dir, f"install-{stamp}.log")


def setup_logging(log_dir=LOG_DIR, debug=False):
    """Configure the installer logger and return the log file path"""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(console_handler)

    log_file = None
    directories = (log_dir, FALLBACK_LOG_DIR) if log_dir else ()
    for directory in directories:
        try:
            os.makedirs(directory, exist_ok=True)
            log_file = _log_file_path(directory)
            file_handler = logging.FileHandler(log_file)
        except OSError:
            log_file = None
            continue
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(file_handler)
        try:
            os.chmod(log_file, 0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions on log file {log_file}: {e}")
        break

    if log_file is None and log_dir:
        logger.warning("No writable log directory found, logging to console only")
    return log_file


def success(logger, message):
    """Log a message at the SUCCESS level"""
    logger.log(SUCCESS, message)
