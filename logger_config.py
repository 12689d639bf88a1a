"""
Logging for the installer.

Everything goes to a daily file at DEBUG, including every adb command line.
The console shows run progress at INFO, DEBUG with ``verbose`` and only
warnings and errors with ``quiet``.
"""
import logging
import sys
from pathlib import Path
from datetime import datetime

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
QUIET_LOGGERS = ("urllib3", "requests")


def log_file_path(log_dir, app_name, day=None):
    day = day or datetime.now()
    return Path(log_dir) / f"{app_name}_{day.strftime('%Y%m%d')}.log"


def console_level(verbose=False, quiet=False):
    if quiet:
        return logging.WARNING
    return logging.DEBUG if verbose else logging.INFO


def setup_logging(log_dir=None, app_name="ApkInstaller", verbose=False, quiet=False):
    """
    Route all records to a daily log file and the console.

    Args:
        log_dir: Directory for log files (defaults to the working directory)
        app_name: Log file prefix
        verbose: Show DEBUG records on the console
        quiet: Show only warnings and errors on the console

    Returns:
        Root logger instance
    """
    log_dir = Path(log_dir) if log_dir else Path.cwd()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_file_path(log_dir, app_name)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    # drop handlers left by an earlier call
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level(verbose, quiet))
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.debug(f"Logging initialized. Log file: {log_file}")
    return root_logger


def get_logger(name):
    """Named logger for a component, e.g. ``get_logger("AdbClient")``."""
    return logging.getLogger(name)
