"""
================================================================================
NetHawk - Utility Module
================================================================================

Common helpers for logging, paths and global constants.

This module provides:
- Configurable logger with console and optional file output
- Project root detection and timestamp helpers
- Global constants for reproducibility
- CPU limiting for offline training

================================================================================
"""

import logging
import os
import sys
import warnings
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil


# ==============================================================================
# GLOBAL CONSTANTS
# ==============================================================================

# Seed used by every split, generator and model fit
RANDOM_STATE = 42

# Validation split for offline training
VAL_SIZE = 0.2

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


# ==============================================================================
# LOGGING
# ==============================================================================

# Console level and shared file handler applied to every logger from
# get_logger, including loggers created after configure_logging.
_console_level = logging.INFO
_shared_file_handler: Optional[logging.Handler] = None
_loggers = {}


def get_logger(name: str,
               log_file: Optional[str] = None,
               level: Optional[int] = None) -> logging.Logger:
    """
    Configure and return a logger.

    Console output is always attached, a file handler when ``log_file`` is
    given or when configure_logging set a session log file. Calling it twice
    for the same name does not duplicate handlers.

    Args:
        name: Logger name (usually ``__name__`` of the calling module)
        log_file: Optional path of a log file
        level: Console log level (default: the configured level, INFO)

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level if level is not None else _console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)  # file keeps everything
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    elif _shared_file_handler is not None:
        logger.addHandler(_shared_file_handler)

    # Handlers live on the named logger, the root setup in main must not
    # print every record a second time.
    logger.propagate = False

    _loggers[name] = console_handler
    return logger


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Set the console level and session log file of every nethawk logger."""
    global _console_level, _shared_file_handler

    _console_level = level
    if log_file and _shared_file_handler is None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _shared_file_handler = logging.FileHandler(log_path)
        _shared_file_handler.setLevel(logging.DEBUG)
        _shared_file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))

    for name, console_handler in _loggers.items():
        console_handler.setLevel(level)
        logger = logging.getLogger(name)
        if _shared_file_handler is not None and _shared_file_handler not in logger.handlers:
            logger.addHandler(_shared_file_handler)


# ==============================================================================
# RESOURCES
# ==============================================================================

def get_n_jobs(n_jobs: Optional[int] = None) -> int:
    """
    Number of cores to give to scikit-learn during training.

    Leaves two cores free for the capture path when ``n_jobs`` is None.
    """
    total_cores = os.cpu_count() or 4
    if n_jobs is None:
        return max(1, total_cores - 2)
    return max(1, min(n_jobs, total_cores))


def log_resource_status(logger: logging.Logger) -> None:
    """Log current CPU and RAM usage."""
    cpu = psutil.cpu_percent(interval=0.1)
    memory = psutil.virtual_memory()
    logger.info(f"CPU: {cpu:.1f}% | RAM: {memory.percent:.1f}% | "
                f"Available: {memory.available / (1024 ** 3):.1f}GB")


# ==============================================================================
# PATHS AND FORMATTING
# ==============================================================================

def get_project_root() -> Path:
    """
    Return the project root directory.

    Walks up from this file looking for a marker, falling back to the
    parent of ``src/``.
    """
    current = Path(__file__).resolve().parent
    markers = ['config.yaml', 'pyproject.toml', '.git']

    for _ in range(10):
        for marker in markers:
            if (current / marker).exists():
                return current
        if current.parent == current:
            break
        current = current.parent

    return Path(__file__).resolve().parent.parent.parent


def get_timestamp() -> str:
    """Timestamp for file names, format YYYYMMDD_HHMMSS."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def suppress_warnings() -> None:
    """Silence non critical library warnings for cleaner output."""
    warnings.filterwarnings('ignore', category=FutureWarning)
    # sklearn complains when predicting on arrays after fitting on frames
    warnings.filterwarnings('ignore', message='X does not have valid feature names')
