"""
Diagnostic utilities.

This module samples process and host memory and configures logging.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import psutil

from shared.constants import PSUTIL_AVAILABLE as _PSUTIL_AVAILABLE

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILENAME = 'tilecache.log'


def setup_logging(
    log_dir: str | Path | None = None,
    level: int = logging.INFO,
) -> Path | None:
    """Configure application logging.

    Logs always go to stdout; when ``log_dir`` is given a UTF-8 log file is
    written there as well.

    Returns:
        Path of the log file, or None when only stdout is used.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file: Path | None = None
    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / LOG_FILENAME
        handlers.append(logging.FileHandler(str(log_file), encoding='utf-8'))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
    return log_file


def get_process_rss() -> int:
    """Resident set size of the current process in bytes.

    Raises:
        RuntimeError: psutil is unavailable.
        psutil.Error: the process could not be inspected.
    """
    if not _PSUTIL_AVAILABLE:
        msg = 'psutil not available'
        raise RuntimeError(msg)
    return int(psutil.Process().memory_info().rss)


def get_total_memory() -> int:
    """Total physical memory of the host in bytes."""
    return int(psutil.virtual_memory().total)


def _mb(value: int) -> float:
    return round(value / 1024 / 1024, 2)


def get_memory_info() -> dict[str, Any]:
    """Process and host memory figures in MB, or an ``error`` entry."""
    if not _PSUTIL_AVAILABLE:
        return {'error': 'psutil not available'}
    try:
        mem = psutil.Process().memory_info()
        host = psutil.virtual_memory()
    except (psutil.Error, OSError, RuntimeError) as e:
        return {'error': f'Failed to get memory info: {e}'}
    return {
        'process_rss_mb': _mb(mem.rss),
        'process_vms_mb': _mb(mem.vms),
        'system_total_mb': _mb(host.total),
        'system_available_mb': _mb(host.available),
        'system_used_percent': host.percent,
    }


def log_memory_usage(context: str = '') -> None:
    """One INFO line with RSS and available host memory."""
    info = get_memory_info()
    if 'error' in info:
        logger.debug('Memory usage unavailable: %s', info['error'])
        return
    label = f' ({context})' if context else ''
    logger.info(
        'Memory usage%s: RSS=%sMB, Available=%sMB (%s%% of host used)',
        label,
        info['process_rss_mb'],
        info['system_available_mb'],
        info['system_used_percent'],
    )
