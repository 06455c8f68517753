"""Logging setup, memory diagnostics and progress reporting."""
from shared.diagnostics import get_memory_info, log_memory_usage, setup_logging
from shared.progress import ConsoleProgress

__all__ = [
    'ConsoleProgress',
    'get_memory_info',
    'log_memory_usage',
    'setup_logging',
]
