"""UI components for releasectl.

This package contains the terminal output used by the CLI: tables for host
status and attempts, and progress spinners.
"""

from .display import display_attempt, display_hosts_table, display_release_table, display_status
from .progress import ProgressManager, configure_logging

__all__ = [
    'ProgressManager',
    'configure_logging',
    'display_attempt',
    'display_hosts_table',
    'display_release_table',
    'display_status',
]
