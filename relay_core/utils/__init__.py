"""
Utility modules for the relay.
"""

from relay_core.utils.logs import tail_lines, truncate_log

__all__ = [
    "tail_lines",
    "truncate_log",
]
