"""
This module initializes the local database management system.
Only the log database is used by TunnelGuard.
"""

from .log import LogDBManager

__all__ = ["LogDBManager"]
