"""
Logging handlers for the application.
"""

from .sql import SQLiteHandler

__all__ = ["SQLiteHandler"]
