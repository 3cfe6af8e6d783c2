"""
Logging module for the application.
This module provides the logging setup used by the console and the supervisor process.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
