"""
Local package for the TunnelGuard application.

This package provides application-level global configuration through the
app_globals module, plus the supervisor, console and log database packages.
"""

from .global_config import app_globals

__all__ = ["app_globals"]
