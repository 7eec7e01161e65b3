"""
Core module initialization.
Exports configuration, logging and access-control utilities.
"""

from app.core.config import get_settings, setup_logging, Settings, EnvironmentMode

__all__ = ["get_settings", "setup_logging", "Settings", "EnvironmentMode"]
