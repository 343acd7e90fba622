"""
Core module initialization.
Exports configuration, logging and error utilities.
"""

from courier_dispatch.core.config import get_settings, Settings, EnvironmentMode
from courier_dispatch.core.errors import DispatchError

__all__ = ["get_settings", "Settings", "EnvironmentMode", "DispatchError"]
