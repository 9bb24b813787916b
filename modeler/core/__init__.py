"""
Core Application Components

Configuration shared by the engine, the service clients and the API.
"""

from modeler.core.config import Settings, get_settings, settings

__all__ = [
    "Settings",
    "get_settings",
    "settings",
]
