"""Configuration of the extension manager"""

from extensionmanager.config.settings import (
    DEFAULT_CATALOGS,
    ManagerSettings,
    SettingsManager,
    get_settings_manager,
)

__all__ = [
    "DEFAULT_CATALOGS",
    "ManagerSettings",
    "SettingsManager",
    "get_settings_manager",
]
