"""Settings: persisted configuration of the extension manager"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from extensionmanager.core.models import SavedCatalog

logger = logging.getLogger(__name__)

ENV_EXTENSION_DIR = "EXTENSIONMANAGER_DIR"
ENV_HOST_VERSION = "EXTENSIONMANAGER_HOST_VERSION"

DEFAULT_HOME = Path.home() / ".extensionmanager"

DEFAULT_CATALOGS: List[Dict] = [
    {
        "name": "QuPath catalog",
        "description": "Extensions maintained by the QuPath team",
        "uri": "https://github.com/qupath/qupath-catalog",
        "rawUri": "https://raw.githubusercontent.com/qupath/qupath-catalog/refs/heads/main/catalog.json",
        "deletable": False,
    }
]


@dataclass
class ManagerSettings:
    """Extension manager settings"""

    extension_directory: str = str(DEFAULT_HOME / "extensions")
    host_version: str = "v0.6.0"
    request_timeout: int = 10  # seconds
    download_retries: int = 3
    poll_interval: float = 1.0  # seconds
    default_catalogs: List[Dict] = field(default_factory=lambda: [dict(c) for c in DEFAULT_CATALOGS])

    def get_extension_directory(self) -> Path:
        return Path(self.extension_directory).expanduser()

    def get_default_catalogs(self) -> List[SavedCatalog]:
        """Get the default catalogs as models. Invalid entries are skipped"""
        catalogs = []
        for data in self.default_catalogs:
            try:
                catalogs.append(SavedCatalog.model_validate(data))
            except ValueError as e:
                logger.warning(f"Invalid default catalog {data}: {e}")
        return catalogs

    def apply_environment(self) -> "ManagerSettings":
        """Override values with the EXTENSIONMANAGER_* environment variables"""
        extension_directory = os.environ.get(ENV_EXTENSION_DIR)
        if extension_directory:
            self.extension_directory = extension_directory
        host_version = os.environ.get(ENV_HOST_VERSION)
        if host_version:
            self.host_version = host_version
        return self

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "ManagerSettings":
        """Create from dictionary"""
        defaults = cls()
        return cls(
            extension_directory=data.get("extension_directory", defaults.extension_directory),
            host_version=data.get("host_version", defaults.host_version),
            request_timeout=int(data.get("request_timeout", defaults.request_timeout)),
            download_retries=int(data.get("download_retries", defaults.download_retries)),
            poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
            default_catalogs=data.get("default_catalogs", defaults.default_catalogs),
        )


class SettingsManager:
    """Manage settings persistence"""

    def __init__(self, settings_path: Optional[Path] = None):
        # Default: ~/.extensionmanager/settings.json
        self.settings_path = settings_path or DEFAULT_HOME / "settings.json"

    def load(self) -> ManagerSettings:
        """Load settings from file, then apply environment overrides"""
        if not self.settings_path.exists():
            return ManagerSettings().apply_environment()

        try:
            with open(self.settings_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("settings must be a JSON object")
            settings = ManagerSettings.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load settings from {self.settings_path}, using defaults: {e}")
            settings = ManagerSettings()
        return settings.apply_environment()

    def save(self, settings: ManagerSettings) -> None:
        """
        Save settings to file

        Raises:
            OSError: If the file cannot be written
        """
        self.settings_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.settings_path, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=2)
        logger.debug(f"Settings saved to {self.settings_path}")

    def update(self, **values) -> ManagerSettings:
        """
        Change some settings and save them

        Raises:
            ValueError: If a name is not a setting
        """
        settings = self.load()
        for name, value in values.items():
            if not hasattr(settings, name):
                raise ValueError(f"Unknown setting: {name}")
            setattr(settings, name, value)
        self.save(settings)
        return settings


# Global instance
_settings_manager: Optional[SettingsManager] = None


def get_settings_manager() -> SettingsManager:
    """Get global settings manager"""
    global _settings_manager
    if _settings_manager is None:
        _settings_manager = SettingsManager()
    return _settings_manager
