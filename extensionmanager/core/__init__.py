"""Extension manager core

Lifecycle management of extensions installed from catalogs.

Core principles:
1. Catalogs are saved in a registry file at the root of the extension directory
2. Extensions are installed below <root>/<catalog>/<extension>/<release>/
3. Installing a release first deletes the files of the installed one
4. Module archives found in the extension directory are loaded automatically
5. Loaded code is never unloaded

Components:
- manager: Extension catalog manager, the public entry point
- folders: Directory layout and registry persistence
- loader: Dynamic loading of module archives
- version: Version parsing and ordering
- extractor: Zip extraction with path traversal protection
- downloader: URL downloader
- fetcher: Catalog manifest fetcher
- watcher: Directory watching
- reactive: Observable values and lists
- models: Pydantic data models
- exceptions: Custom exceptions
"""

from extensionmanager.core.exceptions import (
    ExtensionError,
    ValidationError,
    InstallationError,
    DownloadError,
    SecurityError,
    InstallCancelledError,
    RegistryError,
    RegistryNotFoundError,
    CatalogFetchError,
)
from extensionmanager.core.models import (
    SavedCatalog,
    Registry,
    VersionRange,
    Release,
    Extension,
    CatalogManifest,
    InstalledExtension,
    UpdateAvailable,
    FileType,
    InstallationStep,
)
from extensionmanager.core.version import Version
from extensionmanager.core.reactive import (
    ObservableValue,
    ObservableList,
    ReadOnlyObservableValue,
    ReadOnlyObservableList,
    ListChange,
)
from extensionmanager.core.extractor import ZipExtractor
from extensionmanager.core.downloader import URLDownloader
from extensionmanager.core.fetcher import CatalogFetcher, GitHubRawLinkFinder
from extensionmanager.core.watcher import DirectoryWatch, FilesWatcher, watch
from extensionmanager.core.folders import ExtensionFolderManager
from extensionmanager.core.loader import ExtensionModuleLoader
from extensionmanager.core.manager import ExtensionCatalogManager

__all__ = [
    # Exceptions
    "ExtensionError",
    "ValidationError",
    "InstallationError",
    "DownloadError",
    "SecurityError",
    "InstallCancelledError",
    "RegistryError",
    "RegistryNotFoundError",
    "CatalogFetchError",
    # Models
    "SavedCatalog",
    "Registry",
    "VersionRange",
    "Release",
    "Extension",
    "CatalogManifest",
    "InstalledExtension",
    "UpdateAvailable",
    "FileType",
    "InstallationStep",
    "Version",
    # Reactive containers
    "ObservableValue",
    "ObservableList",
    "ReadOnlyObservableValue",
    "ReadOnlyObservableList",
    "ListChange",
    # Components
    "ZipExtractor",
    "URLDownloader",
    "CatalogFetcher",
    "GitHubRawLinkFinder",
    "DirectoryWatch",
    "FilesWatcher",
    "watch",
    "ExtensionFolderManager",
    "ExtensionModuleLoader",
    "ExtensionCatalogManager",
]
