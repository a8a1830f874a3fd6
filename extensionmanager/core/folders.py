"""Folder and registry management

Maps catalogs, extensions and releases to directories below the extension
root, persists the catalog registry, and keeps track of the module archives
present in the extension root.

Layout::

    <root>/
        registry.json
        <manually installed archives>
        <catalog>/<extension>/<release>/main-jar/
                                        javadocs-dependencies/
                                        required-dependencies/
                                        optional-dependencies/
"""

import logging
import os
import threading
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from extensionmanager.core.exceptions import InstallationError, RegistryError, RegistryNotFoundError
from extensionmanager.core.filetools import (
    delete_directory_recursively,
    is_directory_not_empty,
    is_module_archive,
    strip_invalid_filename_characters,
)
from extensionmanager.core.models import FileType, InstalledExtension, Registry
from extensionmanager.core.reactive import ObservableValue, ReadOnlyObservableList, ReadOnlyObservableValue
from extensionmanager.core.watcher import DEFAULT_POLL_INTERVAL, FilesWatcher

logger = logging.getLogger(__name__)

REGISTRY_FILE_NAME = "registry.json"

# <catalog>/<extension>/<release>/<folder>/<file> plus room for extracted folders
CATALOG_SEARCH_DEPTH = 8


class ExtensionFolderManager:
    """Directories and registry of an extension root

    The root is an observable value. Everything derived from it (watched
    archives, registry location) follows when it changes.
    """

    def __init__(
        self,
        extension_directory: Optional[Path] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL
    ):
        """
        Initialize folder manager

        Args:
            extension_directory: Extension root (created if needed). None
                disables everything that needs a root.
            poll_interval: Seconds between two listings of the watched directories
        """
        self._lock = threading.RLock()
        self._root: ObservableValue[Path] = ObservableValue(self._prepare_root(extension_directory))

        self._manually_installed = FilesWatcher(
            self._root.read_only(),
            files_to_find=is_module_archive,
            depth=1,
            poll_interval=poll_interval
        )
        self._catalog_managed = FilesWatcher(
            self._root.read_only(),
            files_to_find=self._is_catalog_managed_module,
            depth=CATALOG_SEARCH_DEPTH,
            poll_interval=poll_interval
        )

    @staticmethod
    def _prepare_root(directory: Optional[Path]) -> Optional[Path]:
        if directory is None:
            return None
        directory = Path(directory).expanduser()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create extension directory {directory}: {e}")
        return directory

    def _is_catalog_managed_module(self, path: Path) -> bool:
        return is_module_archive(path) and path.parent != self._root.get()

    @property
    def extension_directory(self) -> ReadOnlyObservableValue:
        """Observable extension root (may hold None)"""
        return self._root.read_only()

    @property
    def manually_installed_modules(self) -> ReadOnlyObservableList:
        """Module archives placed directly in the extension root"""
        return self._manually_installed.files

    @property
    def catalog_managed_modules(self) -> ReadOnlyObservableList:
        """Module archives installed below catalog directories"""
        return self._catalog_managed.files

    def set_extension_directory(self, directory: Optional[Path]) -> None:
        """Change the extension root. Subscribers of the root are notified

        Subscribers are called without the folder lock held, so they can take
        their own locks before calling back into this object.
        """
        with self._lock:
            root = self._prepare_root(directory)
        self._root.set(root)
        logger.info(f"Extension directory set to {root}")

    def get_root_path(self) -> Optional[Path]:
        return self._root.get()

    def refresh_modules(self) -> None:
        """Synchronise the module collections with the filesystem now"""
        self._manually_installed.refresh()
        self._catalog_managed.refresh()

    def _require_root(self) -> Path:
        root = self._root.get()
        if root is None:
            raise InstallationError("The extension directory is not set")
        return root

    # Registry

    def get_registry_path(self) -> Optional[Path]:
        root = self._root.get()
        return root / REGISTRY_FILE_NAME if root is not None else None

    def save_registry(self, registry: Registry) -> None:
        """
        Write the registry file, replacing any previous one

        Args:
            registry: Registry to save

        Raises:
            RegistryError: If the extension directory is not set or the file
                cannot be written
        """
        with self._lock:
            registry_path = self.get_registry_path()
            if registry_path is None:
                raise RegistryError("Cannot save the registry: the extension directory is not set")

            temp_path = registry_path.with_name(registry_path.name + ".tmp")
            try:
                registry_path.parent.mkdir(parents=True, exist_ok=True)
                temp_path.write_text(registry.to_json(), encoding="utf-8")
                os.replace(temp_path, registry_path)
            except OSError as e:
                try:
                    temp_path.unlink(missing_ok=True)
                except OSError:
                    logger.debug(f"Cannot delete {temp_path}")
                raise RegistryError(f"Cannot save the registry to {registry_path}: {e}") from e

            logger.debug(f"Registry saved to {registry_path} ({len(registry.catalogs)} catalogs)")

    def get_saved_registry(self) -> Registry:
        """
        Read the registry file

        Returns:
            The saved registry

        Raises:
            RegistryNotFoundError: If there is no extension directory or
                registry file, or if the file is not a valid registry
            RegistryError: If the file exists but cannot be read
        """
        with self._lock:
            registry_path = self.get_registry_path()
            if registry_path is None:
                raise RegistryNotFoundError("The extension directory is not set")
            if not registry_path.is_file():
                raise RegistryNotFoundError(f"Registry file {registry_path} not found")

            try:
                text = registry_path.read_text(encoding="utf-8")
            except OSError as e:
                raise RegistryError(f"Cannot read the registry at {registry_path}: {e}") from e

            try:
                registry = Registry.from_json(text)
            except (ValueError, PydanticValidationError) as e:
                raise RegistryNotFoundError(f"Invalid registry at {registry_path}: {e}") from e

            logger.debug(f"Registry loaded from {registry_path} ({len(registry.catalogs)} catalogs)")
            return registry

    # Paths

    def get_catalog_directory_path(self, catalog_name: str) -> Path:
        """
        Get the directory containing the extensions of a catalog

        Raises:
            InstallationError: If the extension directory is not set
        """
        return self._require_root() / strip_invalid_filename_characters(catalog_name)

    def get_extension_directory_path(self, catalog_name: str, extension_name: str) -> Path:
        """Get the directory containing the releases of an extension"""
        return self.get_catalog_directory_path(catalog_name) / strip_invalid_filename_characters(extension_name)

    def get_extension_path(
        self,
        catalog_name: str,
        extension_name: str,
        release_name: str,
        file_type: FileType,
        create_directory: bool = False
    ) -> Path:
        """
        Get the directory where files of one kind are stored for a release

        Args:
            catalog_name: Name of the catalog of the extension
            extension_name: Name of the extension
            release_name: Name of the release
            file_type: Kind of files
            create_directory: Create the directory (and its parents) if needed.
                A regular file standing at that location is deleted first.

        Returns:
            <root>/<catalog>/<extension>/<release>/<file type folder>

        Raises:
            InstallationError: If the extension directory is not set
            OSError: If the directory cannot be created
        """
        path = (
            self.get_extension_directory_path(catalog_name, extension_name)
            / strip_invalid_filename_characters(release_name)
            / file_type.value
        )

        if create_directory:
            if path.is_file():
                logger.debug(f"Deleting {path} because it should be a directory")
                path.unlink()
            path.mkdir(parents=True, exist_ok=True)
        return path

    # Installed extensions

    def get_installed_extension(self, catalog_name: str, extension_name: str) -> Optional[InstalledExtension]:
        """
        Inspect the filesystem to find the installed release of an extension

        An extension is installed when its directory contains exactly one
        release directory with a non-empty main module folder.

        Returns:
            The installed release, or None if the extension is not installed
        """
        try:
            extension_path = self.get_extension_directory_path(catalog_name, extension_name)
        except InstallationError:
            return None

        if not extension_path.is_dir():
            logger.debug(f"{extension_path} not found, so {extension_name} is not installed")
            return None

        try:
            releases = [
                release_path for release_path in sorted(extension_path.iterdir())
                if release_path.is_dir() and is_directory_not_empty(release_path / FileType.MAIN_MODULE.value)
            ]
            if len(releases) != 1:
                if releases:
                    logger.warning(
                        f"Several releases of {extension_name} found in {extension_path}: "
                        f"{[release.name for release in releases]}. Considering it not installed"
                    )
                else:
                    logger.debug(f"No release of {extension_name} found in {extension_path}")
                return None

            release_path = releases[0]
            installed = InstalledExtension(
                release_name=release_path.name,
                optional_dependencies_installed=is_directory_not_empty(
                    release_path / FileType.OPTIONAL_DEPENDENCIES.value
                )
            )
        except OSError as e:
            logger.warning(f"Cannot inspect {extension_path}: {e}")
            return None

        logger.debug(f"Release {installed.release_name} of {extension_name} found in {extension_path}")
        return installed

    def delete_extension(self, catalog_name: str, extension_name: str) -> None:
        """
        Delete every file of an extension

        Raises:
            InstallationError: If the extension directory is not set
            OSError: If a file cannot be deleted
        """
        with self._lock:
            extension_path = self.get_extension_directory_path(catalog_name, extension_name)
            logger.debug(f"Deleting {extension_path}")
            delete_directory_recursively(extension_path)

    def delete_extensions_from_catalog(self, catalog_name: str) -> None:
        """
        Delete every extension installed from a catalog

        Raises:
            InstallationError: If the extension directory is not set
            OSError: If a file cannot be deleted
        """
        with self._lock:
            catalog_path = self.get_catalog_directory_path(catalog_name)
            logger.debug(f"Deleting {catalog_path}")
            delete_directory_recursively(catalog_path)

    def close(self) -> None:
        """Stop watching the extension root. Safe to call several times"""
        self._manually_installed.close()
        self._catalog_managed.close()
