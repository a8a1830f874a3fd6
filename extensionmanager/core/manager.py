"""Extension catalog manager

Entry point of the extension manager. It keeps the list of saved catalogs,
tracks which extension of which catalog is installed, installs, updates and
removes extensions, and loads the module archives found in the extension
directory.

Example:
    >>> manager = ExtensionCatalogManager(Path("~/extensions"), "v1.0.0", DEFAULT_CATALOGS)
    >>> catalog = manager.catalogs.snapshot()[0]
    >>> extension = manager.get_catalog_manifest(catalog).extensions[0]
    >>> release = extension.get_max_compatible_release(manager.version)
    >>> manager.install_or_update_extension(catalog, extension, release)
    >>> manager.get_installed_extension(catalog, extension).get()
    InstalledExtension(release_name='v0.1.0', optional_dependencies_installed=False)
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from extensionmanager.core.downloader import DEFAULT_TIMEOUT, URLDownloader
from extensionmanager.core.exceptions import (
    ExtensionError,
    InstallationError,
    RegistryError,
    RegistryNotFoundError,
    SecurityError,
    ValidationError,
)
from extensionmanager.core.extractor import ZipExtractor
from extensionmanager.core.fetcher import CatalogFetcher
from extensionmanager.core.filetools import get_file_name_from_uri, is_zip_archive
from extensionmanager.core.folders import ExtensionFolderManager
from extensionmanager.core.loader import ExtensionModuleLoader
from extensionmanager.core.models import (
    CatalogManifest,
    Extension,
    FileType,
    InstallationStep,
    InstalledExtension,
    Registry,
    Release,
    SavedCatalog,
    UpdateAvailable,
)
from extensionmanager.core.reactive import (
    ListChange,
    ObservableList,
    ObservableValue,
    ReadOnlyObservableList,
    ReadOnlyObservableValue,
)
from extensionmanager.core.version import Version
from extensionmanager.core.watcher import DEFAULT_POLL_INTERVAL

logger = logging.getLogger(__name__)

FetchCatalog = Callable[[str], CatalogManifest]
Download = Callable[..., None]
ProgressCallback = Callable[[float], None]
StatusCallback = Callable[[InstallationStep, str], None]
CompleteCallback = Callable[[Optional[Exception]], None]


def _extension_name(extension: Union[Extension, str]) -> str:
    return extension if isinstance(extension, str) else extension.name


def _scaled_progress(on_progress: Optional[ProgressCallback], start: float, step: float) -> ProgressCallback:
    def report(progress: float) -> None:
        if on_progress is not None:
            on_progress(start + progress * step)
    return report


class ExtensionCatalogManager:
    """Manage catalogs and the extensions installed from them

    Every public method can be called from any thread. Installations block
    until all files are downloaded and extracted, so a responsive front end
    should call install_or_update_extension() from a worker thread.
    """

    def __init__(
        self,
        extension_directory: Optional[Path],
        version: str,
        default_catalogs: Optional[List[SavedCatalog]] = None,
        fetch_catalog: Optional[FetchCatalog] = None,
        download: Optional[Download] = None,
        request_timeout: int = DEFAULT_TIMEOUT,
        download_retries: int = 3,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_workers: int = 4
    ):
        """
        Initialize the manager

        Args:
            extension_directory: Directory containing extensions and the
                registry. Can be None or invalid, in which case the default
                catalogs are used and nothing can be installed
            version: Host version, of the form 'vX.Y.Z' or 'vX.Y.Z-rcN'. It
                determines which releases are compatible
            default_catalogs: Catalogs used when no registry is saved
            fetch_catalog: Function returning the manifest at a URI. Defaults
                to an HTTP fetch
            download: Function downloading a URL to a path, called as
                download(url, path, on_progress, cancel_event). Defaults to an
                HTTP download
            request_timeout: Timeout in seconds of the default network functions
            download_retries: Retries of the default download function
            poll_interval: Seconds between two listings of the extension directory
            max_workers: Threads used to look for updates

        Raises:
            ValidationError: If the version is not valid
        """
        if not Version.is_valid(version, include_minor_and_patch=True):
            raise ValidationError(f"Host version '{version}' must be of the form vX.Y.Z or vX.Y.Z-rcN")
        self._version = Version.parse(version)
        self._default_catalogs = list(default_catalogs or [])

        self._fetcher: Optional[CatalogFetcher] = None
        if fetch_catalog is None:
            self._fetcher = CatalogFetcher(timeout=request_timeout)
            fetch_catalog = self._fetcher.fetch_catalog
        self._fetch_catalog = fetch_catalog

        self._downloader: Optional[URLDownloader] = None
        if download is None:
            self._downloader = URLDownloader(max_retries=download_retries, timeout=request_timeout)
            download = self._downloader.download
        self._download = download
        self._extractor = ZipExtractor()

        # Guards the saved catalogs and the manifest cache
        self._lock = threading.RLock()
        # Guards the installed extension cells
        self._installed_lock = threading.RLock()
        self._close_lock = threading.Lock()
        self._closed = False

        self._catalogs: ObservableList[SavedCatalog] = ObservableList()
        self._manifests: Dict[str, CatalogManifest] = {}
        self._installed: Dict[Tuple[str, str], ObservableValue] = {}

        self._folders = ExtensionFolderManager(extension_directory, poll_interval=poll_interval)
        self._loader = ExtensionModuleLoader()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ExtensionUpdates")

        self._catalogs.set_all(self._load_saved_catalogs())
        self._folders.extension_directory.subscribe(self._on_extension_directory_changed)
        self._load_modules()

        logger.info(
            f"Extension manager initialized: directory={self._folders.get_root_path()}, "
            f"version={self._version}, catalogs={len(self._catalogs)}"
        )

    @property
    def version(self) -> Version:
        """Host version used to filter compatible releases"""
        return self._version

    @property
    def catalogs(self) -> ReadOnlyObservableList:
        """Saved catalogs, in registry order"""
        return self._catalogs.read_only()

    @property
    def manually_installed_modules(self) -> ReadOnlyObservableList:
        """Module archives added by hand to the extension directory"""
        return self._folders.manually_installed_modules

    @property
    def catalog_managed_modules(self) -> ReadOnlyObservableList:
        """Module archives installed from catalogs"""
        return self._folders.catalog_managed_modules

    @property
    def loaded_modules(self) -> List[Path]:
        return self._loader.loaded_modules

    # Directories

    def get_extension_directory(self) -> ReadOnlyObservableValue:
        return self._folders.extension_directory

    def set_extension_directory(self, directory: Optional[Path]) -> None:
        """
        Change the extension directory

        Saved catalogs are reloaded from the registry of the new directory and
        the installation state of every known extension is computed again.
        """
        self._folders.set_extension_directory(directory)

    def get_catalog_directory(self, catalog: SavedCatalog) -> Path:
        """
        Raises:
            InstallationError: If the extension directory is not set
        """
        return self._folders.get_catalog_directory_path(catalog.name)

    def get_extension_path(self, catalog: SavedCatalog, extension: Union[Extension, str]) -> Path:
        """
        Raises:
            InstallationError: If the extension directory is not set
        """
        return self._folders.get_extension_directory_path(catalog.name, _extension_name(extension))

    # Catalogs

    def add_catalogs(self, catalogs: List[SavedCatalog]) -> List[SavedCatalog]:
        """
        Add catalogs and save them to the registry

        Catalogs whose name is already used by a saved catalog (or by a
        previous catalog of the same list) are skipped.

        Args:
            catalogs: Catalogs to add

        Returns:
            The catalogs actually added

        Raises:
            RegistryError: If the registry cannot be saved. No catalog is added
                in that case
        """
        with self._lock:
            current = self._catalogs.snapshot()
            names = {catalog.name for catalog in current}

            accepted = []
            for catalog in catalogs:
                if catalog.name in names:
                    logger.warning(f"A catalog named {catalog.name} already exists. {catalog.uri} not added")
                    continue
                names.add(catalog.name)
                accepted.append(catalog)

            if not accepted:
                return []

            self._folders.save_registry(Registry(catalogs=current + accepted))
            self._catalogs.add_all(accepted)

        for catalog in accepted:
            logger.info(f"Catalog {catalog.name} added")
        return accepted

    def remove_catalogs(
        self,
        catalogs: List[SavedCatalog],
        remove_installed_extensions: bool = False
    ) -> List[SavedCatalog]:
        """
        Remove catalogs and save the registry

        Catalogs that are not deletable or not saved are skipped. Deleting the
        files of the removed catalogs is done on a best-effort basis: failures
        are logged.

        Args:
            catalogs: Catalogs to remove (matched by name)
            remove_installed_extensions: Also delete the extensions installed
                from the removed catalogs

        Returns:
            The catalogs actually removed

        Raises:
            RegistryError: If the registry cannot be saved. No catalog is
                removed in that case
        """
        with self._lock:
            current = self._catalogs.snapshot()

            to_remove: List[SavedCatalog] = []
            for catalog in catalogs:
                saved = next((c for c in current if c.name == catalog.name), None)
                if saved is None:
                    logger.warning(f"Catalog {catalog.name} not found, skipped")
                    continue
                if not saved.deletable:
                    logger.warning(f"Catalog {catalog.name} cannot be deleted, skipped")
                    continue
                if saved not in to_remove:
                    to_remove.append(saved)

            if not to_remove:
                return []

            self._folders.save_registry(Registry(catalogs=[c for c in current if c not in to_remove]))
            self._catalogs.remove_all(to_remove)
            for catalog in to_remove:
                self._manifests.pop(catalog.name, None)

        for catalog in to_remove:
            logger.info(f"Catalog {catalog.name} removed")

        if remove_installed_extensions:
            for catalog in to_remove:
                try:
                    self._folders.delete_extensions_from_catalog(catalog.name)
                except (ExtensionError, OSError) as e:
                    logger.error(f"Cannot delete the extensions of {catalog.name}: {e}", exc_info=True)
                self._clear_installed_extensions_of_catalog(catalog.name)
            self._folders.refresh_modules()

        return to_remove

    def get_catalog_manifest(self, catalog: SavedCatalog, refresh: bool = False) -> CatalogManifest:
        """
        Get the content of a catalog

        Manifests of saved catalogs are cached until the catalog is removed
        or the extension directory changes.

        Args:
            catalog: Catalog to fetch
            refresh: Fetch the manifest even if it is cached

        Raises:
            CatalogFetchError: If the manifest cannot be fetched
        """
        if not refresh:
            with self._lock:
                cached = self._manifests.get(catalog.name)
            if cached is not None:
                return cached

        manifest = self._fetch_catalog(catalog.raw_uri)

        with self._lock:
            if any(saved.name == catalog.name for saved in self._catalogs):
                self._manifests[catalog.name] = manifest
        return manifest

    # Installed extensions

    def get_installed_extension(
        self,
        catalog: SavedCatalog,
        extension: Union[Extension, str]
    ) -> ReadOnlyObservableValue:
        """
        Get the installation state of an extension

        The state is read from the extension directory on first access, then
        kept up to date by this manager.

        Returns:
            An observable value holding the InstalledExtension, or None if the
            extension is not installed
        """
        key = (catalog.name, _extension_name(extension))
        with self._installed_lock:
            cell = self._installed.get(key)
            if cell is None:
                cell = ObservableValue(self._folders.get_installed_extension(*key))
                self._installed[key] = cell
            return cell.read_only()

    def get_download_links(
        self,
        catalog: SavedCatalog,
        extension: Extension,
        release: Release,
        optional_dependencies: bool = False
    ) -> List[str]:
        """
        Get the URLs an installation would download, in download order

        Raises:
            InstallationError: If the extension directory is not set
        """
        return [
            uri for uri, _ in self._get_downloads(catalog, extension, release, optional_dependencies, False)
        ]

    def install_or_update_extension(
        self,
        catalog: SavedCatalog,
        extension: Extension,
        release: Release,
        install_optional_dependencies: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        on_status_changed: Optional[StatusCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[Exception]:
        """
        Install a release of an extension, replacing any installed release

        The release is checked against the extension before any I/O. The
        extension is then checked against the catalog, which fetches the
        catalog manifest when it is not cached yet.

        Files of the installed release are deleted before the new ones are
        downloaded, so a failed update leaves the extension uninstalled.
        Zip archives are extracted next to where they are downloaded.

        Args:
            catalog: Catalog owning the extension
            extension: Extension to install
            release: Release to install. Must belong to the extension
            install_optional_dependencies: Also download optional dependencies
            on_progress: Called with the overall progress in [0, 1]
            on_status_changed: Called before each download with the URL and
                before each extraction with the archive path
            on_complete: Called exactly once when the call ends, with None on
                success or the error that stopped the installation
            cancel_event: Installation stops at the next chunk when this event is set

        Returns:
            None on success, or the error also given to on_complete
        """
        key = (catalog.name, extension.name)
        error: Optional[Exception] = None
        files_deleted = False

        try:
            self._validate_installation(catalog, extension, release)

            logger.debug(f"Deleting files of {extension.name} before installing or updating it")
            files_deleted = True
            self._delete_extension_files(key)

            optional = install_optional_dependencies and bool(release.optional_dependency_urls)
            self._download_and_extract(
                self._get_downloads(catalog, extension, release, install_optional_dependencies, True),
                on_progress,
                on_status_changed,
                cancel_event
            )

            self._set_installed_extension(key, InstalledExtension(
                release_name=release.name,
                optional_dependencies_installed=optional
            ))
            self._folders.refresh_modules()
            logger.info(f"{extension.name} {release.name} of {catalog.name} installed")

        except ExtensionError as e:
            logger.error(f"Installation of {extension.name} failed: {e}")
            error = e
        except Exception as e:
            logger.error(f"Installation of {extension.name} failed: {e}", exc_info=True)
            error = e

        if error is not None:
            self._set_installed_extension(key, None)
            if files_deleted:
                try:
                    self._folders.delete_extension(*key)
                except (ExtensionError, OSError) as e:
                    logger.error(f"Cannot clear files of {extension.name} after failed installation: {e}")
                self._folders.refresh_modules()

        if on_complete is not None:
            try:
                on_complete(error)
            except Exception as e:
                logger.error(f"Completion callback failed for {extension.name}: {e}", exc_info=True)
        return error

    def remove_extension(self, catalog: SavedCatalog, extension: Union[Extension, str]) -> None:
        """
        Uninstall an extension by deleting its files

        Raises:
            SecurityError: If the files cannot be deleted because of permissions
            InstallationError: If the extension directory is not set or the
                files cannot be deleted
        """
        key = (catalog.name, _extension_name(extension))
        try:
            self._delete_extension_files(key)
        except ExtensionError:
            self._set_installed_extension(key, self._folders.get_installed_extension(*key))
            raise

        logger.info(f"{key[1]} of {catalog.name} removed")

    def get_available_updates(self) -> "Future[List[UpdateAvailable]]":
        """
        Look for updates of the installed extensions

        Extensions added by hand to the extension directory are not considered.

        Returns:
            A future holding the available updates. It fails with
            CatalogFetchError if a catalog cannot be fetched
        """
        with self._lock:
            catalogs = self._catalogs.snapshot()
        return self._executor.submit(self._find_updates, catalogs)

    # Modules

    def add_on_module_loaded(self, callback: Callable[[Path], None]) -> None:
        """Register a callback called with each module archive loaded from now on"""
        self._loader.add_on_module_loaded(callback)

    def close(self) -> None:
        """Stop watching the extension directory and release loaded modules. Safe to call several times"""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self._folders.extension_directory.unsubscribe(self._on_extension_directory_changed)
        self._folders.manually_installed_modules.unsubscribe(self._on_modules_changed)
        self._folders.catalog_managed_modules.unsubscribe(self._on_modules_changed)

        self._executor.shutdown(wait=False)
        self._folders.close()
        self._loader.close()
        if self._fetcher is not None:
            self._fetcher.close()
        if self._downloader is not None:
            self._downloader.close()

        logger.debug("Extension manager closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Internals

    def _load_saved_catalogs(self) -> List[SavedCatalog]:
        try:
            return list(self._folders.get_saved_registry().catalogs)
        except RegistryNotFoundError as e:
            logger.info(f"{e}. Using default catalogs")
        except RegistryError as e:
            logger.error(f"Cannot load the registry, using default catalogs: {e}", exc_info=True)
        return list(self._default_catalogs)

    def _on_extension_directory_changed(self, old_value, new_value) -> None:
        logger.debug(f"Extension directory changed from {old_value} to {new_value}")
        with self._lock:
            self._manifests.clear()
            self._catalogs.set_all(self._load_saved_catalogs())

        with self._installed_lock:
            for key, cell in list(self._installed.items()):
                cell.set(self._folders.get_installed_extension(*key))

    def _load_modules(self) -> None:
        for modules in (self._folders.manually_installed_modules, self._folders.catalog_managed_modules):
            modules.subscribe(self._on_modules_changed)
            for path in modules.snapshot():
                self._add_module(path)

    def _on_modules_changed(self, change: ListChange) -> None:
        for path in change.removed:
            self._loader.remove_module(path)
        for path in change.added:
            self._add_module(path)

    def _add_module(self, path: Path) -> None:
        try:
            self._loader.add_module(path)
        except OSError as e:
            logger.error(f"Cannot load extension {path}: {e}", exc_info=True)

    def _set_installed_extension(self, key: Tuple[str, str], installed: Optional[InstalledExtension]) -> None:
        with self._installed_lock:
            cell = self._installed.get(key)
            if cell is None:
                self._installed[key] = ObservableValue(installed)
            else:
                cell.set(installed)

    def _clear_installed_extensions_of_catalog(self, catalog_name: str) -> None:
        with self._installed_lock:
            for (name, _), cell in list(self._installed.items()):
                if name == catalog_name:
                    cell.set(None)

    def _delete_extension_files(self, key: Tuple[str, str]) -> None:
        try:
            self._folders.delete_extension(*key)
        except PermissionError as e:
            raise SecurityError(f"Insufficient permissions to delete files of {key[1]}: {e}") from e
        except OSError as e:
            raise InstallationError(f"Cannot delete files of {key[1]}: {e}") from e
        finally:
            self._folders.refresh_modules()
        self._set_installed_extension(key, None)

    def _validate_installation(self, catalog: SavedCatalog, extension: Extension, release: Release) -> None:
        """Release membership first, then catalog membership (may fetch the manifest)"""
        if release not in extension.releases:
            raise ValidationError(
                f"The release {release.name} is not present in the releases of {extension.name}: "
                f"{[r.name for r in extension.releases]}"
            )

        manifest = self.get_catalog_manifest(catalog)
        if manifest.get_extension(extension.name) is None:
            raise ValidationError(
                f"The extension {extension.name} is not present in the catalog {catalog.name}"
            )

    def _get_downloads(
        self,
        catalog: SavedCatalog,
        extension: Extension,
        release: Release,
        optional_dependencies: bool,
        create_directories: bool
    ) -> List[Tuple[str, Path]]:
        groups = [
            (FileType.MAIN_MODULE, [release.main_url]),
            (FileType.REQUIRED_DEPENDENCIES, release.required_dependency_urls),
            (FileType.OPTIONAL_DEPENDENCIES, release.optional_dependency_urls if optional_dependencies else []),
            (FileType.DOCS, release.javadocs_urls),
        ]

        downloads = []
        for file_type, uris in groups:
            for uri in uris:
                try:
                    file_name = get_file_name_from_uri(uri)
                except ValueError as e:
                    raise ValidationError(str(e)) from e

                folder = self._folders.get_extension_path(
                    catalog.name, extension.name, release.name, file_type, create_directories
                )
                downloads.append((uri, folder / file_name))
        return downloads

    def _download_and_extract(
        self,
        downloads: List[Tuple[str, Path]],
        on_progress: Optional[ProgressCallback],
        on_status_changed: Optional[StatusCallback],
        cancel_event: Optional[threading.Event]
    ) -> None:
        total = len(downloads)
        for i, (uri, path) in enumerate(downloads):
            offset = i / total
            extract = is_zip_archive(path)
            step = 1 / (2 * total) if extract else 1 / total

            if extract:
                logger.debug(f"Downloading and extracting {uri} to {path}")
            else:
                logger.debug(f"Downloading {uri} to {path}")

            if on_status_changed is not None:
                on_status_changed(InstallationStep.DOWNLOADING, uri)
            try:
                self._download(uri, path, _scaled_progress(on_progress, offset, step), cancel_event)
            except PermissionError as e:
                raise SecurityError(f"Insufficient permissions to write {path}: {e}") from e
            except OSError as e:
                raise InstallationError(f"Cannot download {uri}: {e}") from e

            if extract:
                if on_status_changed is not None:
                    on_status_changed(InstallationStep.EXTRACTING, str(path))
                self._extractor.extract(
                    path,
                    path.parent,
                    _scaled_progress(on_progress, offset + step, step),
                    cancel_event
                )

    def _find_updates(self, catalogs: List[SavedCatalog]) -> List[UpdateAvailable]:
        updates = []
        for catalog in catalogs:
            manifest = self.get_catalog_manifest(catalog, refresh=True)
            for extension in manifest.extensions:
                update = self._get_update_available(catalog, extension)
                if update is not None:
                    updates.append(update)
        return updates

    def _get_update_available(self, catalog: SavedCatalog, extension: Extension) -> Optional[UpdateAvailable]:
        installed = self._folders.get_installed_extension(catalog.name, extension.name)
        if installed is None:
            logger.debug(f"{extension.name} not installed, so no update available")
            return None

        max_release = extension.get_max_compatible_release(self._version)
        if max_release is None:
            logger.debug(f"{extension.name} installed but no compatible release found")
            return None

        try:
            installed_version = Version.parse(installed.release_name)
        except ValueError:
            logger.debug(f"Installed release {installed.release_name} of {extension.name} is not a version")
            return None

        if max_release.version > installed_version:
            logger.debug(f"{extension.name} installed and updatable to {max_release.name}")
            return UpdateAvailable(
                extension_name=extension.name,
                current_version=installed.release_name,
                new_version=max_release.name
            )

        logger.debug(f"{extension.name} installed but no compatible update found")
        return None
