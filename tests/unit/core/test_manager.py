from __future__ import annotations

import io
import threading
import time
import zipfile
from pathlib import Path
from typing import Callable, Optional
import pytest

from extensionmanager.core.exceptions import (
    CatalogFetchError,
    DownloadError,
    InstallCancelledError,
    RegistryError,
    SecurityError,
    ValidationError,
)
from extensionmanager.core.folders import ExtensionFolderManager
from extensionmanager.core.manager import ExtensionCatalogManager
from extensionmanager.core.models import (
    CatalogManifest,
    Extension,
    InstallationStep,
    InstalledExtension,
    Registry,
    Release,
    SavedCatalog,
    UpdateAvailable,
    VersionRange,
)

SLOW_POLL = 3600.0
BASE_URL = "https://example.com"


def _zip_bytes(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def _catalog(name: str = "catalog", deletable: bool = True) -> SavedCatalog:
    return SavedCatalog(
        name=name,
        description=f"{name} description",
        uri=f"{BASE_URL}/{name}",
        raw_uri=f"{BASE_URL}/{name}/catalog.json",
        deletable=deletable,
    )


def _release(
    name: str,
    min_version: str = "v0.1.0",
    max_version: Optional[str] = None,
    required: tuple = (),
    optional: tuple = (),
    docs: tuple = (),
) -> Release:
    return Release(
        name=name,
        main_url=f"{BASE_URL}/ext/{name}/ext.whl",
        required_dependency_urls=list(required),
        optional_dependency_urls=list(optional),
        javadocs_urls=list(docs),
        version_range=VersionRange(min=min_version, max=max_version),
    )


class FakeServer:
    """Serves catalog manifests and files from memory"""

    def __init__(self):
        self.manifests: dict[str, CatalogManifest] = {}
        self.files: dict[str, bytes] = {}
        self.fetches: list[str] = []
        self.downloads: list[str] = []

    def publish(self, catalog: SavedCatalog, *extensions: Extension) -> None:
        self.manifests[catalog.raw_uri] = CatalogManifest(
            name=catalog.name, description="", extensions=list(extensions)
        )
        for extension in extensions:
            for release in extension.releases:
                for url in [release.main_url, *release.required_dependency_urls,
                            *release.optional_dependency_urls, *release.javadocs_urls]:
                    self.files.setdefault(url, b"content of " + url.encode())

    def fetch_catalog(self, uri: str) -> CatalogManifest:
        self.fetches.append(uri)
        if uri not in self.manifests:
            raise CatalogFetchError(f"No catalog at {uri}")
        return self.manifests[uri]

    def download(
        self,
        url: str,
        path: Path,
        on_progress: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise InstallCancelledError(f"Download of {url} cancelled")
        if url not in self.files:
            raise DownloadError(f"Request to {url} failed with status code 404.")
        self.downloads.append(url)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.files[url])
        if on_progress:
            on_progress(1.0)


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def make_manager(tmp_path: Path, server: FakeServer):
    managers = []

    def factory(version: str = "v2.0.0", directory: Optional[Path] = None, default_catalogs=None):
        manager = ExtensionCatalogManager(
            directory or tmp_path / "extensions",
            version,
            default_catalogs=default_catalogs,
            fetch_catalog=server.fetch_catalog,
            download=server.download,
            poll_interval=SLOW_POLL,
        )
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.close()


@pytest.fixture
def extension() -> Extension:
    return Extension(
        name="ext",
        author="someone",
        releases=[
            _release("v0.1.0"),
            _release("v1.0.0", min_version="v2.0.0"),
        ],
    )


class Completion:
    """Records on_complete calls"""

    def __init__(self):
        self.calls: list[Optional[Exception]] = []

    def __call__(self, error: Optional[Exception]) -> None:
        self.calls.append(error)


# Catalogs

def test_default_catalogs_are_used_without_registry(make_manager) -> None:
    default = _catalog("default", deletable=False)
    manager = make_manager(default_catalogs=[default])

    assert manager.catalogs.snapshot() == [default]


def test_added_catalogs_are_persisted(make_manager, tmp_path: Path) -> None:
    manager = make_manager(default_catalogs=[_catalog("default", deletable=False)])
    changes = []
    manager.catalogs.subscribe(changes.append)

    added = manager.add_catalogs([_catalog("a"), _catalog("b")])

    assert [c.name for c in added] == ["a", "b"]
    assert [c.name for c in manager.catalogs] == ["default", "a", "b"]
    assert len(changes) == 1
    saved = Registry.from_json((tmp_path / "extensions" / "registry.json").read_text(encoding="utf-8"))
    assert [c.name for c in saved.catalogs] == ["default", "a", "b"]

    reopened = make_manager(default_catalogs=[])
    assert [c.name for c in reopened.catalogs] == ["default", "a", "b"]


def test_colliding_catalog_names_are_skipped(make_manager) -> None:
    manager = make_manager()
    manager.add_catalogs([_catalog("a")])

    added = manager.add_catalogs([_catalog("a"), _catalog("b"), _catalog("b")])

    assert [c.name for c in added] == ["b"]
    assert [c.name for c in manager.catalogs] == ["a", "b"]


def test_failed_persistence_rolls_back(make_manager, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = make_manager()
    manager.add_catalogs([_catalog("a")])

    def failing_save(self, registry: Registry) -> None:
        raise RegistryError("disk full")

    monkeypatch.setattr(ExtensionFolderManager, "save_registry", failing_save)
    with pytest.raises(RegistryError):
        manager.add_catalogs([_catalog("b")])
    with pytest.raises(RegistryError):
        manager.remove_catalogs([_catalog("a")])

    assert [c.name for c in manager.catalogs] == ["a"]


def test_concurrent_adds_with_disjoint_names(make_manager, tmp_path: Path) -> None:
    manager = make_manager()
    barrier = threading.Barrier(2)

    def add(name: str) -> None:
        barrier.wait()
        manager.add_catalogs([_catalog(name)])

    threads = [threading.Thread(target=add, args=(name,)) for name in ("a", "b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    saved = Registry.from_json((tmp_path / "extensions" / "registry.json").read_text(encoding="utf-8"))
    assert sorted(c.name for c in saved.catalogs) == ["a", "b"]
    assert sorted(c.name for c in manager.catalogs) == ["a", "b"]


def test_concurrent_adds_with_same_name(make_manager) -> None:
    manager = make_manager()
    barrier = threading.Barrier(2)
    results = []

    def add() -> None:
        barrier.wait()
        results.append(manager.add_catalogs([_catalog("same")]))

    threads = [threading.Thread(target=add) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(len(result) for result in results) == [0, 1]
    assert [c.name for c in manager.catalogs] == ["same"]


def test_non_deletable_catalogs_are_kept(make_manager) -> None:
    protected = _catalog("protected", deletable=False)
    manager = make_manager(default_catalogs=[protected])
    manager.add_catalogs([_catalog("a")])

    removed = manager.remove_catalogs([protected, _catalog("a"), _catalog("unknown")])

    assert [c.name for c in removed] == ["a"]
    assert manager.catalogs.snapshot() == [protected]


def test_remove_catalog_with_its_extensions(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    manager.add_catalogs([catalog])
    assert manager.install_or_update_extension(catalog, extension, extension.releases[0]) is None
    installed = manager.get_installed_extension(catalog, extension)

    manager.remove_catalogs([catalog], remove_installed_extensions=True)

    assert installed.get() is None
    assert not manager.get_catalog_directory(catalog).exists()
    assert manager.catalog_managed_modules.snapshot() == []


def test_manifest_cache(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    manager.add_catalogs([catalog])

    first = manager.get_catalog_manifest(catalog)
    second = manager.get_catalog_manifest(catalog)
    manager.get_catalog_manifest(catalog, refresh=True)

    assert first is second
    assert server.fetches == [catalog.raw_uri, catalog.raw_uri]

    manager.remove_catalogs([catalog])
    manager.get_catalog_manifest(catalog)
    assert len(server.fetches) == 3


# Installation

def test_install_records_installed_extension(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    manager.add_catalogs([catalog])
    completion = Completion()
    release = extension.releases[0]

    error = manager.install_or_update_extension(catalog, extension, release, False, on_complete=completion)

    assert error is None
    assert completion.calls == [None]
    assert manager.get_installed_extension(catalog, extension).get() == InstalledExtension(
        release_name="v0.1.0", optional_dependencies_installed=False
    )
    main_file = manager.get_extension_path(catalog, extension) / "v0.1.0" / "main-jar" / "ext.whl"
    assert main_file.is_file()
    assert main_file in manager.catalog_managed_modules
    assert main_file.absolute() in manager.loaded_modules


def test_install_notifies_installed_extension_subscribers(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    installed = manager.get_installed_extension(catalog, extension)
    same = manager.get_installed_extension(catalog, "ext")
    changes = []
    installed.subscribe(lambda old, new: changes.append(new))

    manager.install_or_update_extension(catalog, extension, extension.releases[0])

    assert changes == [InstalledExtension(release_name="v0.1.0")]
    assert same.get() == installed.get()


def test_unknown_release_fails_with_validation_error(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    completion = Completion()

    error = manager.install_or_update_extension(
        catalog, extension, _release("v9.9.9"), on_complete=completion
    )

    assert isinstance(error, ValidationError)
    assert completion.calls == [error]
    assert manager.get_installed_extension(catalog, extension).get() is None
    assert server.downloads == []
    # Release membership is checked before the catalog is fetched
    assert server.fetches == []


def test_extension_missing_from_catalog_fails(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog)
    manager = make_manager()
    completion = Completion()

    manager.install_or_update_extension(catalog, extension, extension.releases[0], on_complete=completion)

    assert len(completion.calls) == 1
    assert isinstance(completion.calls[0], ValidationError)


def test_failed_download_leaves_extension_uninstalled(make_manager, server: FakeServer) -> None:
    catalog = _catalog()
    good = _release("v0.1.0")
    broken = _release("v0.2.0", required=(f"{BASE_URL}/missing/dep.whl",))
    extension = Extension(name="ext", releases=[good, broken])
    server.publish(catalog, extension)
    del server.files[f"{BASE_URL}/missing/dep.whl"]
    manager = make_manager()
    manager.install_or_update_extension(catalog, extension, good)
    completion = Completion()

    error = manager.install_or_update_extension(catalog, extension, broken, on_complete=completion)

    assert isinstance(error, DownloadError)
    assert completion.calls == [error]
    assert manager.get_installed_extension(catalog, extension).get() is None
    # The previous release was deleted before the update started
    assert not manager.get_extension_path(catalog, extension).exists()


def test_cancelled_installation(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    cancel_event = threading.Event()
    cancel_event.set()
    completion = Completion()

    error = manager.install_or_update_extension(
        catalog, extension, extension.releases[0], on_complete=completion, cancel_event=cancel_event
    )

    assert isinstance(error, InstallCancelledError)
    assert completion.calls == [error]
    assert manager.get_installed_extension(catalog, extension).get() is None


def test_failing_callback_still_completes_once(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    completion = Completion()

    def on_progress(value: float) -> None:
        raise RuntimeError("progress bar closed")

    error = manager.install_or_update_extension(
        catalog, extension, extension.releases[0], on_progress=on_progress, on_complete=completion
    )

    assert isinstance(error, RuntimeError)
    assert completion.calls == [error]


def test_progress_and_status(make_manager, server: FakeServer) -> None:
    catalog = _catalog()
    docs_url = f"{BASE_URL}/ext/v0.1.0/docs.zip"
    release = _release("v0.1.0", docs=(docs_url,))
    extension = Extension(name="ext", releases=[release])
    server.publish(catalog, extension)
    server.files[docs_url] = _zip_bytes({"index.html": b"<html/>"})
    manager = make_manager()
    progress: list[float] = []
    statuses: list[tuple] = []

    error = manager.install_or_update_extension(
        catalog, extension, release,
        on_progress=progress.append,
        on_status_changed=lambda step, resource: statuses.append((step, resource)),
    )

    assert error is None
    docs_path = manager.get_extension_path(catalog, extension) / "v0.1.0" / "javadocs-dependencies" / "docs.zip"
    assert statuses == [
        (InstallationStep.DOWNLOADING, release.main_url),
        (InstallationStep.DOWNLOADING, docs_url),
        (InstallationStep.EXTRACTING, str(docs_path)),
    ]
    assert progress == pytest.approx([0.5, 0.75, 1.0])
    assert (docs_path.parent / "index.html").read_bytes() == b"<html/>"


def test_download_links_order(make_manager) -> None:
    catalog = _catalog()
    release = _release(
        "v0.1.0",
        required=(f"{BASE_URL}/required.whl",),
        optional=(f"{BASE_URL}/optional.whl",),
        docs=(f"{BASE_URL}/docs.zip",),
    )
    extension = Extension(name="ext", releases=[release])
    manager = make_manager()

    assert manager.get_download_links(catalog, extension, release, optional_dependencies=True) == [
        release.main_url,
        f"{BASE_URL}/required.whl",
        f"{BASE_URL}/optional.whl",
        f"{BASE_URL}/docs.zip",
    ]
    assert f"{BASE_URL}/optional.whl" not in manager.get_download_links(catalog, extension, release)
    assert not manager.get_extension_path(catalog, extension).exists()


def test_install_with_optional_dependencies(make_manager, server: FakeServer) -> None:
    catalog = _catalog()
    release = _release("v0.1.0", optional=(f"{BASE_URL}/optional.whl",))
    extension = Extension(name="ext", releases=[release])
    server.publish(catalog, extension)
    manager = make_manager()

    manager.install_or_update_extension(catalog, extension, release, install_optional_dependencies=True)

    expected = InstalledExtension(release_name="v0.1.0", optional_dependencies_installed=True)
    assert manager.get_installed_extension(catalog, extension).get() == expected
    # The filesystem agrees with the cache
    reopened = make_manager()
    assert reopened.get_installed_extension(catalog, extension).get() == expected


def test_remove_extension(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    manager.install_or_update_extension(catalog, extension, extension.releases[0])
    installed = manager.get_installed_extension(catalog, extension)

    manager.remove_extension(catalog, extension)

    assert installed.get() is None
    assert not manager.get_extension_path(catalog, extension).exists()
    assert manager.catalog_managed_modules.snapshot() == []


# Updates

def test_update_detection(make_manager, server: FakeServer, extension: Extension, tmp_path: Path) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager(version="v2.0.0")
    manager.add_catalogs([catalog])
    manager.install_or_update_extension(catalog, extension, extension.releases[0])

    updates = manager.get_available_updates().result(timeout=10)

    assert updates == [UpdateAvailable(extension_name="ext", current_version="v0.1.0", new_version="v1.0.0")]

    older_host = make_manager(version="v1.2.3")
    assert older_host.get_available_updates().result(timeout=10) == []


def test_no_update_for_uninstalled_or_current_extensions(make_manager, server: FakeServer, extension: Extension) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager(version="v2.0.0")
    manager.add_catalogs([catalog])

    assert manager.get_available_updates().result(timeout=10) == []

    manager.install_or_update_extension(catalog, extension, extension.releases[1])
    assert manager.get_available_updates().result(timeout=10) == []


def test_update_query_fails_when_catalog_cannot_be_fetched(make_manager) -> None:
    manager = make_manager()
    manager.add_catalogs([_catalog("offline")])

    future = manager.get_available_updates()

    assert isinstance(future.exception(timeout=10), CatalogFetchError)


# Directory and lifecycle

def test_changing_extension_directory(make_manager, server: FakeServer, extension: Extension, tmp_path: Path) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    default = _catalog("default", deletable=False)
    manager = make_manager(default_catalogs=[default])
    manager.add_catalogs([catalog])
    manager.install_or_update_extension(catalog, extension, extension.releases[0])
    installed = manager.get_installed_extension(catalog, extension)

    manager.set_extension_directory(tmp_path / "elsewhere")

    assert manager.catalogs.snapshot() == [default]
    assert installed.get() is None
    assert manager.get_extension_directory().get() == tmp_path / "elsewhere"


def test_invalid_host_version(tmp_path: Path, server: FakeServer) -> None:
    with pytest.raises(ValidationError):
        ExtensionCatalogManager(tmp_path, "1.0", fetch_catalog=server.fetch_catalog, download=server.download)


def test_close_is_idempotent(make_manager) -> None:
    manager = make_manager()
    manager.close()
    manager.close()


def test_context_manager(tmp_path: Path, server: FakeServer) -> None:
    with ExtensionCatalogManager(
        tmp_path, "v1.0.0", fetch_catalog=server.fetch_catalog, download=server.download, poll_interval=SLOW_POLL
    ) as manager:
        loaded = []
        manager.add_on_module_loaded(loaded.append)
        (tmp_path / "manual.whl").write_bytes(b"")
        manager._folders.refresh_modules()

        assert manager.manually_installed_modules.snapshot() == [tmp_path / "manual.whl"]
        assert loaded == [(tmp_path / "manual.whl").absolute()]


def test_permission_denied_during_install_is_a_security_error(
    make_manager, server: FakeServer, extension: Extension
) -> None:
    catalog = _catalog()
    server.publish(catalog, extension)
    manager = make_manager()
    completion = Completion()

    def read_only_download(url, path, on_progress=None, cancel_event=None):
        raise PermissionError(13, "Permission denied", str(path))

    manager._download = read_only_download

    error = manager.install_or_update_extension(catalog, extension, extension.releases[0], on_complete=completion)

    assert isinstance(error, SecurityError)
    assert completion.calls == [error]
    assert manager.get_installed_extension(catalog, extension).get() is None


def test_directory_change_concurrent_with_catalog_add(
    make_manager, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    manager = make_manager(default_catalogs=[])
    prepare_root = ExtensionFolderManager._prepare_root

    def slow_prepare_root(directory):
        time.sleep(0.5)
        return prepare_root(directory)

    monkeypatch.setattr(ExtensionFolderManager, "_prepare_root", staticmethod(slow_prepare_root))

    change = threading.Thread(target=manager.set_extension_directory, args=(tmp_path / "other",))
    add = threading.Thread(target=manager.add_catalogs, args=([_catalog("x")],))
    change.start()
    time.sleep(0.1)
    add.start()
    change.join(timeout=10)
    add.join(timeout=10)

    assert not change.is_alive()
    assert not add.is_alive()
    assert manager.get_extension_directory().get() == tmp_path / "other"
