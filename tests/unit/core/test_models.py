from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from extensionmanager.core.models import (
    CatalogManifest,
    Extension,
    Registry,
    Release,
    SavedCatalog,
    UpdateAvailable,
    VersionRange,
)


def _release(name: str, min_version: str = "v0.1.0", max_version: str | None = None) -> Release:
    return Release(
        name=name,
        main_url=f"https://example.com/{name}/module.whl",
        version_range=VersionRange(min=min_version, max=max_version),
    )


def test_registry_json_uses_camel_case_and_keeps_order() -> None:
    registry = Registry(catalogs=[
        SavedCatalog(name="b", description="second", uri="https://b", raw_uri="https://b/raw", deletable=False),
        SavedCatalog(name="a", uri="https://a", raw_uri="https://a/raw"),
    ])

    data = json.loads(registry.to_json())
    assert [c["name"] for c in data] == ["b", "a"]
    assert data[0]["rawUri"] == "https://b/raw"
    assert data[0]["deletable"] is False

    assert Registry.from_json(registry.to_json()) == registry


def test_registry_accepts_object_form() -> None:
    text = json.dumps({"catalogs": [{"name": "a", "description": "", "uri": "u", "rawUri": "r", "deletable": True}]})
    assert Registry.from_json(text).catalogs[0].raw_uri == "r"


def test_registry_rejects_duplicate_names() -> None:
    catalog = SavedCatalog(name="a", uri="u", raw_uri="r")
    with pytest.raises(ValidationError):
        Registry(catalogs=[catalog, catalog])


def test_version_range_max_is_exclusive() -> None:
    version_range = VersionRange(min="v0.5.0", max="v1.0.0")
    assert version_range.is_compatible("v0.5.0")
    assert version_range.is_compatible("v0.9.9")
    assert not version_range.is_compatible("v1.0.0")
    assert not version_range.is_compatible("v0.4.9")


def test_version_range_without_max() -> None:
    assert VersionRange(min="v0.5.0").is_compatible("v99.0.0")


def test_version_range_excludes() -> None:
    version_range = VersionRange(min="v0.5.0", max="v1.0.0", excludes=["v0.6.0"])
    assert not version_range.is_compatible("v0.6.0")
    assert version_range.is_compatible("v0.6.1")


@pytest.mark.parametrize("kwargs", [
    {"min": "v1.0.0", "max": "v0.5.0"},
    {"min": "v1.0.0", "excludes": ["v0.5.0"]},
    {"min": "v0.1.0", "max": "v0.5.0", "excludes": ["v0.6.0"]},
    {"min": "not a version"},
])
def test_version_range_validation(kwargs: dict) -> None:
    with pytest.raises(ValidationError):
        VersionRange(**kwargs)


def test_release_name_must_be_full_version() -> None:
    with pytest.raises(ValidationError):
        _release("v1.0")


def test_release_null_url_lists_are_empty() -> None:
    release = Release.model_validate({
        "name": "v1.0.0",
        "mainUrl": "https://example.com/a.whl",
        "requiredDependencyUrls": None,
        "optionalDependencyUrls": None,
        "javadocsUrls": None,
        "versionRange": {"min": "v0.1.0", "max": None},
    })
    assert release.required_dependency_urls == []
    assert release.javadocs_urls == []


def test_max_compatible_release() -> None:
    extension = Extension(name="ext", releases=[
        _release("v0.1.0"),
        _release("v1.0.0", min_version="v2.0.0"),
        _release("v0.2.0", max_version="v1.5.0"),
    ])

    assert extension.get_max_compatible_release("v1.2.3").name == "v0.2.0"
    assert extension.get_max_compatible_release("v1.6.0").name == "v0.1.0"
    assert extension.get_max_compatible_release("v2.0.0").name == "v1.0.0"
    assert extension.get_max_compatible_release("v0.0.1") is None
    assert extension.get_release("v0.2.0").name == "v0.2.0"
    assert extension.get_release("v9.9.9") is None


def test_catalog_manifest_parses_wire_format() -> None:
    manifest = CatalogManifest.model_validate_json(json.dumps({
        "name": "catalog",
        "description": "A catalog",
        "extensions": [{
            "name": "ext",
            "description": "An extension",
            "author": "someone",
            "homepage": "https://example.com/ext",
            "starred": True,
            "releases": [{
                "name": "v0.1.0",
                "mainUrl": "https://example.com/ext.whl",
                "requiredDependencyUrls": ["https://example.com/dep.whl"],
                "optionalDependencyUrls": [],
                "javadocsUrls": ["https://example.com/docs.zip"],
                "versionRange": {"min": "v0.1.0", "max": "v1.0.0"},
            }],
        }],
    }))

    extension = manifest.get_extension("ext")
    assert extension is not None and extension.starred
    assert extension.releases[0].required_dependency_urls == ["https://example.com/dep.whl"]
    assert manifest.get_extension("other") is None


def test_catalog_manifest_rejects_duplicate_extensions() -> None:
    with pytest.raises(ValidationError):
        CatalogManifest(name="c", extensions=[Extension(name="ext"), Extension(name="ext")])


def test_update_available_str() -> None:
    update = UpdateAvailable(extension_name="ext", current_version="v0.1.0", new_version="v1.0.0")
    assert str(update) == "ext: v0.1.0 -> v1.0.0"
