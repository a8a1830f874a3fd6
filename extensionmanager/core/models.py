"""Data models for the extension manager

The JSON field names of the registry file and of catalog manifests are
camelCase (``rawUri``, ``mainUrl``...). Models accept both the JSON names and
the Python attribute names, and serialise with the JSON names.
"""

import json
import logging
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from extensionmanager.core.version import Version

logger = logging.getLogger(__name__)


class FileType(str, Enum):
    """Kind of file downloaded for a release, with the name of its folder"""
    MAIN_MODULE = "main-jar"
    DOCS = "javadocs-dependencies"
    REQUIRED_DEPENDENCIES = "required-dependencies"
    OPTIONAL_DEPENDENCIES = "optional-dependencies"


class InstallationStep(str, Enum):
    """Step of an installation reported to the status callback"""
    DOWNLOADING = "DOWNLOADING"
    EXTRACTING = "EXTRACTING"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SavedCatalog(_WireModel):
    """A catalog saved in the registry"""
    name: str = Field(min_length=1, description="Catalog name, unique among saved catalogs")
    description: str = Field(default="", description="Short description of the catalog")
    uri: str = Field(description="Human-readable location of the catalog")
    raw_uri: str = Field(alias="rawUri", description="Location of the catalog manifest")
    deletable: bool = Field(default=True, description="Whether the catalog can be removed")


_CATALOG_LIST = TypeAdapter(List[SavedCatalog])


class Registry(_WireModel):
    """Ordered list of saved catalogs, persisted as registry.json"""
    catalogs: List[SavedCatalog] = Field(default_factory=list)

    @field_validator("catalogs")
    @classmethod
    def validate_unique_names(cls, v: List[SavedCatalog]) -> List[SavedCatalog]:
        """Catalog names must be unique"""
        names = [catalog.name for catalog in v]
        if len(set(names)) < len(names):
            raise ValueError(f"At least two catalogs have the same name in {names}")
        return v

    def to_json(self) -> str:
        """Serialise to the registry.json format (a JSON array of catalogs)"""
        return _CATALOG_LIST.dump_json(self.catalogs, by_alias=True, indent=2).decode("utf-8")

    @classmethod
    def from_json(cls, text: str) -> "Registry":
        """Parse the registry.json format

        Both a bare array of catalogs and an object with a ``catalogs`` key are
        accepted.
        """
        data = json.loads(text)
        if isinstance(data, dict):
            data = data.get("catalogs")
        return cls(catalogs=_CATALOG_LIST.validate_python(data))


class VersionRange(_WireModel):
    """Host versions a release is compatible with"""
    min: str = Field(description="Minimum compatible host version (inclusive)")
    max: Optional[str] = Field(default=None, description="Maximum compatible host version (exclusive)")
    excludes: List[str] = Field(default_factory=list, description="Incompatible host versions")

    @field_validator("min")
    @classmethod
    def validate_min(cls, v: str) -> str:
        """Validate the minimum version format"""
        Version.parse(v)
        return v

    @field_validator("max")
    @classmethod
    def validate_max(cls, v: Optional[str]) -> Optional[str]:
        """Validate the maximum version format"""
        if v is not None:
            Version.parse(v)
        return v

    @field_validator("excludes", mode="before")
    @classmethod
    def validate_excludes(cls, v):
        """Treat a null excludes field as empty"""
        return [] if v is None else v

    @model_validator(mode="after")
    def check_bounds(self) -> "VersionRange":
        """Check that min <= max and that excluded versions lie within the bounds"""
        minimum = Version.parse(self.min)
        maximum = Version.parse(self.max) if self.max is not None else None

        if maximum is not None and minimum > maximum:
            raise ValueError(
                f"The min version '{self.min}' must be lower than or equal to the max version '{self.max}'"
            )
        for excluded in self.excludes:
            version = Version.parse(excluded)
            if minimum > version:
                raise ValueError(
                    f"The min version '{self.min}' must be lower than or equal to the excluded version '{excluded}'"
                )
            if maximum is not None and version > maximum:
                raise ValueError(
                    f"The excluded version '{excluded}' must be lower than or equal to the max version '{self.max}'"
                )
        return self

    def is_compatible(self, version: "Version | str") -> bool:
        """
        Check whether a host version falls in this range

        Args:
            version: Host version

        Returns:
            True if min <= version < max and version is not excluded
        """
        if isinstance(version, str):
            version = Version.parse(version)

        if Version.parse(self.min) > version:
            logger.debug(f"{self} not compatible with {version} because of the minimum version")
            return False
        if self.max is not None and version >= Version.parse(self.max):
            logger.debug(f"{self} not compatible with {version} because of the maximum version")
            return False
        if any(Version.parse(excluded) == version for excluded in self.excludes):
            logger.debug(f"{self} not compatible with {version} because it is excluded")
            return False
        return True


class Release(_WireModel):
    """One installable version of an extension"""
    name: str = Field(description="Release version (e.g. 'v1.0.0')")
    main_url: str = Field(alias="mainUrl", description="URL of the main module archive")
    required_dependency_urls: List[str] = Field(default_factory=list, alias="requiredDependencyUrls")
    optional_dependency_urls: List[str] = Field(default_factory=list, alias="optionalDependencyUrls")
    javadocs_urls: List[str] = Field(default_factory=list, alias="javadocsUrls")
    version_range: VersionRange = Field(alias="versionRange")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """A release name must be a full version"""
        if not Version.is_valid(v, include_minor_and_patch=True):
            raise ValueError(f"Release name '{v}' must be a version of the form vX.Y.Z")
        return v

    @field_validator(
        "required_dependency_urls", "optional_dependency_urls", "javadocs_urls", mode="before"
    )
    @classmethod
    def validate_url_lists(cls, v):
        """Treat null URL lists as empty"""
        return [] if v is None else v

    @property
    def version(self) -> Version:
        return Version.parse(self.name)

    def is_compatible(self, version: "Version | str") -> bool:
        return self.version_range.is_compatible(version)


class Extension(_WireModel):
    """An extension listed in a catalog"""
    name: str = Field(min_length=1)
    description: str = ""
    author: str = ""
    homepage: str = ""
    starred: bool = False
    releases: List[Release] = Field(default_factory=list)

    @field_validator("releases", mode="before")
    @classmethod
    def validate_releases(cls, v):
        return [] if v is None else v

    def get_release(self, name: str) -> Optional[Release]:
        """Get the release with the given name, if any"""
        return next((release for release in self.releases if release.name == name), None)

    def get_max_compatible_release(self, version: "Version | str") -> Optional[Release]:
        """
        Get the most recent release compatible with a host version

        Args:
            version: Host version

        Returns:
            The compatible release with the greatest version, or None
        """
        if isinstance(version, str):
            version = Version.parse(version)

        best: Optional[Release] = None
        for release in self.releases:
            if release.is_compatible(version) and (best is None or release.version > best.version):
                best = release
        return best


class CatalogManifest(_WireModel):
    """Content of a catalog, as fetched from its raw URI"""
    name: str = Field(min_length=1)
    description: str = ""
    extensions: List[Extension] = Field(default_factory=list)

    @field_validator("extensions")
    @classmethod
    def validate_unique_names(cls, v: List[Extension]) -> List[Extension]:
        """Extension names must be unique within a catalog"""
        names = [extension.name for extension in v]
        if len(set(names)) < len(names):
            raise ValueError(f"At least two extensions have the same name in {names}")
        return v

    def get_extension(self, name: str) -> Optional[Extension]:
        return next((extension for extension in self.extensions if extension.name == name), None)


class InstalledExtension(_WireModel):
    """Installation state of an extension"""
    release_name: str
    optional_dependencies_installed: bool = False


class UpdateAvailable(_WireModel):
    """An installed extension that has a more recent compatible release"""
    extension_name: str
    current_version: str
    new_version: str

    def __str__(self) -> str:
        return f"{self.extension_name}: {self.current_version} -> {self.new_version}"
