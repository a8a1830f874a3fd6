"""Catalog manifest fetching"""

import logging
import re
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from pydantic import ValidationError as PydanticValidationError

from extensionmanager.core.exceptions import CatalogFetchError
from extensionmanager.core.models import CatalogManifest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10  # seconds
USER_AGENT = "ExtensionManager-Fetcher/1.0"


def _check_http_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise CatalogFetchError(f"Invalid URL {url}: only http/https URLs are supported")


class CatalogFetcher:
    """Fetch and validate catalog manifests"""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_catalog(self, uri: str) -> CatalogManifest:
        """
        Fetch a catalog manifest

        Args:
            uri: Raw URI of the catalog (e.g. the URL of a catalog.json file)

        Returns:
            The validated manifest

        Raises:
            CatalogFetchError: If the request fails, returns a status other
                than 200, or the content is not a valid catalog
        """
        _check_http_url(uri)
        logger.debug(f"Fetching catalog at {uri}")

        try:
            response = self.session.get(
                uri,
                timeout=self.timeout,
                allow_redirects=True,
                headers={"User-Agent": USER_AGENT}
            )
        except requests.RequestException as e:
            raise CatalogFetchError(f"Cannot fetch catalog at {uri}: {e}") from e

        if response.status_code != 200:
            raise CatalogFetchError(
                f"Request to {uri} failed with status code {response.status_code}."
            )

        try:
            manifest = CatalogManifest.model_validate_json(response.content)
        except PydanticValidationError as e:
            raise CatalogFetchError(f"Invalid catalog at {uri}: {e}") from e

        logger.debug(f"Catalog {manifest.name} fetched from {uri} ({len(manifest.extensions)} extensions)")
        return manifest

    def close(self):
        self.session.close()


class GitHubRawLinkFinder:
    """Resolve the download link of a file stored in a GitHub repository"""

    GITHUB_URL_PATTERN = re.compile(r"^/([^/]+)/([^/]+)(?:/(?:[^/]+)/(?:[^/]+)/(.*))?")
    CONTENTS_API = "https://api.github.com/repos/{user}/{repo}/contents/{path}"

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_raw_link(self, url: str, predicate: Callable[[str], bool]) -> str:
        """
        Find the download link of the first file of a repository directory
        whose name matches a predicate

        Args:
            url: Repository URL, e.g. 'https://github.com/user/repo' or
                'https://github.com/user/repo/tree/main/some/dir'
            predicate: Selects the file by name (e.g. lambda name: name == 'catalog.json')

        Returns:
            The raw download URL of the file

        Raises:
            CatalogFetchError: If the URL is not a GitHub repository URL, the
                API request fails, or no file matches
        """
        parsed = urlparse(url)
        if parsed.hostname not in ("github.com", "www.github.com"):
            raise CatalogFetchError(f"{url} is not a GitHub URL")

        match = self.GITHUB_URL_PATTERN.match(parsed.path)
        if match is None:
            raise CatalogFetchError(f"{url} is not a GitHub repository URL")

        user, repo, path = match.group(1), match.group(2), match.group(3) or ""
        api_url = self.CONTENTS_API.format(user=user, repo=repo, path=path.strip("/"))
        logger.debug(f"Listing {api_url}")

        try:
            response = self.session.get(
                api_url,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT, "Accept": "application/vnd.github+json"}
            )
        except requests.RequestException as e:
            raise CatalogFetchError(f"Cannot list files of {url}: {e}") from e

        if response.status_code != 200:
            raise CatalogFetchError(
                f"Request to {api_url} failed with status code {response.status_code}."
            )

        try:
            entries = response.json()
        except ValueError as e:
            raise CatalogFetchError(f"Invalid response from {api_url}: {e}") from e
        if not isinstance(entries, list):
            raise CatalogFetchError(f"{url} does not point to a directory")

        for entry in entries:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name")
            download_url = entry.get("download_url")
            if name and download_url and predicate(name):
                logger.debug(f"Found {name} in {url}: {download_url}")
                return download_url

        raise CatalogFetchError(f"No matching file found in {url}")

    def close(self):
        self.session.close()


def fetch_catalog(uri: str) -> CatalogManifest:
    """Fetch a catalog manifest with a one-off fetcher"""
    fetcher = CatalogFetcher()
    try:
        return fetcher.fetch_catalog(uri)
    finally:
        fetcher.close()
