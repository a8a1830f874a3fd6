"""URL downloader for extension files"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from extensionmanager.core.exceptions import DownloadError, InstallCancelledError, SecurityError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10  # seconds, per network operation
CHUNK_SIZE = 8192
USER_AGENT = "ExtensionManager-Downloader/1.0"


class URLDownloader:
    """Downloader for files referenced by catalogs"""

    def __init__(
        self,
        max_retries: int = 3,
        timeout: int = DEFAULT_TIMEOUT
    ):
        """
        Initialize downloader

        Args:
            max_retries: Maximum number of retry attempts
            timeout: Request timeout in seconds
        """
        self.timeout = timeout

        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @staticmethod
    def _validate_url(url: str) -> None:
        """
        Validate URL format and scheme

        Raises:
            DownloadError: If URL is invalid
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise DownloadError(f"Unknown scheme {parsed.scheme!r} in {url}. Only http/https allowed.")
        if not parsed.netloc:
            raise DownloadError(f"Invalid URL {url}: missing hostname")

    def download(
        self,
        url: str,
        target_path: Path,
        on_progress: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> None:
        """
        Download a file

        Progress is only reported when the server sends a Content-Length header.

        Args:
            url: URL to download from
            target_path: Path of the file to create (overwritten if present)
            on_progress: Called with the downloaded fraction in [0, 1]
            cancel_event: Download stops when this event is set

        Raises:
            DownloadError: If the download fails
            SecurityError: If the target file cannot be written because of permissions
            InstallCancelledError: If the cancel event is set
        """
        self._validate_url(url)
        logger.debug(f"Sending request to {url}")

        temp_path = target_path.with_name(target_path.name + ".tmp")

        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            with self.session.get(
                url,
                stream=True,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT}
            ) as response:
                if response.status_code != 200:
                    raise DownloadError(
                        f"Request to {url} failed with status code {response.status_code}."
                    )

                total_size = self._get_content_length(response)
                downloaded_bytes = 0

                with open(temp_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise InstallCancelledError(f"Download of {url} cancelled")
                        if not chunk:
                            continue

                        f.write(chunk)
                        downloaded_bytes += len(chunk)

                        if on_progress and total_size:
                            on_progress(min(downloaded_bytes / total_size, 1.0))

            temp_path.replace(target_path)
            logger.debug(f"{url} saved to {target_path} ({downloaded_bytes} bytes)")

        except (DownloadError, InstallCancelledError):
            raise
        except requests.RequestException as e:
            raise DownloadError(f"Download of {url} failed: {e}") from e
        except PermissionError as e:
            raise SecurityError(f"Insufficient permissions to write {target_path}: {e}") from e
        except OSError as e:
            raise DownloadError(f"Cannot write {target_path}: {e}") from e

        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as e:
                    logger.warning(f"Failed to clean up temporary file {temp_path}: {e}")

    @staticmethod
    def _get_content_length(response: requests.Response) -> int:
        content_length = response.headers.get("Content-Length")
        if not content_length:
            logger.debug(f"Content-Length not found in response from {response.url}. Cannot indicate progress")
            return 0
        try:
            return int(content_length)
        except ValueError:
            logger.debug(f"Content-Length {content_length!r} is not a number. Cannot indicate progress")
            return 0

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
