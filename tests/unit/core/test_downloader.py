from __future__ import annotations

import threading
from pathlib import Path

import pytest
import requests

from extensionmanager.core import downloader as downloader_module
from extensionmanager.core.downloader import URLDownloader
from extensionmanager.core.exceptions import DownloadError, InstallCancelledError, SecurityError


class FakeResponse:
    def __init__(self, chunks: list[bytes], status_code: int = 200, content_length: bool = True):
        self.chunks = chunks
        self.status_code = status_code
        self.url = "https://example.com/file.whl"
        self.headers = {"Content-Length": str(sum(len(c) for c in chunks))} if content_length else {}

    def iter_content(self, chunk_size: int):
        yield from self.chunks

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.requests: list[str] = []

    def get(self, url: str, **kwargs):
        self.requests.append(url)
        if self.error is not None:
            raise self.error
        return self.response

    def close(self) -> None:
        pass


def _downloader(session: FakeSession) -> URLDownloader:
    downloader = URLDownloader(max_retries=0)
    downloader.session = session
    return downloader


def test_download_writes_file_and_reports_progress(tmp_path: Path) -> None:
    session = FakeSession(FakeResponse([b"ab", b"", b"cd"]))
    target = tmp_path / "nested" / "file.whl"
    progress: list[float] = []

    _downloader(session).download("https://example.com/file.whl", target, progress.append)

    assert target.read_bytes() == b"abcd"
    assert progress == [0.5, 1.0]
    assert not (tmp_path / "nested" / "file.whl.tmp").exists()


def test_download_without_content_length_reports_nothing(tmp_path: Path) -> None:
    session = FakeSession(FakeResponse([b"abcd"], content_length=False))
    progress: list[float] = []

    _downloader(session).download("https://example.com/file.whl", tmp_path / "file.whl", progress.append)

    assert progress == []
    assert (tmp_path / "file.whl").read_bytes() == b"abcd"


def test_download_replaces_existing_file(tmp_path: Path) -> None:
    target = tmp_path / "file.whl"
    target.write_bytes(b"old")

    _downloader(FakeSession(FakeResponse([b"new"]))).download("https://example.com/file.whl", target)

    assert target.read_bytes() == b"new"


def test_non_200_status_fails(tmp_path: Path) -> None:
    session = FakeSession(FakeResponse([b"not found"], status_code=404))

    with pytest.raises(DownloadError, match="404"):
        _downloader(session).download("https://example.com/file.whl", tmp_path / "file.whl")

    assert list(tmp_path.iterdir()) == []


def test_request_errors_become_download_errors(tmp_path: Path) -> None:
    session = FakeSession(error=requests.ConnectionError("unreachable"))

    with pytest.raises(DownloadError, match="unreachable"):
        _downloader(session).download("https://example.com/file.whl", tmp_path / "file.whl")


@pytest.mark.parametrize("url", ["file:///etc/passwd", "ftp://example.com/file.whl", "https:///file.whl"])
def test_invalid_urls_are_rejected(tmp_path: Path, url: str) -> None:
    session = FakeSession(FakeResponse([b"x"]))

    with pytest.raises(DownloadError):
        _downloader(session).download(url, tmp_path / "file.whl")

    assert session.requests == []


def test_cancelled_download_leaves_no_file(tmp_path: Path) -> None:
    cancel_event = threading.Event()
    chunks_seen = []

    class CancellingResponse(FakeResponse):
        def iter_content(self, chunk_size: int):
            for chunk in self.chunks:
                chunks_seen.append(chunk)
                yield chunk
                cancel_event.set()

    session = FakeSession(CancellingResponse([b"ab", b"cd"]))

    with pytest.raises(InstallCancelledError):
        _downloader(session).download(
            "https://example.com/file.whl", tmp_path / "file.whl", cancel_event=cancel_event
        )

    assert list(tmp_path.iterdir()) == []
    assert len(chunks_seen) == 2


def test_context_manager_closes_session() -> None:
    with URLDownloader() as downloader:
        assert downloader.session is not None


def test_permission_denied_is_a_security_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def read_only_open(path, mode="r", *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(downloader_module, "open", read_only_open, raising=False)

    with pytest.raises(SecurityError, match="Insufficient permissions"):
        _downloader(FakeSession(FakeResponse([b"abcd"]))).download(
            "https://example.com/file.whl", tmp_path / "file.whl"
        )

    assert list(tmp_path.iterdir()) == []


def test_other_write_errors_are_download_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def full_disk_open(path, mode="r", *args, **kwargs):
        raise OSError(28, "No space left on device", str(path))

    monkeypatch.setattr(downloader_module, "open", full_disk_open, raising=False)

    with pytest.raises(DownloadError, match="Cannot write"):
        _downloader(FakeSession(FakeResponse([b"abcd"]))).download(
            "https://example.com/file.whl", tmp_path / "file.whl"
        )
