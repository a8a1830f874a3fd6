"""Directory watching

Change notification is done by polling: a background thread lists the watched
directory at a fixed interval and reports the files that appeared or
disappeared since the previous listing.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Set

from extensionmanager.core.filetools import find_files_recursively
from extensionmanager.core.reactive import ObservableList, ReadOnlyObservableList, ReadOnlyObservableValue

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0  # seconds


def _accept_all(path: Path) -> bool:
    return True


def _skip_none(path: Path) -> bool:
    return False


class DirectoryWatch:
    """Report files added to or removed from a directory tree

    Example:
        >>> handle = watch(Path("extensions"), on_add=print, on_remove=print)
        >>> # ... files change ...
        >>> handle.stop()
    """

    def __init__(
        self,
        directory: Path,
        on_add: Callable[[Path], None],
        on_remove: Callable[[Path], None],
        files_to_find: Callable[[Path], bool] = _accept_all,
        directories_to_skip: Callable[[Path], bool] = _skip_none,
        depth: int = 1,
        poll_interval: float = DEFAULT_POLL_INTERVAL
    ):
        """
        Args:
            directory: Directory to watch
            on_add: Called with each file that appears
            on_remove: Called with each file that disappears
            files_to_find: Predicate selecting the files to report
            directories_to_skip: Predicate selecting directories not to descend into
            depth: Maximum search depth (1 only watches the directory itself)
            poll_interval: Seconds between two listings
        """
        self.directory = directory
        self.on_add = on_add
        self.on_remove = on_remove
        self.files_to_find = files_to_find
        self.directories_to_skip = directories_to_skip
        self.depth = depth
        self.poll_interval = poll_interval

        self._known: Set[Path] = set()
        self._scan_lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

    def start(self) -> None:
        """Report the files already present, then start polling"""
        if self._running:
            logger.warning(f"Watch of {self.directory} already running")
            return

        self.scan()

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(
            target=self._poll_loop,
            name=f"DirectoryWatch-{self.directory.name}",
            daemon=True
        )
        self._thread.start()
        logger.debug(f"Watching {self.directory} (depth={self.depth}, interval={self.poll_interval}s)")

    def stop(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Stop polling. Safe to call several times"""
        if not self._running:
            return

        self._stop_event.set()
        self._running = False

        if wait and self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Watch thread of {self.directory} did not stop within timeout")

        logger.debug(f"Stopped watching {self.directory}")

    def is_running(self) -> bool:
        return self._running and self._thread is not None and self._thread.is_alive()

    def scan(self) -> None:
        """List the directory once and report the differences with the previous listing

        Scans are serialised: when this returns, every change it found has been reported.
        """
        with self._scan_lock:
            try:
                current = set(find_files_recursively(
                    self.directory, self.files_to_find, self.directories_to_skip, self.depth
                ))
            except FileNotFoundError:
                current = set()
            except OSError as e:
                logger.debug(f"Cannot list {self.directory}: {e}")
                return

            added = sorted(current - self._known)
            removed = sorted(self._known - current)
            self._known = current

            for path in removed:
                self._call(self.on_remove, path)
            for path in added:
                self._call(self.on_add, path)

    def _call(self, callback: Callable[[Path], None], path: Path) -> None:
        try:
            callback(path)
        except Exception as e:
            logger.error(f"Watch callback failed for {path}: {e}", exc_info=True)

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            self.scan()


def watch(
    directory: Path,
    on_add: Callable[[Path], None],
    on_remove: Callable[[Path], None],
    **kwargs
) -> DirectoryWatch:
    """
    Start watching a directory

    Files already present are reported to on_add before this function returns.

    Returns:
        The running watch. Call stop() on it to release the background thread.
    """
    handle = DirectoryWatch(directory, on_add, on_remove, **kwargs)
    handle.start()
    return handle


class FilesWatcher:
    """Keep an observable list of the files found below a directory

    The watched directory is an observable value: when it changes, the list is
    emptied and filled again with the content of the new directory. A missing
    or invalid directory disables detection until the directory changes again.
    """

    def __init__(
        self,
        directory: ReadOnlyObservableValue,
        files_to_find: Callable[[Path], bool],
        directories_to_skip: Callable[[Path], bool] = _skip_none,
        depth: int = 1,
        poll_interval: float = DEFAULT_POLL_INTERVAL
    ):
        self._directory = directory
        self._files_to_find = files_to_find
        self._directories_to_skip = directories_to_skip
        self._depth = depth
        self._poll_interval = poll_interval

        self._files: ObservableList[Path] = ObservableList()
        self._lock = threading.RLock()
        self._watch: Optional[DirectoryWatch] = None
        self._generation = 0
        self._closed = False

        self._directory.subscribe(self._on_directory_changed)
        self._set_directory(self._directory.get())

    @property
    def files(self) -> ReadOnlyObservableList:
        return self._files.read_only()

    def refresh(self) -> None:
        """Synchronise the list with the directory content now

        Detection is enabled again if the directory was created since it was set.
        """
        with self._lock:
            current_watch = self._watch
        # The poll thread takes the scan lock before ours
        if current_watch is not None:
            current_watch.scan()
        else:
            self._set_directory(self._directory.get())

    def close(self) -> None:
        """Stop watching. Safe to call several times"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._directory.unsubscribe(self._on_directory_changed)
            self._stop_watch()

    def _on_directory_changed(self, old_value, new_value) -> None:
        self._set_directory(new_value)

    def _set_directory(self, directory: Optional[Path]) -> None:
        with self._lock:
            if self._closed:
                return
            self._stop_watch()
            self._files.clear()

            if directory is None:
                logger.debug("No directory set, file detection disabled")
                return
            if not directory.is_dir():
                logger.debug(f"{directory} is not a directory, file detection disabled")
                return

            self._generation += 1
            generation = self._generation
            self._watch = DirectoryWatch(
                directory,
                on_add=lambda path: self._on_file_added(generation, path),
                on_remove=lambda path: self._on_file_removed(generation, path),
                files_to_find=self._files_to_find,
                directories_to_skip=self._directories_to_skip,
                depth=self._depth,
                poll_interval=self._poll_interval
            )
            try:
                self._watch.start()
            except RuntimeError as e:
                logger.error(f"Cannot watch {directory}, file detection disabled: {e}", exc_info=True)
                self._watch = None

    def _stop_watch(self) -> None:
        if self._watch is not None:
            # The poll thread may be waiting for our lock, so don't join it
            self._watch.stop(wait=False)
            self._watch = None
        self._generation += 1

    def _on_file_added(self, generation: int, path: Path) -> None:
        with self._lock:
            if generation == self._generation and path not in self._files:
                self._files.add(path)

    def _on_file_removed(self, generation: int, path: Path) -> None:
        with self._lock:
            if generation == self._generation:
                self._files.remove(path)
