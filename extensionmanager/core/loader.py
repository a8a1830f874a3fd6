"""Dynamic loading of module archives

Module archives (wheels, eggs, zipapps) are made importable by appending them
to ``sys.path``. Loading is append-only: code imported from an archive stays
in the process until it exits, whatever happens to the archive afterwards.
"""

import importlib
import logging
import sys
import threading
from pathlib import Path
from typing import Callable, List, Set

logger = logging.getLogger(__name__)


class ExtensionModuleLoader:
    """Make module archives importable at runtime

    Example:
        >>> loader = ExtensionModuleLoader()
        >>> loader.add_on_module_loaded(lambda path: print(f"{path} loaded"))
        >>> loader.add_module(Path("extensions/my_extension.whl"))
        >>> import my_extension
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._loaded: List[Path] = []
        self._tracked_names: Set[str] = set()
        self._sys_path_entries: List[str] = []
        self._listeners: List[Callable[[Path], None]] = []
        self._closed = False

    @property
    def loaded_modules(self) -> List[Path]:
        """Every archive loaded so far, in loading order"""
        with self._lock:
            return list(self._loaded)

    def add_module(self, path: Path) -> bool:
        """
        Make the code of a module archive importable

        Registered listeners are called once the archive is on the import path.

        Args:
            path: Path to the archive

        Returns:
            True if the archive was loaded, False if it was already loaded or
            the loader is closed
        """
        path = Path(path).absolute()

        with self._lock:
            if self._closed:
                logger.warning(f"Cannot load {path}: the module loader is closed")
                return False

            already_loaded = path in self._loaded
            if path.name in self._tracked_names and not already_loaded:
                logger.warning(
                    f"A module archive named {path.name} is already loaded. "
                    f"Modules of {path} may shadow or be shadowed by the previous one"
                )
            self._tracked_names.add(path.name)

            if already_loaded:
                logger.debug(f"{path} already loaded")
                return False

            entry = str(path)
            sys.path.append(entry)
            importlib.invalidate_caches()

            self._sys_path_entries.append(entry)
            self._loaded.append(path)
            listeners = list(self._listeners)

        logger.info(f"Module archive {path} loaded")

        for listener in listeners:
            try:
                listener(path)
            except Exception as e:
                logger.error(f"Module loaded listener failed for {path}: {e}", exc_info=True)
        return True

    def remove_module(self, path: Path) -> None:
        """
        Stop tracking a module archive

        Code already imported from the archive remains loaded. The archive
        name is no longer considered when detecting name collisions.
        """
        path = Path(path).absolute()
        with self._lock:
            self._tracked_names.discard(path.name)
        logger.debug(f"{path} no longer tracked")

    def add_on_module_loaded(self, listener: Callable[[Path], None]) -> None:
        """Register a callback called with the path of each archive loaded from now on"""
        with self._lock:
            self._listeners.append(listener)

    def close(self) -> None:
        """
        Remove the loaded archives from the import path

        Already imported modules are not unloaded. Safe to call several times.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

            for entry in self._sys_path_entries:
                try:
                    sys.path.remove(entry)
                except ValueError:
                    logger.debug(f"{entry} was already removed from sys.path")
            self._sys_path_entries.clear()
            importlib.invalidate_caches()

        logger.debug("Module loader closed")
