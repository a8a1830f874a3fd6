"""Filesystem helpers used by the folder manager and the watchers"""

import logging
import os
import re
from pathlib import Path, PurePosixPath
from typing import Callable, List
from urllib.parse import unquote, urlparse

logger = logging.getLogger(__name__)

INVALID_FILENAME_CHARACTERS = re.compile(r'[\\/:"*?<>|\n\r]+')

# Archive kinds the dynamic loader can put on the import path
MODULE_ARCHIVE_SUFFIXES = (".whl", ".egg", ".pyz", ".jar")


def strip_invalid_filename_characters(name: str) -> str:
    """
    Remove characters that are not allowed in file names

    Args:
        name: Name to sanitize

    Returns:
        The name without any of \\ / : " * ? < > | and line breaks
    """
    return INVALID_FILENAME_CHARACTERS.sub("", name)


def is_module_archive(path: Path) -> bool:
    return path.name.lower().endswith(MODULE_ARCHIVE_SUFFIXES)


def is_zip_archive(path: Path) -> bool:
    return path.name.lower().endswith(".zip")


def is_directory_not_empty(path: Path) -> bool:
    """Check whether a path is a directory containing at least one entry"""
    if not path.is_dir():
        return False
    with os.scandir(path) as entries:
        return any(True for _ in entries)


def find_files_recursively(
    directory: Path,
    files_to_find: Callable[[Path], bool],
    directories_to_skip: Callable[[Path], bool],
    depth: int
) -> List[Path]:
    """
    Find files below a directory

    Args:
        directory: Directory to search
        files_to_find: Predicate selecting the files to return
        directories_to_skip: Predicate selecting directories not to descend into
        depth: Maximum depth (1 only searches the directory itself)

    Returns:
        Sorted list of matching files

    Raises:
        OSError: If the directory cannot be listed
    """
    found = []
    with os.scandir(directory) as entries:
        for entry in entries:
            path = Path(entry.path)
            if entry.is_dir(follow_symlinks=False):
                if depth > 1 and not directories_to_skip(path):
                    try:
                        found.extend(find_files_recursively(path, files_to_find, directories_to_skip, depth - 1))
                    except OSError as e:
                        logger.debug(f"Cannot search files in {path}: {e}")
            elif entry.is_file() and files_to_find(path):
                found.append(path)
    return sorted(found)


def delete_directory_recursively(directory: Path) -> None:
    """
    Delete a directory tree depth-first

    Nothing happens if the directory doesn't exist. A regular file at the
    given path is deleted as well.

    Raises:
        OSError: If an entry cannot be deleted
    """
    if directory.is_symlink() or directory.is_file():
        directory.unlink()
        return
    if not directory.is_dir():
        return

    for child in directory.iterdir():
        if child.is_dir() and not child.is_symlink():
            delete_directory_recursively(child)
        else:
            child.unlink()
    directory.rmdir()


def get_file_name_from_uri(uri: str) -> str:
    """
    Get the name of the file a URI points to

    Args:
        uri: URI (e.g. 'https://host/releases/download/v1.0.0/module.whl')

    Returns:
        The last path segment (e.g. 'module.whl')

    Raises:
        ValueError: If the URI has no file name
    """
    name = PurePosixPath(unquote(urlparse(uri).path)).name
    name = strip_invalid_filename_characters(name)
    if not name:
        raise ValueError(f"No file name found in {uri}")
    return name
