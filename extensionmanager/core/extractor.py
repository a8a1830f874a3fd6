"""Zip extraction with path traversal protection"""

import logging
import threading
import zipfile
from pathlib import Path
from typing import Callable, Optional

from extensionmanager.core.exceptions import InstallCancelledError, InstallationError, SecurityError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192  # 8KB chunks


class ZipExtractor:
    """Extract zip archives into a destination folder"""

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size

    @staticmethod
    def _resolve_entry(destination: Path, entry_name: str) -> Path:
        """
        Get the path an entry should be written to

        Raises:
            SecurityError: If the entry would be written outside of the destination
        """
        target = (destination / entry_name).resolve()
        try:
            relative = target.relative_to(destination)
        except ValueError:
            relative = None

        if relative is None or relative == Path("."):
            raise SecurityError(
                f"The zip entry {entry_name} is outside of the target directory {destination}"
            )
        return target

    def extract(
        self,
        zip_path: Path,
        output_folder: Path,
        on_progress: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> None:
        """
        Extract every entry of a zip archive

        Every entry is checked before anything is written, so an archive with
        one escaping entry leaves no file behind. A cancelled extraction leaves
        the files already written in place.

        Args:
            zip_path: Path to the zip file
            output_folder: Folder to extract to (created if needed)
            on_progress: Called with entries_processed / total_entries
            cancel_event: Extraction stops when this event is set

        Raises:
            SecurityError: If an entry resolves outside of the output folder
            InstallCancelledError: If the cancel event is set
            InstallationError: If the archive is invalid or cannot be written
        """
        logger.debug(f"Extracting {zip_path} to {output_folder}")

        try:
            output_folder.mkdir(parents=True, exist_ok=True)
            destination = output_folder.resolve()

            with zipfile.ZipFile(zip_path, "r") as zf:
                members = zf.infolist()
                targets = [self._resolve_entry(destination, member.filename) for member in members]
                total = len(members)

                for index, (member, target) in enumerate(zip(members, targets)):
                    if member.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                    else:
                        # Archives created on Windows may lack entries for their folders
                        target.parent.mkdir(parents=True, exist_ok=True)
                        self._copy_entry(zf, member, target, cancel_event)
                        logger.debug(f"File {member.filename} extracted to {target}")

                    if on_progress:
                        on_progress((index + 1) / total)

            logger.debug(f"Extraction of {zip_path} complete")

        except (SecurityError, InstallCancelledError):
            raise
        except PermissionError as e:
            raise SecurityError(f"Cannot extract {zip_path}: {e}") from e
        except (zipfile.BadZipFile, OSError) as e:
            raise InstallationError(f"Failed to extract {zip_path}: {e}") from e

    def _copy_entry(
        self,
        zf: zipfile.ZipFile,
        member: zipfile.ZipInfo,
        target: Path,
        cancel_event: Optional[threading.Event]
    ) -> None:
        with zf.open(member) as source, open(target, "wb") as output:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise InstallCancelledError(f"Extraction of {member.filename} cancelled")
                chunk = source.read(self.chunk_size)
                if not chunk:
                    break
                output.write(chunk)


def extract_zip_to_folder(
    zip_path: Path,
    output_folder: Path,
    on_progress: Optional[Callable[[float], None]] = None,
    cancel_event: Optional[threading.Event] = None
) -> None:
    """Extract a zip archive with the default extractor"""
    ZipExtractor().extract(zip_path, output_folder, on_progress, cancel_event)
