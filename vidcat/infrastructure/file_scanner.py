import logging
import os
from stat import S_ISREG
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator
from vidcat.domain.models import FileDescriptor


class DirectoryScanner:
    """Recursively scans for video files in a directory."""

    def __init__(self, extensions: Iterable[str]):
        self.extensions = {ext.lstrip(".").lower() for ext in extensions}
        self.logger = logging.getLogger(__name__)

    def _on_walk_error(self, error: OSError):
        self.logger.warning(f"Cannot read directory {error.filename}: {error.strerror}")

    def scan(self, root_dir: Path) -> Iterator[FileDescriptor]:
        """Walks root_dir and yields a FileDescriptor per video file.

        Traversal is sorted so an unchanged tree always yields the same sequence.
        """
        root_dir = Path(root_dir)
        if not root_dir.is_dir():
            self.logger.error(f"Scan root is not a directory: {root_dir}")
            return

        for root, dirs, files in os.walk(str(root_dir), onerror=self._on_walk_error):
            root_path = Path(root)
            dirs.sort()
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                extension = file_path.suffix.lstrip(".").lower()
                if extension not in self.extensions:
                    continue

                try:
                    st = file_path.stat()
                except OSError as e:
                    self.logger.warning(f"Skipping {file_path}: stat failed ({e})")
                    continue
                if not S_ISREG(st.st_mode):
                    continue

                yield FileDescriptor(
                    original_path=str(file_path.absolute()),
                    filename=file_name,
                    file_type=extension,
                    file_size=st.st_size,
                    file_date_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                )
