import logging
import os
import time
from pathlib import Path


class HousekeepingService:
    """Removes partial encoder outputs left behind by a crashed worker."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_temp_files(self, directory: Path, older_than: float = 0.0) -> int:
        """Recursively removes .tmp files in the directory. Returns how many were removed.

        Files modified within the last ``older_than`` seconds are kept: another
        worker sharing the output root may still be writing them.
        """
        removed = 0
        if not Path(directory).is_dir():
            return removed
        cutoff = time.time() - older_than
        for root, dirs, files in os.walk(directory):
            for file in files:
                if not file.endswith(".tmp"):
                    continue
                path = Path(root) / file
                try:
                    if older_than and path.stat().st_mtime > cutoff:
                        self.logger.debug(f"Keeping recent partial output {path}")
                        continue
                    path.unlink()
                    removed += 1
                except OSError as e:
                    self.logger.warning(f"Could not remove stale partial output {path}: {e}")
        if removed:
            self.logger.info(f"Removed {removed} stale partial outputs under {directory}")
        return removed
