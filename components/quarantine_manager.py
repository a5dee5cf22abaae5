# components/quarantine_manager.py

import logging
import shutil
from pathlib import Path
from typing import Optional

from utils.file_utils import unique_destination

logger = logging.getLogger(__name__)


class QuarantineManager:
    """
    Moves demoted duplicate files into a holding directory.

    Files keep their folder layout relative to the photo root so a
    quarantined copy can be traced back to where it came from.
    """

    def __init__(self, quarantine_dir: str, photo_root: Optional[str] = None):
        self.quarantine_dir = Path(quarantine_dir)
        self.photo_root = Path(photo_root) if photo_root else None

    def contains(self, file_path: Optional[str]) -> bool:
        """True when the path already lies inside the quarantine directory"""
        if not file_path:
            return False
        try:
            Path(file_path).resolve().relative_to(self.quarantine_dir.resolve())
            return True
        except ValueError:
            return False

    def destination_dir(self, source: Path) -> Path:
        """Quarantine folder mirroring the source's location under the photo root"""
        if self.photo_root is not None:
            try:
                relative = source.parent.resolve().relative_to(self.photo_root.resolve())
                return self.quarantine_dir / relative
            except ValueError:
                pass
        return self.quarantine_dir

    def quarantine(self, file_path: str) -> Path:
        """
        Move a file into quarantine, resolving name collisions with a numeric suffix.

        Raises:
            FileNotFoundError: if the source file does not exist
            OSError: if the move fails
        """
        source = Path(file_path)
        if not source.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        dest_dir = self.destination_dir(source)
        dest_dir.mkdir(parents=True, exist_ok=True)
        destination = unique_destination(dest_dir, source.name)

        shutil.move(str(source), str(destination))
        logger.info("Moved %s -> %s", source, destination)
        return destination
