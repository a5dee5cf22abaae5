# core/content_hasher.py

import hashlib
import logging
import time
from pathlib import Path

from core.database import PhotoStore
from core.errors import HashComputeError, MissingFileError, StoreWriteError
from core.models import PassSummary, PhotoAsset
from utils.progress import ProgressTracker

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def hash_file(file_path: str) -> str:
    """SHA-256 of the raw file bytes, hex encoded"""
    digest = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


class ContentHasher:
    """
    Computes exact content fingerprints for photos in the store
    """

    def __init__(self, store: PhotoStore,
                 progress_every: int = 500,
                 progress_interval_seconds: float = 5.0,
                 show_progress_bars: bool = True):
        self.store = store
        self.progress_every = progress_every
        self.progress_interval_seconds = progress_interval_seconds
        self.show_progress_bars = show_progress_bars

    def hash_photo(self, photo: PhotoAsset) -> str:
        """Hash one photo's file, raising MissingFileError or HashComputeError"""
        path = Path(photo.file_path) if photo.file_path else None
        if path is None or not path.is_file():
            raise MissingFileError(photo.id, photo.file_path)
        try:
            return hash_file(str(path))
        except OSError as e:
            raise HashComputeError(photo.id, str(e)) from e

    def compute_hashes(self, offset: int = 0, limit: int = 0,
                       rehash: bool = False) -> PassSummary:
        """
        Hash every photo that lacks a content hash.

        Args:
            offset: Skip this many candidate photos (for resuming)
            limit: Process at most this many photos (0 = no limit)
            rehash: Recompute hashes that already exist

        Returns:
            PassSummary with hashed, failed, skipped and total counts
        """
        summary = PassSummary(name='content_hash')
        start = time.monotonic()

        photos = self.store.photos_for_content_hash(offset=offset, limit=limit, rehash=rehash)
        summary.counts.update(total=len(photos), hashed=0, failed=0, skipped=0)
        logger.info("Found %d photos to content-hash", len(photos))

        with ProgressTracker(len(photos), "Content hashing", logger,
                             every=self.progress_every,
                             interval_seconds=self.progress_interval_seconds,
                             show_bar=self.show_progress_bars) as progress:
            for photo in photos:
                found = 0
                try:
                    digest = self.hash_photo(photo)
                    self.store.set_content_hash(photo.id, digest)
                    summary.increment('hashed')
                    found = 1
                except MissingFileError as e:
                    logger.debug("%s", e)
                    summary.increment('skipped')
                except (HashComputeError, StoreWriteError) as e:
                    logger.warning("%s", e)
                    summary.increment('failed')
                progress.update(found=found)

        summary.elapsed_seconds = time.monotonic() - start
        logger.info("Hashed %d photos (%d failed, %d skipped)",
                    summary.get('hashed'), summary.get('failed'), summary.get('skipped'))
        return summary
