# core/perceptual_hasher.py

import imagehash
import logging
import math
import time
from PIL import Image
from typing import Iterable, Optional

from core.database import PhotoStore
from core.errors import HashComputeError, MissingFileError, StoreWriteError
from core.models import PassSummary, PhotoAsset
from utils.file_utils import resolve_photo_path
from utils.image_utils import load_image
from utils.progress import ProgressTracker

logger = logging.getLogger(__name__)


def hamming_distance(hash1: Optional[str], hash2: Optional[str]) -> float:
    """
    Count of differing bits between two hex-encoded square hashes.

    Missing hashes or hashes of different length are infinitely far apart.
    """
    if not hash1 or not hash2 or len(hash1) != len(hash2):
        return math.inf
    return int(imagehash.hex_to_hash(hash1) - imagehash.hex_to_hash(hash2))


class PerceptualHasher:
    """
    Computes pHash fingerprints that survive resizing and recompression
    """

    def __init__(self, store: PhotoStore,
                 hash_size: int = 16,
                 max_image_dimension: int = 1000,
                 excluded_folders: Iterable[str] = (),
                 progress_every: int = 50,
                 progress_interval_seconds: float = 5.0,
                 show_progress_bars: bool = True):
        self.store = store
        self.hash_size = hash_size
        self.max_image_dimension = max_image_dimension
        self.excluded_folders = tuple(excluded_folders)
        self.progress_every = progress_every
        self.progress_interval_seconds = progress_interval_seconds
        self.show_progress_bars = show_progress_bars

    def compute_hash(self, image_path: str) -> str:
        """pHash of one image file as a hex string (hash_size**2 bits)"""
        img = load_image(image_path, self.max_image_dimension)
        return str(imagehash.phash(img, hash_size=self.hash_size))

    def hash_photo(self, photo: PhotoAsset) -> str:
        path = resolve_photo_path(photo.file_path, self.excluded_folders)
        if path is None:
            raise MissingFileError(photo.id, photo.file_path)
        try:
            return self.compute_hash(str(path))
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise HashComputeError(photo.id, str(e)) from e

    def compute_hashes(self, offset: int = 0, limit: int = 0,
                       rehash: bool = False) -> PassSummary:
        """
        Hash non-duplicate photos that lack a perceptual hash.

        Args:
            offset: Skip this many candidate photos (for resuming)
            limit: Process at most this many photos (0 = no limit)
            rehash: Recalculate hashes even if already computed
        """
        summary = PassSummary(name='perceptual_hash')
        start = time.monotonic()

        photos = self.store.photos_for_perceptual_hash(offset=offset, limit=limit,
                                                       rehash=rehash)
        summary.counts.update(total=len(photos), processed=0, hashed=0, errors=0, skipped=0)
        logger.info("Found %d photos to hash", len(photos))

        if not photos:
            logger.info("No photos need hashing. Use rehash=True to recalculate all hashes.")

        with ProgressTracker(len(photos), "Perceptual hashing", logger,
                             every=self.progress_every,
                             interval_seconds=self.progress_interval_seconds,
                             show_bar=self.show_progress_bars) as progress:
            for photo in photos:
                found = 0
                try:
                    phash = self.hash_photo(photo)
                    self.store.set_perceptual_hash(photo.id, phash)
                    summary.increment('hashed')
                    summary.increment('processed')
                    found = 1
                except MissingFileError as e:
                    logger.debug("%s", e)
                    summary.increment('skipped')
                except (HashComputeError, StoreWriteError) as e:
                    logger.warning("%s", e)
                    summary.increment('errors')
                    summary.increment('processed')
                progress.update(found=found)

        summary.elapsed_seconds = time.monotonic() - start
        logger.info("Hashing complete: %d hashed, %d errors, %d skipped",
                    summary.get('hashed'), summary.get('errors'), summary.get('skipped'))
        return summary
