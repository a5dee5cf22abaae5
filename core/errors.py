# core/errors.py


class PhotoEngineError(Exception):
    """Base class for grouping engine errors"""


class MissingFileError(PhotoEngineError):
    """Photo path not found on disk"""

    def __init__(self, photo_id: int, path: str):
        super().__init__(f"File not found for photo {photo_id}: {path}")
        self.photo_id = photo_id
        self.path = path


class HashComputeError(PhotoEngineError):
    """Content or perceptual hash could not be computed"""

    def __init__(self, photo_id: int, reason: str):
        super().__init__(f"Hash failed for photo {photo_id}: {reason}")
        self.photo_id = photo_id
        self.reason = reason


class InferenceError(PhotoEngineError):
    """Face detection or recognition failed for one image"""


class StoreWriteError(PhotoEngineError):
    """A write to the photo store failed"""


class SchemaVersionError(PhotoEngineError):
    """The database schema version does not match the engine's contract"""

    def __init__(self, found: int, expected: int):
        super().__init__(
            f"Database schema version {found} does not match expected {expected}; "
            f"run migrations before using this store"
        )
        self.found = found
        self.expected = expected
