# core/models.py

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import numpy as np


@dataclass
class PhotoAsset:
    """A photo row as the grouping passes see it"""
    id: int
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    content_hash: Optional[str] = None
    perceptual_hash: Optional[str] = None
    taken_at: Optional[datetime] = None
    width: Optional[int] = None
    height: Optional[int] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    duplicate_group_id: Optional[int] = None
    near_group_id: Optional[int] = None
    burst_group_id: Optional[int] = None
    is_duplicate: bool = False
    duplicate_of: Optional[int] = None
    duplicate_kind: Optional[str] = None
    face_scan_status: Optional[str] = None

    @property
    def has_gps(self) -> bool:
        return self.gps_lat is not None and self.gps_lng is not None

    @property
    def same_dimensions_key(self) -> Optional[Tuple[int, int]]:
        if self.width is None or self.height is None:
            return None
        return (self.width, self.height)


def canonical_sort_key(photo: PhotoAsset):
    """Earliest capture date first, undated photos last, then lowest id"""
    return (photo.taken_at is None, photo.taken_at or datetime.min, photo.id)


@dataclass
class DuplicateGroup:
    """Photos judged to be copies of one original"""
    group_id: int
    members: List[PhotoAsset]
    kind: str = 'exact'

    @property
    def canonical(self) -> PhotoAsset:
        return min(self.members, key=canonical_sort_key)

    @property
    def duplicates(self) -> List[PhotoAsset]:
        canonical = self.canonical
        return [p for p in self.members if p.id != canonical.id]

    @property
    def member_ids(self) -> List[int]:
        return [p.id for p in self.members]


@dataclass
class BurstGroup:
    """A run of near-simultaneous, same-resolution shots"""
    group_id: int
    members: List[PhotoAsset]

    @property
    def member_ids(self) -> List[int]:
        return [p.id for p in self.members]


@dataclass
class Event:
    """A cluster of photos from one real-world occasion"""
    start: datetime
    end: datetime
    photo_ids: List[int]
    cover_photo_id: int
    center_lat: Optional[float] = None
    center_lng: Optional[float] = None
    id: Optional[int] = None
    title: Optional[str] = None
    narrative: Optional[str] = None
    location_label: Optional[str] = None

    @property
    def photo_count(self) -> int:
        return len(self.photo_ids)


@dataclass
class FaceDetection:
    """A detected face with its embedding and optional identity"""
    photo_id: int
    bbox: Tuple[float, float, float, float]  # x, y, width, height in [0, 1]
    confidence: float
    embedding: np.ndarray
    id: Optional[int] = None
    person_id: Optional[int] = None
    similarity: Optional[float] = None


@dataclass
class ReferenceEmbedding:
    """A known face embedding tied to an identity"""
    id: int
    person_id: int
    embedding: np.ndarray
    face_id: Optional[int] = None


@dataclass
class Identity:
    """A known person"""
    id: int
    name: str
    representative_photo_id: Optional[int] = None
    face_count: int = 0


@dataclass
class PassSummary:
    """Final counters of one batch pass"""
    name: str
    counts: Dict[str, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0
    dry_run: bool = False
    groups: List = field(default_factory=list)

    def increment(self, key: str, amount: int = 1):
        self.counts[key] = self.counts.get(key, 0) + amount

    def get(self, key: str) -> int:
        return self.counts.get(key, 0)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'elapsed_seconds': round(self.elapsed_seconds, 3),
            'dry_run': self.dry_run,
            **self.counts
        }
