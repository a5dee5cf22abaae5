# core/event_clusterer.py

import logging
import time
from datetime import datetime, timedelta
from typing import List, Sequence, Tuple

from core.database import PhotoStore
from core.errors import StoreWriteError
from core.models import Event, PassSummary, PhotoAsset
from utils.geo import centroid, haversine_km
from utils.logging_config import log_operation

logger = logging.getLogger(__name__)

Interval = Tuple[datetime, datetime]


def intervals_overlap(a: Interval, b: Interval) -> bool:
    """
    Half-open intersection test.

    A zero-length interval is a single instant; it overlaps any interval
    that contains it, end points included.
    """
    a_start, a_end = a
    b_start, b_end = b
    if a_start == a_end or b_start == b_end:
        return a_start <= b_end and b_start <= a_end
    return a_start < b_end and b_start < a_end


def cluster(photos: Sequence[PhotoAsset], time_gap: timedelta,
            distance_km: float) -> List[List[PhotoAsset]]:
    """
    Split time-ordered photos into clusters.

    A photo joins the current cluster when it follows the previous photo
    within time_gap and, if both carry GPS, lies within distance_km of it.
    """
    clusters = []
    current: List[PhotoAsset] = []

    for photo in photos:
        if current:
            prev = current[-1]
            close_in_time = photo.taken_at - prev.taken_at <= time_gap
            close_in_space = True
            if prev.has_gps and photo.has_gps:
                distance = haversine_km(prev.gps_lat, prev.gps_lng,
                                        photo.gps_lat, photo.gps_lng)
                close_in_space = distance <= distance_km
            if not (close_in_time and close_in_space):
                clusters.append(current)
                current = []
        current.append(photo)

    if current:
        clusters.append(current)
    return clusters


def split_chunks(members: List[PhotoAsset], min_photos: int,
                 max_photos: int) -> List[List[PhotoAsset]]:
    """Cut an oversized cluster into consecutive chunks; short chunks are dropped"""
    if len(members) < min_photos:
        return []
    if len(members) <= max_photos:
        return [members]
    chunks = [members[i:i + max_photos] for i in range(0, len(members), max_photos)]
    return [chunk for chunk in chunks if len(chunk) >= min_photos]


def build_event(members: List[PhotoAsset]) -> Event:
    """Event covering time-ordered members; centroid over members with GPS"""
    lat, lng = centroid((p.gps_lat, p.gps_lng) for p in members if p.has_gps)
    return Event(
        start=members[0].taken_at,
        end=members[-1].taken_at,
        photo_ids=[p.id for p in members],
        cover_photo_id=members[0].id,
        center_lat=lat,
        center_lng=lng,
    )


class EventClusterer:
    """
    Clusters dated photos into events by time and location gaps
    """

    def __init__(self, store: PhotoStore,
                 time_gap_hours: float = 3.0,
                 distance_km: float = 30.0,
                 min_photos: int = 3,
                 max_photos_per_event: int = 200):
        if max_photos_per_event < min_photos:
            raise ValueError("max_photos_per_event must be at least min_photos")
        self.store = store
        self.time_gap = timedelta(hours=time_gap_hours)
        self.distance_km = distance_km
        self.min_photos = min_photos
        self.max_photos_per_event = max_photos_per_event

    def candidate_events(self, photos: List[PhotoAsset]) -> List[Event]:
        photos = sorted((p for p in photos if p.taken_at is not None),
                        key=lambda p: (p.taken_at, p.id))
        events = []
        for members in cluster(photos, self.time_gap, self.distance_km):
            for chunk in split_chunks(members, self.min_photos, self.max_photos_per_event):
                events.append(build_event(chunk))
        return events

    def generate_events(self) -> PassSummary:
        """
        Create events for clusters that do not overlap a stored event.

        Each event is written in its own transaction; a failed write is
        counted and the pass carries on.
        """
        summary = PassSummary(name='events')
        start = time.monotonic()
        self._store_events(summary, self.store.event_intervals(), abort_on_error=False)
        summary.elapsed_seconds = time.monotonic() - start
        log_operation(logger, 'events', **summary.to_dict())
        return summary

    def regenerate_events(self) -> PassSummary:
        """
        Delete every event and cluster again, all in one transaction.

        Any failure rolls the store back to its previous events and is
        re-raised.
        """
        summary = PassSummary(name='regenerate_events')
        start = time.monotonic()
        with self.store.transaction():
            self.store.delete_all_events()
            self._store_events(summary, [], abort_on_error=True)
        summary.elapsed_seconds = time.monotonic() - start
        log_operation(logger, 'regenerate_events', **summary.to_dict())
        return summary

    def _store_events(self, summary: PassSummary, existing: List[Interval],
                      abort_on_error: bool):
        photos = self.store.photos_with_timestamp()
        candidates = self.candidate_events(photos)
        summary.counts.update(photos=len(photos), candidates=len(candidates),
                              created=0, skipped=0, errors=0)
        logger.info("Clustered %d dated photos into %d candidate events",
                    len(photos), len(candidates))

        for event in candidates:
            interval = (event.start, event.end)
            if any(intervals_overlap(interval, other) for other in existing):
                summary.increment('skipped')
                continue
            try:
                self.store.insert_event(event)
            except StoreWriteError as e:
                if abort_on_error:
                    raise
                logger.error("Failed to create event starting %s: %s", event.start, e)
                summary.increment('errors')
                continue
            summary.increment('created')
            summary.groups.append(event)

        logger.info("Events: %d created, %d skipped", summary.get('created'),
                    summary.get('skipped'))
