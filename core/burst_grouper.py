# core/burst_grouper.py

import logging
import time
from typing import List

from core.database import PhotoStore
from core.errors import StoreWriteError
from core.models import BurstGroup, PassSummary, PhotoAsset
from utils.logging_config import log_operation

logger = logging.getLogger(__name__)


def _continues_burst(prev: PhotoAsset, curr: PhotoAsset, time_gap_ms: int) -> bool:
    gap_ms = (curr.taken_at - prev.taken_at).total_seconds() * 1000
    if gap_ms > time_gap_ms:
        return False
    dims = prev.same_dimensions_key
    return dims is not None and dims == curr.same_dimensions_key


class BurstGrouper:
    """
    Groups rapid-fire shots: consecutive photos taken within a short gap
    at exactly the same resolution.
    """

    def __init__(self, store: PhotoStore, time_gap_ms: int = 2000):
        self.store = store
        self.time_gap_ms = time_gap_ms

    def find_groups(self, photos: List[PhotoAsset]) -> List[BurstGroup]:
        """
        Walk photos in capture order, splitting runs on a long gap or a
        resolution change. Runs of two or more photos become groups.
        """
        photos = sorted((p for p in photos if p.taken_at is not None),
                        key=lambda p: (p.taken_at, p.id))
        groups = []
        run: List[PhotoAsset] = []

        for photo in photos:
            if run and _continues_burst(run[-1], photo, self.time_gap_ms):
                run.append(photo)
                continue
            if len(run) >= 2:
                groups.append(BurstGroup(group_id=len(groups) + 1, members=run))
            run = [photo]

        if len(run) >= 2:
            groups.append(BurstGroup(group_id=len(groups) + 1, members=run))

        return groups

    def run(self) -> PassSummary:
        """Rebuild all burst assignments from scratch"""
        summary = PassSummary(name='bursts')
        start = time.monotonic()

        photos = self.store.photos_with_timestamp()
        groups = self.find_groups(photos)

        self.store.clear_bursts()

        summary.counts.update(candidates=len(photos), groups=len(groups),
                              photos_grouped=0, errors=0)
        for group in groups:
            for member in group.members:
                try:
                    self.store.assign_burst_group(member.id, group.group_id)
                    summary.increment('photos_grouped')
                except StoreWriteError as e:
                    logger.warning("Could not record photo %d in burst %d: %s",
                                   member.id, group.group_id, e)
                    summary.increment('errors')

        summary.groups = groups
        summary.elapsed_seconds = time.monotonic() - start
        logger.info("Found %d burst groups.", len(groups))
        log_operation(logger, 'bursts', **summary.to_dict())
        return summary
