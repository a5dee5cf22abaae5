# core/group_queries.py

import logging
from typing import Dict, List, Optional

from core.cache import TTLCache
from core.database import PhotoStore
from core.models import BurstGroup, DuplicateGroup, canonical_sort_key

logger = logging.getLogger(__name__)


class GroupQueryService:
    """
    Read-side access to stored duplicate and burst groups.

    Results are held in the supplied cache; call invalidate() after a
    grouping pass rewrites assignments.
    """

    def __init__(self, store: PhotoStore, cache: Optional[TTLCache] = None):
        self.store = store
        self.cache = cache or TTLCache()

    def get_duplicate_groups(self) -> List[DuplicateGroup]:
        return self.cache.get_or_compute('duplicate_groups', self._load_duplicate_groups)

    def get_burst_groups(self) -> List[BurstGroup]:
        return self.cache.get_or_compute('burst_groups', self._load_burst_groups)

    def get_scan_stats(self) -> Dict[str, int]:
        return self.cache.get_or_compute('scan_stats', self.store.scan_stats)

    def invalidate(self):
        self.cache.invalidate()
        logger.debug("Group query cache cleared")

    def _load_duplicate_groups(self) -> List[DuplicateGroup]:
        """Exact groups, largest first, followed by near groups in id order"""
        groups = []
        for group_id, _ in self.store.group_sizes('duplicate_group_id'):
            members = sorted(self.store.photos_in_duplicate_group(group_id),
                             key=canonical_sort_key)
            groups.append(DuplicateGroup(group_id=group_id, members=members, kind='exact'))
        for group_id in self.store.near_group_ids():
            members = sorted(self.store.photos_in_near_group(group_id), key=canonical_sort_key)
            groups.append(DuplicateGroup(group_id=group_id, members=members, kind='near'))
        return groups

    def _load_burst_groups(self) -> List[BurstGroup]:
        groups = []
        for group_id, _ in self.store.group_sizes('burst_group_id'):
            members = self.store.photos_in_burst_group(group_id)
            members.sort(key=lambda p: (p.taken_at, p.id))
            groups.append(BurstGroup(group_id=group_id, members=members))
        return groups
