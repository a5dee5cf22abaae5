# core/duplicate_detection.py

import logging
import time
from collections import defaultdict
from typing import List, Optional, Tuple

from components.quarantine_manager import QuarantineManager
from core.database import PhotoStore
from core.errors import StoreWriteError
from core.hash_index import BruteForceIndex, CandidateIndex
from core.models import DuplicateGroup, PassSummary, PhotoAsset, canonical_sort_key
from core.perceptual_hasher import hamming_distance
from utils.logging_config import log_operation
from utils.progress import ProgressTracker

logger = logging.getLogger(__name__)


class ExactDuplicateGrouper:
    """
    Groups photos whose content hashes are identical
    """

    def __init__(self, store: PhotoStore):
        self.store = store

    def find_groups(self, photos: List[PhotoAsset]) -> List[DuplicateGroup]:
        """
        Partition photos by content hash; partitions of two or more are groups.

        Photos without a hash are left out. Groups are numbered in hash
        order and their members listed canonical first.

        Time Complexity: O(n log n)
        """
        by_hash = defaultdict(list)
        for photo in photos:
            if photo.content_hash:
                by_hash[photo.content_hash].append(photo)

        groups = []
        for content_hash in sorted(by_hash):
            members = by_hash[content_hash]
            if len(members) < 2:
                continue
            members = sorted(members, key=canonical_sort_key)
            groups.append(DuplicateGroup(group_id=len(groups) + 1, members=members, kind='exact'))

        return groups

    def run(self) -> PassSummary:
        """Rebuild all exact-duplicate assignments from scratch"""
        summary = PassSummary(name='exact_duplicates')
        start = time.monotonic()

        photos = self.store.photos_with_content_hash()
        groups = self.find_groups(photos)

        self.store.clear_duplicates('exact')

        summary.counts.update(candidates=len(photos), groups=len(groups),
                              duplicates=0, errors=0)
        for group in groups:
            canonical = group.canonical
            for member in group.members:
                try:
                    self.store.assign_duplicate_group(member.id, group.group_id)
                    if member.id != canonical.id:
                        self.store.mark_duplicate(member.id, canonical.id, 'exact')
                        summary.increment('duplicates')
                except StoreWriteError as e:
                    logger.warning("Could not record photo %d in group %d: %s",
                                   member.id, group.group_id, e)
                    summary.increment('errors')

        summary.groups = groups
        summary.elapsed_seconds = time.monotonic() - start
        logger.info("Found %d exact duplicate groups.", len(groups))
        log_operation(logger, 'exact_duplicates', **summary.to_dict())
        return summary


class NearDuplicateGrouper:
    """
    Groups photos whose perceptual hashes lie within a Hamming threshold.

    Candidates are walked in ascending id order. Each still-unassigned photo
    anchors a new group and pulls in every later unassigned photo within the
    threshold of the anchor. This is single-link clustering around the first
    seen item, not a transitive closure: if Q is close to P and R is close
    to Q but not to P, R does not join P's group.
    """

    def __init__(self, store: PhotoStore,
                 hash_threshold: int = 8,
                 quarantine: Optional[QuarantineManager] = None,
                 move_files: bool = True,
                 index: Optional[CandidateIndex] = None,
                 progress_every: int = 50,
                 progress_interval_seconds: float = 5.0,
                 show_progress_bars: bool = True):
        self.store = store
        self.hash_threshold = hash_threshold
        self.quarantine = quarantine
        self.move_files = move_files
        self.index = index or BruteForceIndex()
        self.progress_every = progress_every
        self.progress_interval_seconds = progress_interval_seconds
        self.show_progress_bars = show_progress_bars

    def find_groups(self, photos: List[PhotoAsset]) -> Tuple[List[DuplicateGroup], int]:
        """
        Group photos by perceptual hash distance.

        Returns:
            (groups, number of hash comparisons made)
        """
        photos = sorted((p for p in photos if p.perceptual_hash), key=lambda p: p.id)
        hashes = [p.perceptual_hash for p in photos]
        self.index.build(hashes, self.hash_threshold)

        assigned = set()
        groups = []
        comparisons = 0

        with ProgressTracker(len(photos), "Near-duplicate comparison", logger,
                             every=self.progress_every,
                             interval_seconds=self.progress_interval_seconds,
                             show_bar=self.show_progress_bars) as progress:
            for i, anchor in enumerate(photos):
                if i in assigned:
                    progress.update()
                    continue

                assigned.add(i)
                members = [anchor]

                for j in self.index.candidates(i):
                    if j <= i or j in assigned:
                        continue
                    comparisons += 1
                    distance = hamming_distance(hashes[i], hashes[j])
                    if distance <= self.hash_threshold:
                        members.append(photos[j])
                        assigned.add(j)
                        logger.debug("Duplicate found: %s matches %s (distance: %d)",
                                     photos[j].file_name, anchor.file_name, distance)

                if len(members) > 1:
                    groups.append(DuplicateGroup(group_id=len(groups) + 1,
                                                 members=members, kind='near'))
                progress.update(found=len(members) - 1)

        return groups, comparisons

    def reset(self):
        """Clear prior near-duplicate flags; quarantined files stay where they are"""
        self.store.clear_duplicates('near')

    def run(self, dry_run: bool = False) -> PassSummary:
        """
        Find near-duplicate groups and demote non-canonical members.

        Args:
            dry_run: Compute and report groups without moving files or
                     writing to the store
        """
        summary = PassSummary(name='near_duplicates', dry_run=dry_run)
        start = time.monotonic()

        photos = self.store.near_duplicate_candidates()
        logger.info("Comparing %d photos for duplicates (threshold: %d)",
                    len(photos), self.hash_threshold)

        groups, comparisons = self.find_groups(photos)
        duplicates_found = sum(len(g.members) - 1 for g in groups)
        summary.counts.update(candidates=len(photos), comparisons=comparisons,
                              groups=len(groups), duplicates_found=duplicates_found,
                              duplicates_moved=0, duplicates_flagged=0, errors=0)
        logger.info("Found %d duplicates in %d groups", duplicates_found, len(groups))

        if not dry_run:
            first_id = self.store.next_near_group_id()
            for group in groups:
                group.group_id += first_id - 1

        for group in groups:
            canonical = group.canonical
            logger.info("Original: %s (id: %d)", canonical.file_name, canonical.id)
            for dupe in group.duplicates:
                if dry_run:
                    logger.info("  [DRY RUN] Would demote: %s (id: %d)", dupe.file_name, dupe.id)
                    continue
                self._demote(dupe, canonical, group.group_id, summary)

        summary.groups = groups
        summary.elapsed_seconds = time.monotonic() - start
        if dry_run:
            logger.info("[DRY RUN] No files were moved and no records were written.")
        log_operation(logger, 'near_duplicates', **summary.to_dict())
        return summary

    def _demote(self, dupe: PhotoAsset, canonical: PhotoAsset, group_id: int,
                summary: PassSummary):
        new_path = None
        if self.move_files and self.quarantine is not None:
            if self.quarantine.contains(dupe.file_path):
                logger.info("%s is already quarantined, leaving it in place", dupe.file_name)
            else:
                try:
                    new_path = str(self.quarantine.quarantine(dupe.file_path))
                    summary.increment('duplicates_moved')
                except OSError as e:
                    logger.error("Error moving %s: %s", dupe.file_name, e)
                    summary.increment('errors')
                    return

        try:
            with self.store.transaction():
                self.store.mark_duplicate(dupe.id, canonical.id, 'near', new_path)
                self.store.assign_near_group(dupe.id, group_id)
            summary.increment('duplicates_flagged')
        except StoreWriteError as e:
            logger.error("Could not flag photo %d: %s", dupe.id, e)
            summary.increment('errors')
