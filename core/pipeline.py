# core/pipeline.py

import logging
from typing import Dict, Optional

from components.narrative_payload import NarrativePayloadBuilder
from components.quarantine_manager import QuarantineManager
from config import SystemConfig
from core.burst_grouper import BurstGrouper
from core.cache import TTLCache
from core.content_hasher import ContentHasher
from core.database import PhotoStore
from core.duplicate_detection import ExactDuplicateGrouper, NearDuplicateGrouper
from core.event_clusterer import EventClusterer
from core.face_detection import FaceDetector
from core.face_matcher import FaceScanner
from core.group_queries import GroupQueryService
from core.hash_index import create_candidate_index
from core.models import PassSummary
from core.perceptual_hasher import PerceptualHasher
from utils.logging_config import log_operation, setup_logging
from utils.report_generator import DuplicateReportGenerator

logger = logging.getLogger(__name__)


class PhotoEngine:
    """
    Wires the grouping passes to one store using a SystemConfig
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 store: Optional[PhotoStore] = None,
                 detector=None):
        self.config = config or SystemConfig()
        self.store = store or PhotoStore(self.config.database_path)
        self._detector = detector
        self.queries = GroupQueryService(
            self.store,
            TTLCache(self.config.cache.ttl_seconds, self.config.cache.max_entries)
        )

    def _progress_kwargs(self) -> Dict:
        return dict(progress_every=self.config.progress_every,
                    progress_interval_seconds=self.config.progress_interval_seconds,
                    show_progress_bars=self.config.show_progress_bars)

    @property
    def detector(self):
        if self._detector is None:
            self._detector = FaceDetector.from_config(self.config.faces)
        return self._detector

    def compute_content_hashes(self, offset: int = 0, limit: int = 0,
                               rehash: bool = False) -> PassSummary:
        return ContentHasher(self.store, **self._progress_kwargs()).compute_hashes(
            offset=offset, limit=limit, rehash=rehash)

    def compute_perceptual_hashes(self, offset: int = 0, limit: int = 0,
                                  rehash: bool = False) -> PassSummary:
        hashing = self.config.hashing
        hasher = PerceptualHasher(self.store,
                                  hash_size=hashing.hash_size,
                                  max_image_dimension=hashing.max_image_dimension,
                                  excluded_folders=hashing.excluded_folders,
                                  **self._progress_kwargs())
        return hasher.compute_hashes(offset=offset, limit=limit, rehash=rehash)

    def group_exact_duplicates(self) -> PassSummary:
        summary = ExactDuplicateGrouper(self.store).run()
        self.queries.invalidate()
        return summary

    def group_bursts(self) -> PassSummary:
        summary = BurstGrouper(self.store, self.config.bursts.time_gap_ms).run()
        self.queries.invalidate()
        return summary

    def scan_all(self) -> Dict:
        """Content hashes, then exact duplicate groups, then bursts"""
        logger.info("Duplicate scan: computing hashes...")
        hashes = self.compute_content_hashes()
        logger.info("Duplicate scan: grouping exact duplicates...")
        exact = self.group_exact_duplicates()
        logger.info("Duplicate scan: grouping bursts...")
        bursts = self.group_bursts()

        result = {
            'hashed': hashes.get('hashed'),
            'hash_failed': hashes.get('failed'),
            'hash_skipped': hashes.get('skipped'),
            'hash_total': hashes.get('total'),
            'duplicate_groups': exact.get('groups'),
            'burst_groups': bursts.get('groups'),
        }
        log_operation(logger, 'scan_all', **result)
        return result

    def find_near_duplicates(self, dry_run: bool = False, reset: bool = False,
                             report_path: Optional[str] = None) -> PassSummary:
        """
        Group near-duplicates by perceptual hash.

        Args:
            dry_run: Report groups without moving or flagging anything
            reset: Clear earlier near-duplicate flags first
            report_path: Also write an HTML report of the groups here
        """
        settings = self.config.near_duplicates
        quarantine = QuarantineManager(self.config.quarantine_dir, self.config.photo_root)
        grouper = NearDuplicateGrouper(self.store,
                                       hash_threshold=settings.hash_threshold,
                                       quarantine=quarantine,
                                       move_files=settings.move_files,
                                       index=create_candidate_index(settings.index_type),
                                       **self._progress_kwargs())
        if reset and not dry_run:
            grouper.reset()

        summary = grouper.run(dry_run=dry_run)
        if report_path:
            DuplicateReportGenerator().generate_report(summary.groups, report_path, dry_run)
        if not dry_run:
            self.queries.invalidate()
        return summary

    def _event_clusterer(self) -> EventClusterer:
        events = self.config.events
        return EventClusterer(self.store,
                              time_gap_hours=events.time_gap_hours,
                              distance_km=events.distance_km,
                              min_photos=events.min_photos,
                              max_photos_per_event=events.max_photos_per_event)

    def generate_events(self) -> PassSummary:
        return self._event_clusterer().generate_events()

    def regenerate_events(self) -> PassSummary:
        return self._event_clusterer().regenerate_events()

    def narrative_payloads(self) -> NarrativePayloadBuilder:
        return NarrativePayloadBuilder(self.store, self.config.events.max_payloads_per_run)

    def scan_faces(self, offset: int = 0, limit: int = 0, rescan: bool = False) -> PassSummary:
        faces = self.config.faces
        scanner = FaceScanner(self.store, self.detector,
                              match_threshold=faces.match_threshold,
                              exclusive_per_photo=faces.exclusive_per_photo,
                              excluded_folders=self.config.hashing.excluded_folders,
                              **self._progress_kwargs())
        return scanner.scan_faces(offset=offset, limit=limit, rescan=rescan)

    def close(self):
        self.store.close()


def create_engine(config_path: str = "config.yaml") -> PhotoEngine:
    """Load configuration, install logging and open the store"""
    config = SystemConfig.load(config_path)
    setup_logging(config.log_level, config.log_dir)
    logger.info("Photo engine starting with database %s", config.database_path)
    return PhotoEngine(config)
