# core/face_matcher.py

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from core.database import PhotoStore
from core.errors import InferenceError, StoreWriteError
from core.face_detection import iou
from core.models import FaceDetection, PassSummary, PhotoAsset, ReferenceEmbedding
from utils.file_utils import resolve_photo_path
from utils.logging_config import log_operation
from utils.progress import ProgressTracker

logger = logging.getLogger(__name__)

# Overlap at which a rescanned face is taken to be an already kept face
SAME_FACE_IOU = 0.5


@dataclass
class FaceMatch:
    person_id: int
    reference_id: int
    similarity: float


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


class FaceEmbeddingMatcher:
    """
    Nearest reference embedding by cosine similarity.

    Equal similarities resolve to the lowest reference id, so results do
    not depend on the order references were loaded in.
    """

    def __init__(self, references: List[ReferenceEmbedding], match_threshold: float = 0.45):
        self.references = sorted(references, key=lambda r: r.id)
        self.match_threshold = match_threshold

    def best_match(self, embedding: np.ndarray) -> Optional[FaceMatch]:
        """Best reference above the threshold, or None"""
        best = None
        for ref in self.references:
            similarity = cosine_similarity(embedding, ref.embedding)
            if best is None or similarity > best.similarity:
                best = FaceMatch(ref.person_id, ref.id, similarity)

        if best is None or not best.similarity > self.match_threshold:
            return None
        return best


def keep_strongest_per_identity(faces: List[FaceDetection]) -> List[FaceDetection]:
    """
    Within one photo, leave each identity on its highest-similarity face
    only; weaker faces of the same identity become unidentified.
    """
    strongest: Dict[int, FaceDetection] = {}
    for face in faces:
        if face.person_id is None:
            continue
        current = strongest.get(face.person_id)
        if current is None or face.similarity > current.similarity:
            strongest[face.person_id] = face

    for face in faces:
        if face.person_id is not None and strongest[face.person_id] is not face:
            face.person_id = None
            face.similarity = None
    return faces


def _corners(bbox):
    x, y, w, h = bbox
    return (x, y, x + w, y + h)


def drop_kept_faces(faces: List[FaceDetection], kept: List[FaceDetection]) -> List[FaceDetection]:
    """Faces that do not overlap any face kept from an earlier scan"""
    return [face for face in faces
            if not any(iou(_corners(face.bbox), _corners(k.bbox)) > SAME_FACE_IOU for k in kept)]


class FaceScanner:
    """
    Detects faces in photos, stores them and resolves known identities
    """

    def __init__(self, store: PhotoStore, detector,
                 match_threshold: float = 0.45,
                 exclusive_per_photo: bool = False,
                 excluded_folders=(),
                 progress_every: int = 25,
                 progress_interval_seconds: float = 5.0,
                 show_progress_bars: bool = True):
        self.store = store
        self.detector = detector
        self.match_threshold = match_threshold
        self.exclusive_per_photo = exclusive_per_photo
        self.excluded_folders = tuple(excluded_folders)
        self.progress_every = progress_every
        self.progress_interval_seconds = progress_interval_seconds
        self.show_progress_bars = show_progress_bars

    def scan_faces(self, offset: int = 0, limit: int = 0, rescan: bool = False) -> PassSummary:
        """
        Scan non-duplicate photos for faces.

        Args:
            offset: Skip this many candidate photos
            limit: Process at most this many photos (0 = no limit)
            rescan: Scan photos that already have a scan status

        Returns:
            PassSummary with processed, no_faces, skipped, errors,
            faces_found and faces_matched counts
        """
        summary = PassSummary(name='face_scan')
        start = time.monotonic()
        summary.counts.update(total=0, processed=0, no_faces=0, skipped=0, errors=0,
                              faces_found=0, faces_matched=0)

        job_id = self.store.create_face_job()
        try:
            if hasattr(self.detector, 'load'):
                self.detector.load()

            matcher = FaceEmbeddingMatcher(self.store.reference_embeddings(), self.match_threshold)
            logger.info("Loaded %d reference embeddings", len(matcher.references))

            photos = self.store.photos_for_face_scan(offset=offset, limit=limit, rescan=rescan)
            summary.counts['total'] = len(photos)
            logger.info("Found %d photos to scan", len(photos))

            with ProgressTracker(len(photos), "Face scan", logger,
                                 every=self.progress_every,
                                 interval_seconds=self.progress_interval_seconds,
                                 show_bar=self.show_progress_bars) as progress:
                for n, photo in enumerate(photos, 1):
                    found = self._scan_photo(photo, matcher, rescan, summary)
                    progress.update(found=found)
                    if n % self.progress_every == 0:
                        self._record_progress(job_id, summary)

            self.store.refresh_identity_stats()
            self.store.update_face_job(job_id, summary.get('processed'),
                                       summary.get('faces_found'), status='complete')
        except Exception:
            self.store.update_face_job(job_id, summary.get('processed'),
                                       summary.get('faces_found'), status='failed')
            raise

        summary.elapsed_seconds = time.monotonic() - start
        logger.info("Scan complete: %d processed, %d faces (%d matched), %d skipped, %d errors",
                    summary.get('processed'), summary.get('faces_found'),
                    summary.get('faces_matched'), summary.get('skipped'), summary.get('errors'))
        log_operation(logger, 'face_scan', job_id=job_id, **summary.to_dict())
        return summary

    def _record_progress(self, job_id: int, summary: PassSummary):
        try:
            self.store.update_face_job(job_id, summary.get('processed'),
                                       summary.get('faces_found'))
        except StoreWriteError as e:
            logger.warning("Could not update face job %d: %s", job_id, e)

    def _scan_photo(self, photo: PhotoAsset, matcher: FaceEmbeddingMatcher,
                    rescan: bool, summary: PassSummary) -> int:
        path = resolve_photo_path(photo.file_path, self.excluded_folders)
        if path is None:
            logger.debug("File not found, skipping photo %d", photo.id)
            summary.increment('skipped')
            return 0

        try:
            detected = self.detector.detect(str(path))
        except InferenceError as e:
            logger.error("Error processing photo %d: %s", photo.id, e)
            summary.increment('errors')
            return 0

        faces = []
        for det in detected:
            match = matcher.best_match(det.embedding)
            faces.append(FaceDetection(
                photo_id=photo.id,
                bbox=tuple(det.bbox),
                confidence=det.confidence,
                embedding=det.embedding,
                person_id=match.person_id if match else None,
                similarity=match.similarity if match else None,
            ))
        if self.exclusive_per_photo:
            keep_strongest_per_identity(faces)

        try:
            with self.store.transaction():
                kept = []
                if rescan:
                    kept = self.store.delete_faces_for_photo(photo.id)
                    faces = drop_kept_faces(faces, kept)
                for face in faces:
                    self.store.insert_face(face)
                    if face.person_id is not None:
                        self.store.link_photo_person(photo.id, face.person_id)
                faces = kept + faces
                self.store.set_face_scan_status(photo.id, 'scanned' if faces else 'no_faces')
        except StoreWriteError as e:
            logger.error("Could not store faces for photo %d: %s", photo.id, e)
            summary.increment('errors')
            return 0

        summary.increment('processed')
        if not faces:
            summary.increment('no_faces')
        summary.increment('faces_found', len(faces))
        matched = sum(1 for f in faces if f.person_id is not None)
        summary.increment('faces_matched', matched)
        return len(faces)


def add_reference_face(store: PhotoStore, person_id: int, face_id: int) -> int:
    """Promote a stored face to a reference embedding of a person"""
    face = store.get_face(face_id)
    if face is None:
        raise ValueError(f"No face with id {face_id}")
    if store.get_person(person_id) is None:
        raise ValueError(f"No person with id {person_id}")

    with store.transaction():
        ref_id = store.add_reference_embedding(person_id, face.embedding, face_id)
        store.set_face_identity(face_id, person_id, 1.0)
        store.link_photo_person(face.photo_id, person_id)
    logger.info("Face %d added as reference for person %d", face_id, person_id)
    return ref_id
