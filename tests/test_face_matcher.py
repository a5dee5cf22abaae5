# tests/test_face_matcher.py

import math
from types import SimpleNamespace

import numpy as np
import pytest
from onnxruntime.capi.onnxruntime_pybind11_state import InvalidArgument

from core.errors import InferenceError
from core.face_detection import DetectedFace, FaceDetector
from core.face_matcher import (FaceEmbeddingMatcher, FaceScanner, add_reference_face,
                               cosine_similarity, keep_strongest_per_identity)
from core.models import FaceDetection, ReferenceEmbedding


def unit(*components, dim=512):
    vector = np.zeros(dim, dtype=np.float32)
    vector[:len(components)] = components
    return vector / np.linalg.norm(vector)


def with_similarity(similarity):
    """Unit vector whose cosine with unit(1) is the given value"""
    return unit(similarity, math.sqrt(1 - similarity ** 2))


# ----------------------------------------------------------------------
# Matcher
# ----------------------------------------------------------------------

def test_identical_embedding_matches():
    matcher = FaceEmbeddingMatcher([ReferenceEmbedding(id=1, person_id=7, embedding=unit(1))])
    match = matcher.best_match(unit(1))
    assert match.person_id == 7
    assert match.similarity == pytest.approx(1.0)


def test_best_similarity_below_threshold_is_unmatched():
    matcher = FaceEmbeddingMatcher([ReferenceEmbedding(id=1, person_id=7, embedding=unit(1))])
    assert matcher.best_match(with_similarity(0.40)) is None


def test_similarity_equal_to_threshold_is_unmatched():
    probe = with_similarity(0.5)
    reference = ReferenceEmbedding(id=1, person_id=7, embedding=unit(1))
    threshold = cosine_similarity(probe, reference.embedding)

    assert FaceEmbeddingMatcher([reference], match_threshold=threshold).best_match(probe) is None


def test_tie_goes_to_lowest_reference_id():
    refs = [
        ReferenceEmbedding(id=5, person_id=50, embedding=unit(1)),
        ReferenceEmbedding(id=3, person_id=30, embedding=unit(1)),
    ]
    match = FaceEmbeddingMatcher(refs).best_match(unit(1))
    assert match.reference_id == 3
    assert match.person_id == 30


def test_best_of_several_references_wins():
    refs = [
        ReferenceEmbedding(id=1, person_id=10, embedding=unit(1)),
        ReferenceEmbedding(id=2, person_id=20, embedding=unit(0, 1)),
    ]
    match = FaceEmbeddingMatcher(refs).best_match(unit(0.2, 1))
    assert match.person_id == 20


def test_no_references_means_no_match():
    assert FaceEmbeddingMatcher([]).best_match(unit(1)) is None


def test_keep_strongest_per_identity():
    faces = [
        FaceDetection(photo_id=1, bbox=(0, 0, .1, .1), confidence=.9, embedding=unit(1),
                      person_id=4, similarity=0.6),
        FaceDetection(photo_id=1, bbox=(.5, .5, .1, .1), confidence=.9, embedding=unit(1),
                      person_id=4, similarity=0.8),
        FaceDetection(photo_id=1, bbox=(.2, .2, .1, .1), confidence=.9, embedding=unit(1),
                      person_id=5, similarity=0.5),
    ]
    keep_strongest_per_identity(faces)
    assert [f.person_id for f in faces] == [None, 4, 5]
    assert faces[0].similarity is None


# ----------------------------------------------------------------------
# Face scan pass
# ----------------------------------------------------------------------

class FakeDetector:
    def __init__(self, faces_by_name, failing=()):
        self.faces_by_name = faces_by_name
        self.failing = set(failing)
        self.loaded = False
        self.calls = []

    def load(self):
        self.loaded = True

    def detect(self, image_path):
        name = image_path.replace("\\", "/").rsplit("/", 1)[-1]
        self.calls.append(name)
        if name in self.failing:
            raise InferenceError(f"model failed on {name}")
        return self.faces_by_name.get(name, [])


def face(embedding, x=0.1, confidence=0.95):
    return DetectedFace(bbox=(x, 0.1, 0.2, 0.2), confidence=confidence, embedding=embedding)


@pytest.fixture
def library(store, tmp_path):
    paths = {}
    for name in ("group.jpg", "empty.jpg", "broken.jpg", "dupe.jpg"):
        path = tmp_path / name
        path.write_bytes(b"x")
        paths[name] = path
    ids = {name: store.add_photo(str(path)) for name, path in paths.items()}
    ids["missing.jpg"] = store.add_photo(str(tmp_path / "missing.jpg"))
    store.mark_duplicate(ids["dupe.jpg"], ids["group.jpg"], 'exact')
    return ids


def test_scan_faces_records_matches_and_statuses(store, library):
    ada = store.add_person("Ada")
    store.add_reference_embedding(ada, unit(1))
    detector = FakeDetector({
        "group.jpg": [face(unit(1)), face(unit(0, 1), x=0.5)],
    }, failing={"broken.jpg"})

    summary = FaceScanner(store, detector, show_progress_bars=False).scan_faces()

    assert detector.loaded
    assert "dupe.jpg" not in detector.calls
    assert summary.get('total') == 4
    assert summary.get('processed') == 2
    assert summary.get('no_faces') == 1
    assert summary.get('skipped') == 1
    assert summary.get('errors') == 1
    assert summary.get('faces_found') == 2
    assert summary.get('faces_matched') == 1

    faces = store.faces_for_photo(library["group.jpg"])
    assert [f.person_id for f in faces] == [ada, None]
    assert store.get_photo(library["group.jpg"]).face_scan_status == 'scanned'
    assert store.get_photo(library["empty.jpg"]).face_scan_status == 'no_faces'
    assert store.get_photo(library["broken.jpg"]).face_scan_status is None
    assert store.get_photo(library["missing.jpg"]).face_scan_status is None

    identity = store.get_person(ada)
    assert identity.face_count == 1
    assert identity.representative_photo_id == library["group.jpg"]


def test_scan_job_row_completes(store, library):
    summary = FaceScanner(store, FakeDetector({}), show_progress_bars=False).scan_faces()
    job = store.get_face_job(1)
    assert job['status'] == 'complete'
    assert job['photos_processed'] == summary.get('processed')


def test_scan_job_marked_failed_when_models_do_not_load(store, library):
    class BrokenDetector(FakeDetector):
        def load(self):
            raise FileNotFoundError("det_10g.onnx")

    with pytest.raises(FileNotFoundError):
        FaceScanner(store, BrokenDetector({}), show_progress_bars=False).scan_faces()
    assert store.get_face_job(1)['status'] == 'failed'


def test_scanned_photos_are_not_rescanned_unless_asked(store, library):
    detector = FakeDetector({"group.jpg": [face(unit(1))]})
    scanner = FaceScanner(store, detector, show_progress_bars=False)
    scanner.scan_faces()

    detector.calls.clear()
    scanner.scan_faces()
    assert "group.jpg" not in detector.calls

    scanner.scan_faces(rescan=True)
    assert "group.jpg" in detector.calls
    assert len(store.faces_for_photo(library["group.jpg"])) == 1


def test_same_identity_allowed_twice_by_default(store, library):
    ada = store.add_person("Ada")
    store.add_reference_embedding(ada, unit(1))
    detector = FakeDetector({"group.jpg": [face(unit(1)), face(with_similarity(0.9), x=0.5)]})

    FaceScanner(store, detector, show_progress_bars=False).scan_faces()

    faces = store.faces_for_photo(library["group.jpg"])
    assert [f.person_id for f in faces] == [ada, ada]


def test_exclusive_per_photo_keeps_strongest_face(store, library):
    ada = store.add_person("Ada")
    store.add_reference_embedding(ada, unit(1))
    detector = FakeDetector({"group.jpg": [face(with_similarity(0.9)), face(unit(1), x=0.5)]})

    FaceScanner(store, detector, exclusive_per_photo=True,
                show_progress_bars=False).scan_faces()

    faces = store.faces_for_photo(library["group.jpg"])
    assert [f.person_id for f in faces] == [None, ada]


def test_add_reference_face_promotes_stored_face(store, library):
    FaceScanner(store, FakeDetector({"group.jpg": [face(unit(1))]}),
                show_progress_bars=False).scan_faces()
    stored = store.faces_for_photo(library["group.jpg"])[0]
    ada = store.add_person("Ada")

    ref_id = add_reference_face(store, ada, stored.id)

    refs = store.reference_embeddings()
    assert [r.id for r in refs] == [ref_id]
    assert refs[0].face_id == stored.id
    assert store.get_face(stored.id).person_id == ada
    np.testing.assert_allclose(refs[0].embedding, stored.embedding)


def test_add_reference_face_rejects_unknown_face(store):
    ada = store.add_person("Ada")
    with pytest.raises(ValueError):
        add_reference_face(store, ada, 404)


class RejectingSession:
    def get_inputs(self):
        return [SimpleNamespace(name="input.1")]

    def run(self, output_names, feeds):
        raise InvalidArgument("[ONNXRuntimeError] : 2 : INVALID_ARGUMENT : bad input")


def test_model_errors_are_counted_per_photo(store, write_image):
    for name in ("a.png", "b.png"):
        store.add_photo(str(write_image(name)))
    detector = FaceDetector(input_size=64)
    detector._detection_session = RejectingSession()
    detector._recognition_session = RejectingSession()

    summary = FaceScanner(store, detector, show_progress_bars=False).scan_faces()

    assert summary.get('errors') == 2
    assert summary.get('processed') == 0
    assert store.get_face_job(1)['status'] == 'complete'


def test_rescan_keeps_reference_face_without_duplicating_it(store, library):
    detector = FakeDetector({"group.jpg": [face(unit(1))]})
    scanner = FaceScanner(store, detector, show_progress_bars=False)
    scanner.scan_faces()
    stored = store.faces_for_photo(library["group.jpg"])[0]
    ada = store.add_person("Ada")
    add_reference_face(store, ada, stored.id)

    detector.faces_by_name["group.jpg"] = [face(unit(1)), face(unit(0, 1), x=0.6)]
    scanner.scan_faces(rescan=True)

    faces = store.faces_for_photo(library["group.jpg"])
    assert len(faces) == 2
    assert faces[0].id == stored.id
    assert faces[0].person_id == ada
    assert store.people_in_photo(library["group.jpg"]) == [ada]


def test_rescan_drops_stale_person_links(store, library):
    ada = store.add_person("Ada")
    store.add_reference_embedding(ada, unit(1))
    detector = FakeDetector({"group.jpg": [face(unit(1))]})
    scanner = FaceScanner(store, detector, show_progress_bars=False)
    scanner.scan_faces()
    assert store.people_in_photo(library["group.jpg"]) == [ada]

    detector.faces_by_name["group.jpg"] = [face(unit(0, 1))]
    scanner.scan_faces(rescan=True)

    assert store.people_in_photo(library["group.jpg"]) == []
    assert [f.person_id for f in store.faces_for_photo(library["group.jpg"])] == [None]
