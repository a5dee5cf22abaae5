# tests/test_duplicate_detection.py

from datetime import datetime
from pathlib import Path

import numpy as np
import pytest

from components.quarantine_manager import QuarantineManager
from conftest import bits_hash
from core.duplicate_detection import ExactDuplicateGrouper, NearDuplicateGrouper
from core.hash_index import BruteForceIndex, FaissHammingIndex
from core.models import PhotoAsset


def near_grouper(store, **kwargs):
    kwargs.setdefault('move_files', False)
    return NearDuplicateGrouper(store, show_progress_bars=False, **kwargs)


# ----------------------------------------------------------------------
# Exact duplicates
# ----------------------------------------------------------------------

def test_equal_content_hash_groups_with_earliest_canonical(store):
    late = store.add_photo("/late.jpg", content_hash="aa", taken_at=datetime(2021, 6, 1))
    early = store.add_photo("/early.jpg", content_hash="aa", taken_at=datetime(2020, 1, 1))
    undated = store.add_photo("/undated.jpg", content_hash="aa")
    other = store.add_photo("/other.jpg", content_hash="bb")

    summary = ExactDuplicateGrouper(store).run()

    assert summary.get('groups') == 1
    assert summary.get('duplicates') == 2
    group = summary.groups[0]
    assert group.canonical.id == early
    assert [p.id for p in group.members] == [early, late, undated]

    for photo_id in (late, undated):
        photo = store.get_photo(photo_id)
        assert photo.is_duplicate
        assert photo.duplicate_of == early
        assert photo.duplicate_kind == 'exact'
        assert photo.duplicate_group_id == 1
    assert not store.get_photo(early).is_duplicate
    assert store.get_photo(early).duplicate_group_id == 1
    assert store.get_photo(other).duplicate_group_id is None


def test_same_date_canonical_is_lowest_id(store):
    when = datetime(2020, 1, 1)
    first = store.add_photo("/1.jpg", content_hash="aa", taken_at=when)
    store.add_photo("/2.jpg", content_hash="aa", taken_at=when)

    group = ExactDuplicateGrouper(store).run().groups[0]
    assert group.canonical.id == first


def test_groups_are_numbered_by_hash_order(store):
    store.add_photo("/z1.jpg", content_hash="ff")
    store.add_photo("/z2.jpg", content_hash="ff")
    a1 = store.add_photo("/a1.jpg", content_hash="01")
    store.add_photo("/a2.jpg", content_hash="01")

    ExactDuplicateGrouper(store).run()
    assert store.get_photo(a1).duplicate_group_id == 1


def test_photos_without_hash_are_excluded():
    grouper = ExactDuplicateGrouper(store=None)
    groups = grouper.find_groups([PhotoAsset(id=1), PhotoAsset(id=2)])
    assert groups == []


def test_exact_rerun_rebuilds_assignments(store):
    a = store.add_photo("/a.jpg", content_hash="aa")
    b = store.add_photo("/b.jpg", content_hash="aa")
    ExactDuplicateGrouper(store).run()

    store.set_content_hash(b, "cc")
    summary = ExactDuplicateGrouper(store).run()

    assert summary.get('groups') == 0
    assert not store.get_photo(b).is_duplicate
    assert store.get_photo(a).duplicate_group_id is None


def test_exact_pass_keeps_near_flags(store):
    a = store.add_photo("/a.jpg", content_hash="aa")
    b = store.add_photo("/b.jpg", content_hash="bb")
    store.mark_duplicate(b, a, 'near')

    ExactDuplicateGrouper(store).run()

    assert store.get_photo(b).duplicate_kind == 'near'


# ----------------------------------------------------------------------
# Near duplicates
# ----------------------------------------------------------------------

def test_distance_equal_to_threshold_is_grouped(store):
    anchor = store.add_photo("/p.jpg", perceptual_hash=bits_hash(0))
    at_threshold = store.add_photo("/q.jpg", perceptual_hash=bits_hash(8))

    summary = near_grouper(store, hash_threshold=8).run()

    assert summary.get('groups') == 1
    assert summary.groups[0].member_ids == [anchor, at_threshold]


def test_distance_above_threshold_is_not_grouped(store):
    store.add_photo("/p.jpg", perceptual_hash=bits_hash(0))
    store.add_photo("/q.jpg", perceptual_hash=bits_hash(9))

    summary = near_grouper(store, hash_threshold=8).run()
    assert summary.get('groups') == 0


def test_grouping_is_anchored_not_transitive(store):
    p = store.add_photo("/p.jpg", perceptual_hash=bits_hash(0))
    q = store.add_photo("/q.jpg", perceptual_hash=bits_hash(8))
    r = store.add_photo("/r.jpg", perceptual_hash=bits_hash(16))

    summary = near_grouper(store, hash_threshold=8).run()

    assert [g.member_ids for g in summary.groups] == [[p, q]]
    assert not store.get_photo(r).is_duplicate


def test_different_hash_lengths_never_group(store):
    store.add_photo("/p.jpg", perceptual_hash="0" * 64)
    store.add_photo("/q.jpg", perceptual_hash="0" * 16)

    assert near_grouper(store).run().get('groups') == 0


def test_near_flags_non_canonical_members(store):
    later = store.add_photo("/later.jpg", perceptual_hash=bits_hash(0),
                            taken_at=datetime(2022, 3, 1))
    earlier = store.add_photo("/earlier.jpg", perceptual_hash=bits_hash(2),
                              taken_at=datetime(2022, 1, 1))

    summary = near_grouper(store).run()

    assert summary.get('duplicates_flagged') == 1
    photo = store.get_photo(later)
    assert photo.is_duplicate
    assert photo.duplicate_of == earlier
    assert photo.duplicate_kind == 'near'
    assert photo.file_path == "/later.jpg"


def test_flagged_photos_are_not_candidates(store):
    a = store.add_photo("/a.jpg", perceptual_hash=bits_hash(0))
    b = store.add_photo("/b.jpg", perceptual_hash=bits_hash(1))
    store.mark_duplicate(b, a, 'exact')

    assert near_grouper(store).run().get('candidates') == 1


def test_dry_run_writes_nothing(store, tmp_path):
    files = []
    for name in ("a.jpg", "b.jpg"):
        path = tmp_path / "library" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(name.encode())
        files.append(path)
    a = store.add_photo(str(files[0]), perceptual_hash=bits_hash(0))
    b = store.add_photo(str(files[1]), perceptual_hash=bits_hash(1))
    quarantine = QuarantineManager(str(tmp_path / "quarantine"), str(tmp_path / "library"))

    summary = near_grouper(store, quarantine=quarantine, move_files=True).run(dry_run=True)

    assert summary.dry_run
    assert summary.get('groups') == 1
    assert summary.get('duplicates_moved') == 0
    assert all(f.exists() for f in files)
    assert not (tmp_path / "quarantine").exists()
    assert not store.get_photo(a).is_duplicate
    assert not store.get_photo(b).is_duplicate


def test_move_files_quarantines_and_updates_path(store, tmp_path):
    library = tmp_path / "library"
    (library / "2020").mkdir(parents=True)
    keep = library / "2020" / "keep.jpg"
    dupe = library / "2020" / "copy.jpg"
    keep.write_bytes(b"k")
    dupe.write_bytes(b"d")
    keep_id = store.add_photo(str(keep), perceptual_hash=bits_hash(0))
    dupe_id = store.add_photo(str(dupe), perceptual_hash=bits_hash(3))
    quarantine = QuarantineManager(str(tmp_path / "quarantine"), str(library))

    summary = near_grouper(store, quarantine=quarantine, move_files=True).run()

    moved_to = tmp_path / "quarantine" / "2020" / "copy.jpg"
    assert summary.get('duplicates_moved') == 1
    assert moved_to.exists()
    assert not dupe.exists()
    assert keep.exists()
    photo = store.get_photo(dupe_id)
    assert Path(photo.file_path) == moved_to
    assert photo.file_name == "copy.jpg"
    assert photo.duplicate_of == keep_id


def test_move_failure_is_counted_and_pass_continues(store, tmp_path):
    store.add_photo(str(tmp_path / "missing_a.jpg"), perceptual_hash=bits_hash(0))
    b = store.add_photo(str(tmp_path / "missing_b.jpg"), perceptual_hash=bits_hash(1))
    quarantine = QuarantineManager(str(tmp_path / "quarantine"))

    summary = near_grouper(store, quarantine=quarantine, move_files=True).run()

    assert summary.get('errors') == 1
    assert not store.get_photo(b).is_duplicate


def test_rerun_after_reset_leaves_quarantined_files_in_place(store, tmp_path):
    library = tmp_path / "photos"
    library.mkdir()
    keep = library / "keep.jpg"
    dupe = library / "copy.jpg"
    keep.write_bytes(b"k")
    dupe.write_bytes(b"d")
    store.add_photo(str(keep), perceptual_hash=bits_hash(0))
    dupe_id = store.add_photo(str(dupe), perceptual_hash=bits_hash(2))
    quarantine = QuarantineManager(str(library / "_duplicates"), str(library))
    grouper = near_grouper(store, quarantine=quarantine, move_files=True)

    assert grouper.run().get('duplicates_moved') == 1
    quarantined = library / "_duplicates" / "copy.jpg"
    assert Path(store.get_photo(dupe_id).file_path) == quarantined

    grouper.reset()
    summary = grouper.run()

    assert summary.get('duplicates_moved') == 0
    assert summary.get('duplicates_flagged') == 1
    assert quarantined.exists()
    assert not (library / "_duplicates" / "_duplicates").exists()
    photo = store.get_photo(dupe_id)
    assert Path(photo.file_path) == quarantined
    assert photo.is_duplicate


def test_rerun_after_reset_gives_identical_groups(store):
    rng = np.random.default_rng(7)
    for i in range(30):
        base = int(rng.integers(0, 4))
        value = (base << 200) | int(rng.integers(0, 1 << 6))
        store.add_photo(f"/{i}.jpg", perceptual_hash=format(value, '064x'))

    grouper = near_grouper(store)
    first = grouper.run()
    first_flags = [(p.id, p.duplicate_of) for p in store.all_photos()]

    grouper.reset()
    assert not any(p.is_duplicate for p in store.all_photos())

    second = grouper.run()
    assert [g.member_ids for g in second.groups] == [g.member_ids for g in first.groups]
    assert [(p.id, p.duplicate_of) for p in store.all_photos()] == first_flags


def test_reset_leaves_exact_flags(store):
    a = store.add_photo("/a.jpg", content_hash="aa")
    b = store.add_photo("/b.jpg", content_hash="aa")
    ExactDuplicateGrouper(store).run()

    near_grouper(store).reset()
    assert store.get_photo(b).duplicate_of == a


# ----------------------------------------------------------------------
# Candidate indexes
# ----------------------------------------------------------------------

def random_hashes(seed, count=60):
    rng = np.random.default_rng(seed)
    bases = [rng.integers(0, 256, 32, dtype=np.uint8) for _ in range(5)]
    hashes = []
    for _ in range(count):
        code = bases[int(rng.integers(0, len(bases)))].copy()
        for bit in rng.choice(256, size=int(rng.integers(0, 12)), replace=False):
            code[bit // 8] ^= 1 << (bit % 8)
        hashes.append(code.tobytes().hex())
    return hashes


@pytest.mark.parametrize("seed", [0, 1, 2])
def test_faiss_index_groups_like_brute_force(seed):
    photos = [PhotoAsset(id=i + 1, perceptual_hash=h) for i, h in enumerate(random_hashes(seed))]

    brute = NearDuplicateGrouper(None, index=BruteForceIndex(), show_progress_bars=False)
    faiss_backed = NearDuplicateGrouper(None, index=FaissHammingIndex(), show_progress_bars=False)

    brute_groups, _ = brute.find_groups(photos)
    faiss_groups, _ = faiss_backed.find_groups(photos)

    assert brute_groups
    assert [g.member_ids for g in faiss_groups] == [g.member_ids for g in brute_groups]


def test_faiss_candidates_are_later_positions_within_radius():
    hashes = [bits_hash(0), bits_hash(20), bits_hash(4), bits_hash(8)]
    index = FaissHammingIndex()
    index.build(hashes, threshold=8)

    assert list(index.candidates(0)) == [2, 3]
    assert list(index.candidates(3)) == []
