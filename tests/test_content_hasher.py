# tests/test_content_hasher.py

import hashlib

from core.content_hasher import ContentHasher, hash_file


def test_hash_file_matches_sha256(tmp_path):
    path = tmp_path / "bytes.bin"
    data = b"photo bytes" * 100000
    path.write_bytes(data)
    assert hash_file(str(path)) == hashlib.sha256(data).hexdigest()


def test_compute_hashes_counts_hashed_and_skipped(store, tmp_path):
    present = tmp_path / "a.jpg"
    present.write_bytes(b"aaa")
    hashed_id = store.add_photo(str(present))
    missing_id = store.add_photo(str(tmp_path / "gone.jpg"))

    summary = ContentHasher(store, show_progress_bars=False).compute_hashes()

    assert summary.get('total') == 2
    assert summary.get('hashed') == 1
    assert summary.get('skipped') == 1
    assert summary.get('failed') == 0
    assert store.get_photo(hashed_id).content_hash == hashlib.sha256(b"aaa").hexdigest()
    assert store.get_photo(missing_id).content_hash is None


def test_existing_hashes_are_kept_unless_rehash(store, tmp_path):
    path = tmp_path / "a.jpg"
    path.write_bytes(b"new contents")
    photo_id = store.add_photo(str(path), content_hash="stale")
    hasher = ContentHasher(store, show_progress_bars=False)

    assert hasher.compute_hashes().get('total') == 0
    assert store.get_photo(photo_id).content_hash == "stale"

    hasher.compute_hashes(rehash=True)
    assert store.get_photo(photo_id).content_hash == hashlib.sha256(b"new contents").hexdigest()


def test_directory_path_is_skipped(store, tmp_path):
    directory = tmp_path / "not_a_file.jpg"
    directory.mkdir()
    store.add_photo(str(directory))

    summary = ContentHasher(store, show_progress_bars=False).compute_hashes()

    assert summary.get('skipped') == 1
    assert summary.get('failed') == 0


def test_read_error_counts_as_failure(store, tmp_path, monkeypatch):
    path = tmp_path / "a.jpg"
    path.write_bytes(b"aaa")
    store.add_photo(str(path))

    def unreadable(file_path):
        raise PermissionError("denied")

    monkeypatch.setattr("core.content_hasher.hash_file", unreadable)
    summary = ContentHasher(store, show_progress_bars=False).compute_hashes()

    assert summary.get('failed') == 1
    assert summary.get('hashed') == 0


def test_limit_restricts_batch(store, tmp_path):
    for i in range(4):
        path = tmp_path / f"{i}.jpg"
        path.write_bytes(bytes([i]))
        store.add_photo(str(path))

    summary = ContentHasher(store, show_progress_bars=False).compute_hashes(offset=1, limit=2)

    assert summary.get('hashed') == 2
    assert [p.content_hash is not None for p in store.all_photos()] == [False, True, True, False]
