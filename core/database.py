# core/database.py

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from core.errors import SchemaVersionError, StoreWriteError
from core.models import (Event, FaceDetection, Identity, PhotoAsset,
                         ReferenceEmbedding)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = [
    """
    CREATE TABLE photos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        file_path TEXT,
        file_name TEXT,
        file_size INTEGER,
        width INTEGER,
        height INTEGER,
        taken_at TEXT,
        gps_lat REAL,
        gps_lng REAL,
        content_hash TEXT,
        perceptual_hash TEXT,
        duplicate_group_id INTEGER,
        near_group_id INTEGER,
        burst_group_id INTEGER,
        is_duplicate INTEGER NOT NULL DEFAULT 0,
        duplicate_of INTEGER REFERENCES photos(id),
        duplicate_kind TEXT,
        face_scan_status TEXT,
        indexed_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE people (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL,
        representative_photo_id INTEGER REFERENCES photos(id),
        face_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE face_detections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        photo_id INTEGER NOT NULL REFERENCES photos(id),
        person_id INTEGER REFERENCES people(id),
        bbox_x REAL NOT NULL,
        bbox_y REAL NOT NULL,
        bbox_width REAL NOT NULL,
        bbox_height REAL NOT NULL,
        confidence REAL NOT NULL,
        similarity REAL,
        embedding BLOB NOT NULL
    )
    """,
    """
    CREATE TABLE reference_embeddings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        person_id INTEGER NOT NULL REFERENCES people(id),
        face_id INTEGER REFERENCES face_detections(id),
        embedding BLOB NOT NULL
    )
    """,
    """
    CREATE TABLE photo_people (
        photo_id INTEGER NOT NULL REFERENCES photos(id),
        person_id INTEGER NOT NULL REFERENCES people(id),
        PRIMARY KEY (photo_id, person_id)
    )
    """,
    """
    CREATE TABLE tags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL
    )
    """,
    """
    CREATE TABLE photo_tags (
        photo_id INTEGER NOT NULL REFERENCES photos(id),
        tag_id INTEGER NOT NULL REFERENCES tags(id),
        PRIMARY KEY (photo_id, tag_id)
    )
    """,
    """
    CREATE TABLE events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        center_lat REAL,
        center_lng REAL,
        cover_photo_id INTEGER REFERENCES photos(id),
        photo_count INTEGER NOT NULL,
        title TEXT,
        narrative TEXT,
        location_label TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE event_photos (
        event_id INTEGER NOT NULL REFERENCES events(id),
        photo_id INTEGER NOT NULL REFERENCES photos(id),
        PRIMARY KEY (event_id, photo_id)
    )
    """,
    """
    CREATE TABLE face_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        status TEXT NOT NULL,
        started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        finished_at TIMESTAMP,
        photos_processed INTEGER NOT NULL DEFAULT 0,
        faces_detected INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX idx_photos_content_hash ON photos(content_hash)",
    "CREATE INDEX idx_photos_perceptual_hash ON photos(perceptual_hash)",
    "CREATE INDEX idx_photos_is_duplicate ON photos(is_duplicate)",
    "CREATE INDEX idx_photos_taken_at ON photos(taken_at)",
    "CREATE INDEX idx_photos_face_scan_status ON photos(face_scan_status)",
    "CREATE INDEX idx_faces_photo ON face_detections(photo_id)",
    "CREATE INDEX idx_faces_person ON face_detections(person_id)",
    "CREATE INDEX idx_events_start ON events(start_time)",
    "CREATE INDEX idx_event_photos_photo ON event_photos(photo_id)",
]

PHOTO_COLUMNS = (
    "id, file_path, file_name, content_hash, perceptual_hash, taken_at, width, height, "
    "gps_lat, gps_lng, duplicate_group_id, near_group_id, burst_group_id, is_duplicate, "
    "duplicate_of, duplicate_kind, face_scan_status"
)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def embedding_to_blob(embedding: np.ndarray) -> bytes:
    """Serialize an embedding as float32 bytes"""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def blob_to_embedding(blob: bytes) -> np.ndarray:
    """Deserialize float32 bytes into an embedding"""
    return np.frombuffer(blob, dtype=np.float32).copy()


class PhotoStore:
    """
    SQLite store for photos, grouping assignments, events and identities.

    The schema is a fixed contract identified by SCHEMA_VERSION. A fresh
    database is created at that version; any other version is refused.
    """

    def __init__(self, db_path: str = "data/photos.db"):
        self.db_path = db_path
        self.conn = None
        self._transaction_depth = 0
        self._initialize_database()

    def _initialize_database(self):
        """Create or verify the database schema"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")

        version = self.conn.execute("PRAGMA user_version").fetchone()[0]
        if version == 0:
            with self.transaction():
                for statement in SCHEMA:
                    self.conn.execute(statement)
                self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            logger.info("Created photo store schema v%d at %s", SCHEMA_VERSION, self.db_path)
        elif version != SCHEMA_VERSION:
            self.conn.close()
            raise SchemaVersionError(version, SCHEMA_VERSION)

    # ------------------------------------------------------------------
    # Transactions and writes
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self):
        """
        Run a block of writes atomically.

        Nested use joins the outer transaction. Any exception rolls the
        outermost transaction back and is re-raised.
        """
        outermost = self._transaction_depth == 0
        if outermost:
            self.conn.execute("BEGIN")
        self._transaction_depth += 1
        try:
            yield self
        except Exception:
            self._transaction_depth -= 1
            if outermost:
                self.conn.execute("ROLLBACK")
            raise
        else:
            self._transaction_depth -= 1
            if outermost:
                self.conn.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._transaction_depth > 0

    def _write(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise StoreWriteError(f"{e} (while executing: {sql.split()[0]} ...)") from e

    def _query(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        return self.conn.execute(sql, tuple(params)).fetchall()

    # ------------------------------------------------------------------
    # Photos
    # ------------------------------------------------------------------

    def add_photo(self, file_path: Optional[str] = None,
                  taken_at: Optional[datetime] = None,
                  width: Optional[int] = None,
                  height: Optional[int] = None,
                  gps_lat: Optional[float] = None,
                  gps_lng: Optional[float] = None,
                  content_hash: Optional[str] = None,
                  perceptual_hash: Optional[str] = None,
                  file_size: Optional[int] = None) -> int:
        """Add a photo row (normally done by ingestion)"""
        file_name = Path(file_path).name if file_path else None
        cursor = self._write("""
            INSERT INTO photos
            (file_path, file_name, file_size, width, height, taken_at,
             gps_lat, gps_lng, content_hash, perceptual_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (file_path, file_name, file_size, width, height, _to_text(taken_at),
              gps_lat, gps_lng, content_hash, perceptual_hash))
        return cursor.lastrowid

    def _row_to_photo(self, row: sqlite3.Row) -> PhotoAsset:
        lat, lng = row['gps_lat'], row['gps_lng']
        if lat is None or lng is None:
            lat = lng = None
        return PhotoAsset(
            id=row['id'],
            file_path=row['file_path'],
            file_name=row['file_name'],
            content_hash=row['content_hash'] or None,
            perceptual_hash=row['perceptual_hash'] or None,
            taken_at=_to_datetime(row['taken_at']),
            width=row['width'],
            height=row['height'],
            gps_lat=lat,
            gps_lng=lng,
            duplicate_group_id=row['duplicate_group_id'],
            near_group_id=row['near_group_id'],
            burst_group_id=row['burst_group_id'],
            is_duplicate=bool(row['is_duplicate']),
            duplicate_of=row['duplicate_of'],
            duplicate_kind=row['duplicate_kind'],
            face_scan_status=row['face_scan_status'],
        )

    def _select_photos(self, where: str = "", params: Iterable = (),
                       offset: int = 0, limit: int = 0) -> List[PhotoAsset]:
        sql = f"SELECT {PHOTO_COLUMNS} FROM photos"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY id ASC"
        params = list(params)
        if limit > 0 or offset > 0:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit if limit > 0 else -1, offset])
        return [self._row_to_photo(r) for r in self._query(sql, params)]

    def get_photo(self, photo_id: int) -> Optional[PhotoAsset]:
        photos = self._select_photos("id = ?", (photo_id,))
        return photos[0] if photos else None

    def all_photos(self) -> List[PhotoAsset]:
        return self._select_photos()

    def photos_for_content_hash(self, offset: int = 0, limit: int = 0,
                                rehash: bool = False) -> List[PhotoAsset]:
        """Photos still needing a content hash (all photos when rehashing)"""
        where = "file_path IS NOT NULL"
        if not rehash:
            where += " AND (content_hash IS NULL OR content_hash = '')"
        return self._select_photos(where, offset=offset, limit=limit)

    def photos_for_perceptual_hash(self, offset: int = 0, limit: int = 0,
                                   rehash: bool = False) -> List[PhotoAsset]:
        """Non-duplicate photos still needing a perceptual hash"""
        where = "file_path IS NOT NULL AND is_duplicate = 0"
        if not rehash:
            where += " AND (perceptual_hash IS NULL OR perceptual_hash = '')"
        return self._select_photos(where, offset=offset, limit=limit)

    def photos_with_content_hash(self) -> List[PhotoAsset]:
        return self._select_photos("content_hash IS NOT NULL AND content_hash != ''")

    def near_duplicate_candidates(self) -> List[PhotoAsset]:
        return self._select_photos(
            "perceptual_hash IS NOT NULL AND perceptual_hash != '' AND is_duplicate = 0"
        )

    def photos_with_timestamp(self) -> List[PhotoAsset]:
        """Dated photos in capture order, ties broken by id"""
        photos = self._select_photos("taken_at IS NOT NULL AND taken_at != ''")
        photos.sort(key=lambda p: (p.taken_at, p.id))
        return photos

    def photos_for_face_scan(self, offset: int = 0, limit: int = 0,
                             rescan: bool = False) -> List[PhotoAsset]:
        where = "file_path IS NOT NULL AND is_duplicate = 0"
        if not rescan:
            where += " AND face_scan_status IS NULL"
        return self._select_photos(where, offset=offset, limit=limit)

    def set_content_hash(self, photo_id: int, content_hash: str):
        self._write("UPDATE photos SET content_hash = ? WHERE id = ?",
                    (content_hash, photo_id))

    def set_perceptual_hash(self, photo_id: int, perceptual_hash: str):
        self._write("UPDATE photos SET perceptual_hash = ? WHERE id = ?",
                    (perceptual_hash, photo_id))

    def set_face_scan_status(self, photo_id: int, status: Optional[str]):
        self._write("UPDATE photos SET face_scan_status = ? WHERE id = ?",
                    (status, photo_id))

    # ------------------------------------------------------------------
    # Duplicate and burst assignments
    # ------------------------------------------------------------------

    def clear_duplicates(self, kind: str):
        """Drop every duplicate assignment written by one pass kind"""
        self._write("""
            UPDATE photos
            SET is_duplicate = 0, duplicate_of = NULL, duplicate_kind = NULL
            WHERE duplicate_kind = ?
        """, (kind,))
        if kind == 'exact':
            self._write("UPDATE photos SET duplicate_group_id = NULL")
        elif kind == 'near':
            self._write("UPDATE photos SET near_group_id = NULL")

    def assign_duplicate_group(self, photo_id: int, group_id: int):
        self._write("UPDATE photos SET duplicate_group_id = ? WHERE id = ?",
                    (group_id, photo_id))

    def next_near_group_id(self) -> int:
        row = self._query("SELECT MAX(near_group_id) AS last FROM photos")[0]
        return (row['last'] or 0) + 1

    def assign_near_group(self, photo_id: int, group_id: int):
        self._write("UPDATE photos SET near_group_id = ? WHERE id = ?",
                    (group_id, photo_id))

    def mark_duplicate(self, photo_id: int, canonical_id: int, kind: str,
                       new_path: Optional[str] = None):
        """Flag a non-canonical member, optionally recording its new location"""
        if new_path is not None:
            self._write("""
                UPDATE photos
                SET is_duplicate = 1, duplicate_of = ?, duplicate_kind = ?,
                    file_path = ?, file_name = ?
                WHERE id = ?
            """, (canonical_id, kind, new_path, Path(new_path).name, photo_id))
        else:
            self._write("""
                UPDATE photos
                SET is_duplicate = 1, duplicate_of = ?, duplicate_kind = ?
                WHERE id = ?
            """, (canonical_id, kind, photo_id))

    def clear_bursts(self):
        self._write("UPDATE photos SET burst_group_id = NULL")

    def assign_burst_group(self, photo_id: int, group_id: int):
        self._write("UPDATE photos SET burst_group_id = ? WHERE id = ?",
                    (group_id, photo_id))

    def photos_in_duplicate_group(self, group_id: int) -> List[PhotoAsset]:
        return self._select_photos("duplicate_group_id = ?", (group_id,))

    def near_group_ids(self) -> List[int]:
        """Ids of near groups that still have at least one demoted member"""
        rows = self._query("""
            SELECT DISTINCT near_group_id
            FROM photos
            WHERE duplicate_kind = 'near' AND near_group_id IS NOT NULL
            ORDER BY near_group_id
        """)
        return [r['near_group_id'] for r in rows]

    def photos_in_near_group(self, group_id: int) -> List[PhotoAsset]:
        """Demoted members of a near group plus the photo they were demoted in favour of"""
        return self._select_photos(
            "(near_group_id = ? AND duplicate_kind = 'near') OR id IN "
            "(SELECT duplicate_of FROM photos WHERE near_group_id = ? AND duplicate_kind = 'near')",
            (group_id, group_id))

    def photos_in_burst_group(self, group_id: int) -> List[PhotoAsset]:
        return self._select_photos("burst_group_id = ?", (group_id,))

    def group_sizes(self, column: str) -> List[Tuple[int, int]]:
        """(group id, member count) pairs for a grouping column, largest first"""
        if column not in ('duplicate_group_id', 'burst_group_id'):
            raise ValueError(f"Not a grouping column: {column}")
        rows = self._query(f"""
            SELECT {column} AS group_id, COUNT(*) AS cnt
            FROM photos
            WHERE {column} IS NOT NULL
            GROUP BY {column}
            ORDER BY cnt DESC, group_id ASC
        """)
        return [(r['group_id'], r['cnt']) for r in rows]

    def scan_stats(self) -> Dict[str, int]:
        row = self._query("""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN content_hash IS NOT NULL AND content_hash != '' THEN 1 ELSE 0 END) AS hashed,
                COUNT(DISTINCT duplicate_group_id) AS duplicate_groups,
                COUNT(DISTINCT CASE WHEN duplicate_kind = 'near' THEN near_group_id END) AS near_groups,
                SUM(CASE WHEN duplicate_group_id IS NOT NULL THEN 1 ELSE 0 END) AS duplicate_photos,
                COUNT(DISTINCT burst_group_id) AS burst_groups,
                SUM(CASE WHEN burst_group_id IS NOT NULL THEN 1 ELSE 0 END) AS burst_photos,
                SUM(is_duplicate) AS flagged_duplicates
            FROM photos
        """)[0]
        return {key: row[key] or 0 for key in row.keys()}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def event_intervals(self) -> List[Tuple[datetime, datetime]]:
        rows = self._query("SELECT start_time, end_time FROM events")
        return [(_to_datetime(r['start_time']), _to_datetime(r['end_time'])) for r in rows]

    def insert_event(self, event: Event) -> int:
        """Insert an event and its members atomically"""
        with self.transaction():
            cursor = self._write("""
                INSERT INTO events
                (start_time, end_time, center_lat, center_lng, cover_photo_id, photo_count)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (_to_text(event.start), _to_text(event.end), event.center_lat,
                  event.center_lng, event.cover_photo_id, event.photo_count))
            event_id = cursor.lastrowid
            for photo_id in event.photo_ids:
                self._write("INSERT OR IGNORE INTO event_photos (event_id, photo_id) VALUES (?, ?)",
                            (event_id, photo_id))
        event.id = event_id
        return event_id

    def delete_all_events(self):
        self._write("DELETE FROM event_photos")
        self._write("DELETE FROM events")

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        photo_ids = [r['photo_id'] for r in self._query(
            "SELECT photo_id FROM event_photos WHERE event_id = ? ORDER BY photo_id",
            (row['id'],))]
        return Event(
            id=row['id'],
            start=_to_datetime(row['start_time']),
            end=_to_datetime(row['end_time']),
            photo_ids=photo_ids,
            cover_photo_id=row['cover_photo_id'],
            center_lat=row['center_lat'],
            center_lng=row['center_lng'],
            title=row['title'],
            narrative=row['narrative'],
            location_label=row['location_label'],
        )

    def get_event(self, event_id: int) -> Optional[Event]:
        rows = self._query("SELECT * FROM events WHERE id = ?", (event_id,))
        return self._row_to_event(rows[0]) if rows else None

    def list_events(self) -> List[Event]:
        rows = self._query("SELECT * FROM events ORDER BY start_time ASC, id ASC")
        return [self._row_to_event(r) for r in rows]

    def events_without_title(self, limit: int) -> List[Event]:
        rows = self._query(
            "SELECT * FROM events WHERE title IS NULL ORDER BY start_time ASC, id ASC LIMIT ?",
            (limit,))
        return [self._row_to_event(r) for r in rows]

    def set_event_narrative(self, event_id: int, title: str,
                            narrative: Optional[str] = None,
                            location_label: Optional[str] = None):
        self._write("""
            UPDATE events
            SET title = ?, narrative = ?, location_label = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        """, (title, narrative, location_label, event_id))

    def event_people(self, event_id: int) -> List[str]:
        """Distinct names of people seen in an event's photos"""
        rows = self._query("""
            SELECT DISTINCT p.name
            FROM people p
            JOIN photo_people pp ON p.id = pp.person_id
            JOIN event_photos ep ON pp.photo_id = ep.photo_id
            WHERE ep.event_id = ?
            ORDER BY p.name
        """, (event_id,))
        return [r['name'] for r in rows]

    def event_top_tags(self, event_id: int, limit: int = 10) -> List[str]:
        rows = self._query("""
            SELECT t.name, COUNT(*) AS cnt
            FROM tags t
            JOIN photo_tags pt ON t.id = pt.tag_id
            JOIN event_photos ep ON pt.photo_id = ep.photo_id
            WHERE ep.event_id = ?
            GROUP BY t.name
            ORDER BY cnt DESC, t.name ASC
            LIMIT ?
        """, (event_id, limit))
        return [r['name'] for r in rows]

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def tag_photo(self, photo_id: int, tag_name: str):
        with self.transaction():
            self._write("INSERT OR IGNORE INTO tags (name) VALUES (?)", (tag_name,))
            tag_id = self._query("SELECT id FROM tags WHERE name = ?", (tag_name,))[0]['id']
            self._write("INSERT OR IGNORE INTO photo_tags (photo_id, tag_id) VALUES (?, ?)",
                        (photo_id, tag_id))

    # ------------------------------------------------------------------
    # People, faces and reference embeddings
    # ------------------------------------------------------------------

    def add_person(self, name: str) -> int:
        cursor = self._write("INSERT INTO people (name) VALUES (?)", (name,))
        return cursor.lastrowid

    def get_person(self, person_id: int) -> Optional[Identity]:
        rows = self._query("SELECT * FROM people WHERE id = ?", (person_id,))
        if not rows:
            return None
        row = rows[0]
        return Identity(id=row['id'], name=row['name'],
                        representative_photo_id=row['representative_photo_id'],
                        face_count=row['face_count'])

    def insert_face(self, face: FaceDetection) -> int:
        x, y, w, h = face.bbox
        cursor = self._write("""
            INSERT INTO face_detections
            (photo_id, person_id, bbox_x, bbox_y, bbox_width, bbox_height,
             confidence, similarity, embedding)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (face.photo_id, face.person_id, x, y, w, h, float(face.confidence),
              face.similarity, embedding_to_blob(face.embedding)))
        face.id = cursor.lastrowid
        return face.id

    def delete_faces_for_photo(self, photo_id: int) -> List[FaceDetection]:
        """
        Remove a photo's faces and person links ahead of a rescan.

        Faces promoted to reference embeddings are kept, and so are the
        person links they imply. Returns the kept faces.
        """
        self._write("DELETE FROM face_detections WHERE photo_id = ? AND id NOT IN "
                    "(SELECT face_id FROM reference_embeddings WHERE face_id IS NOT NULL)",
                    (photo_id,))
        self._write("DELETE FROM photo_people WHERE photo_id = ?", (photo_id,))
        kept = self.faces_for_photo(photo_id)
        for face in kept:
            if face.person_id is not None:
                self.link_photo_person(photo_id, face.person_id)
        return kept

    def _row_to_face(self, row: sqlite3.Row) -> FaceDetection:
        return FaceDetection(
            id=row['id'],
            photo_id=row['photo_id'],
            person_id=row['person_id'],
            bbox=(row['bbox_x'], row['bbox_y'], row['bbox_width'], row['bbox_height']),
            confidence=row['confidence'],
            similarity=row['similarity'],
            embedding=blob_to_embedding(row['embedding']),
        )

    def get_face(self, face_id: int) -> Optional[FaceDetection]:
        rows = self._query("SELECT * FROM face_detections WHERE id = ?", (face_id,))
        return self._row_to_face(rows[0]) if rows else None

    def faces_for_photo(self, photo_id: int) -> List[FaceDetection]:
        rows = self._query("SELECT * FROM face_detections WHERE photo_id = ? ORDER BY id",
                           (photo_id,))
        return [self._row_to_face(r) for r in rows]

    def set_face_identity(self, face_id: int, person_id: Optional[int],
                          similarity: Optional[float] = None):
        self._write("UPDATE face_detections SET person_id = ?, similarity = ? WHERE id = ?",
                    (person_id, similarity, face_id))

    def link_photo_person(self, photo_id: int, person_id: int):
        self._write("INSERT OR IGNORE INTO photo_people (photo_id, person_id) VALUES (?, ?)",
                    (photo_id, person_id))

    def people_in_photo(self, photo_id: int) -> List[int]:
        rows = self._query("SELECT person_id FROM photo_people WHERE photo_id = ? "
                           "ORDER BY person_id", (photo_id,))
        return [r['person_id'] for r in rows]

    def add_reference_embedding(self, person_id: int, embedding: np.ndarray,
                                face_id: Optional[int] = None) -> int:
        cursor = self._write("""
            INSERT INTO reference_embeddings (person_id, face_id, embedding)
            VALUES (?, ?, ?)
        """, (person_id, face_id, embedding_to_blob(embedding)))
        return cursor.lastrowid

    def reference_embeddings(self) -> List[ReferenceEmbedding]:
        rows = self._query(
            "SELECT id, person_id, face_id, embedding FROM reference_embeddings ORDER BY id")
        return [ReferenceEmbedding(id=r['id'], person_id=r['person_id'], face_id=r['face_id'],
                                   embedding=blob_to_embedding(r['embedding']))
                for r in rows]

    def refresh_identity_stats(self):
        """Recount faces per person and fill in missing representative photos"""
        with self.transaction():
            self._write("""
                UPDATE people SET face_count = (
                    SELECT COUNT(*) FROM face_detections WHERE person_id = people.id
                )
            """)
            self._write("""
                UPDATE people SET representative_photo_id = (
                    SELECT photo_id FROM face_detections
                    WHERE person_id = people.id
                    ORDER BY similarity DESC, photo_id ASC
                    LIMIT 1
                )
                WHERE representative_photo_id IS NULL
            """)

    # ------------------------------------------------------------------
    # Face scan jobs
    # ------------------------------------------------------------------

    def create_face_job(self) -> int:
        cursor = self._write("INSERT INTO face_jobs (status) VALUES ('running')")
        return cursor.lastrowid

    def update_face_job(self, job_id: int, photos_processed: int, faces_detected: int,
                        status: Optional[str] = None):
        if status is None:
            self._write("""
                UPDATE face_jobs SET photos_processed = ?, faces_detected = ? WHERE id = ?
            """, (photos_processed, faces_detected, job_id))
        else:
            self._write("""
                UPDATE face_jobs
                SET photos_processed = ?, faces_detected = ?, status = ?,
                    finished_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (photos_processed, faces_detected, status, job_id))

    def get_face_job(self, job_id: int) -> Optional[Dict]:
        rows = self._query("SELECT * FROM face_jobs WHERE id = ?", (job_id,))
        return dict(rows[0]) if rows else None

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
