"""SQLite store for file records, embeddings and the full-text index."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path, PurePath
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from filescout.errors import StoreWriteFailure
from filescout.models import Category, FileRecord, ScanDecision, SearchFilters
from filescout.utils.files import is_under, path_exists
from filescout.utils.text import tokenize

LOGGER = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "path, name, extension, category, content, content_processed, decision, folders, "
    "drive, size, created_at, modified_at, content_hash, needs_retry, pending_text, "
    "importance"
)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _filter_clause(filters: SearchFilters | None) -> Tuple[str, list]:
    """SQL conditions on ``files`` (aliased ``f``) for the given search filters."""
    if filters is None or filters.is_empty:
        return "", []
    conditions: List[str] = []
    params: list = []
    if filters.extension is not None:
        conditions.append("f.extension = ?")
        params.append(filters.extension)
    if filters.path_prefix is not None:
        root = str(PurePath(filters.path_prefix))
        conditions.append("(f.path = ? OR f.path LIKE ? ESCAPE '\\')")
        params.extend([root, _escape_like(root.rstrip("/\\") + os.sep) + "%"])
    if filters.min_score is not None:
        conditions.append("f.importance >= ?")
        params.append(filters.min_score)
    return " AND ".join(conditions), params


def _row_to_record(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        id=row["id"],
        path=Path(row["path"]),
        name=row["name"],
        extension=row["extension"],
        category=Category(row["category"]),
        text=row["content"],
        content_processed=bool(row["content_processed"]),
        decision=ScanDecision(row["decision"]),
        folders=tuple(json.loads(row["folders"] or "[]")),
        drive=row["drive"],
        size=row["size"],
        created_at=row["created_at"],
        modified_at=row["modified_at"],
        content_hash=row["content_hash"],
        needs_retry=bool(row["needs_retry"]),
        pending_text=row["pending_text"],
        importance=row["importance"],
        record_created_at=row["record_created_at"],
        record_updated_at=row["record_updated_at"],
        last_seen_at=row["last_seen_at"],
    )


def _record_params(record: FileRecord) -> tuple:
    return (
        str(record.path),
        record.name,
        record.extension,
        record.category.value,
        record.text,
        int(record.content_processed),
        record.decision.value,
        json.dumps(list(record.folders), ensure_ascii=True),
        record.drive,
        record.size,
        record.created_at,
        record.modified_at,
        record.content_hash,
        int(record.needs_retry),
        record.pending_text,
        record.importance,
    )


class SQLiteFileStore:
    """Persistence layer for file records and their embeddings.

    Writes go through one connection guarded by a lock, one transaction per
    logical change. Each reading thread gets its own connection, so in WAL mode
    it sees either the state before a write or after it, never in between.
    """

    def __init__(self, db_path: Path, *, dimension: int) -> None:
        self.db_path = Path(db_path)
        self.dimension = dimension
        self._write_lock = threading.RLock()
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._conn = self._connect()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def close(self) -> None:
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()
        with self._write_lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY,
                    path TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    extension TEXT NOT NULL,
                    category TEXT NOT NULL,
                    content TEXT NOT NULL,
                    content_processed INTEGER NOT NULL DEFAULT 0,
                    decision TEXT NOT NULL,
                    folders TEXT NOT NULL DEFAULT '[]',
                    drive TEXT NOT NULL DEFAULT '',
                    size INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL DEFAULT 0,
                    modified_at REAL NOT NULL DEFAULT 0,
                    content_hash TEXT NOT NULL DEFAULT '',
                    needs_retry INTEGER NOT NULL DEFAULT 0,
                    pending_text TEXT,
                    importance REAL NOT NULL DEFAULT 0,
                    record_created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    record_updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    last_seen_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(files)")}
            if "importance" not in columns:
                conn.execute("ALTER TABLE files ADD COLUMN importance REAL NOT NULL DEFAULT 0")
            # Touching last_seen_at must not count as a content update.
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS files_updated
                AFTER UPDATE OF name, extension, category, content, content_processed,
                    decision, size, modified_at, content_hash, needs_retry ON files
                BEGIN
                    UPDATE files SET record_updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
                END;
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS embeddings (
                    file_id INTEGER PRIMARY KEY,
                    vector BLOB NOT NULL,
                    FOREIGN KEY(file_id) REFERENCES files(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_files_retry ON files(needs_retry)")
            conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS files_fts USING fts5(
                    name, content, content='files', content_rowid='id'
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS files_fts_insert AFTER INSERT ON files BEGIN
                    INSERT INTO files_fts(rowid, name, content)
                    VALUES (new.id, new.name, new.content);
                END;
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS files_fts_delete AFTER DELETE ON files BEGIN
                    INSERT INTO files_fts(files_fts, rowid, name, content)
                    VALUES ('delete', old.id, old.name, old.content);
                END;
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS files_fts_update
                AFTER UPDATE OF name, content ON files BEGIN
                    INSERT INTO files_fts(files_fts, rowid, name, content)
                    VALUES ('delete', old.id, old.name, old.content);
                    INSERT INTO files_fts(rowid, name, content)
                    VALUES (new.id, new.name, new.content);
                END;
                """
            )

    # ------------------------------------------------------------------ writes

    def upsert(self, record: FileRecord, vector: Optional[np.ndarray]) -> str:
        """Insert or update ``record`` and replace its vector in one transaction.

        Returns "inserted" or "updated". A record without a vector keeps none:
        any vector stored for a previous version of the file is dropped.
        """
        if record.content_processed and vector is None:
            raise StoreWriteFailure("Content-processed record needs a vector", record.path)
        blob = None
        if vector is not None:
            array = np.asarray(vector, dtype="float32")
            if array.shape != (self.dimension,):
                raise StoreWriteFailure(
                    f"Vector shape {array.shape} does not match dimension {self.dimension}",
                    record.path,
                )
            blob = sqlite3.Binary(array.tobytes())

        try:
            with self.transaction() as conn:
                existing = conn.execute(
                    "SELECT id FROM files WHERE path = ?", (str(record.path),)
                ).fetchone()
                params = _record_params(record)
                if existing:
                    file_id = existing["id"]
                    conn.execute(
                        """
                        UPDATE files SET
                            name = ?, extension = ?, category = ?, content = ?,
                            content_processed = ?, decision = ?, folders = ?, drive = ?,
                            size = ?, created_at = ?, modified_at = ?, content_hash = ?,
                            needs_retry = ?, pending_text = ?, importance = ?,
                            last_seen_at = CURRENT_TIMESTAMP
                        WHERE id = ?
                        """,
                        (*params[1:], file_id),
                    )
                    status = "updated"
                else:
                    file_id = conn.execute(
                        f"INSERT INTO files({_RECORD_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        params,
                    ).lastrowid
                    status = "inserted"

                if blob is None:
                    conn.execute("DELETE FROM embeddings WHERE file_id = ?", (file_id,))
                else:
                    conn.execute(
                        "INSERT OR REPLACE INTO embeddings(file_id, vector) VALUES (?, ?)",
                        (file_id, blob),
                    )
        except sqlite3.Error as exc:
            raise StoreWriteFailure(f"SQLite write failed: {exc}", record.path) from exc

        record.id = file_id
        return status

    def touch(self, path: Path) -> bool:
        """Mark ``path`` as seen without changing any content column."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    "UPDATE files SET last_seen_at = CURRENT_TIMESTAMP WHERE path = ?",
                    (str(path),),
                )
        except sqlite3.Error as exc:
            raise StoreWriteFailure(f"SQLite write failed: {exc}", Path(path)) from exc
        return cursor.rowcount > 0

    def mark_stale(self, paths: Iterable[Path]) -> int:
        """Delete the records for ``paths`` and their vectors in one transaction."""
        keys = [(str(path),) for path in paths]
        if not keys:
            return 0
        try:
            with self.transaction() as conn:
                removed = 0
                for key in keys:
                    row = conn.execute("SELECT id FROM files WHERE path = ?", key).fetchone()
                    if row is None:
                        continue
                    conn.execute("DELETE FROM embeddings WHERE file_id = ?", (row["id"],))
                    conn.execute("DELETE FROM files WHERE id = ?", (row["id"],))
                    removed += 1
        except sqlite3.Error as exc:
            raise StoreWriteFailure(f"SQLite delete failed: {exc}") from exc
        return removed

    def delete_record(self, file_id: int) -> bool:
        with self.transaction() as conn:
            conn.execute("DELETE FROM embeddings WHERE file_id = ?", (file_id,))
            cursor = conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
        return cursor.rowcount > 0

    def remove_missing_files(self) -> int:
        """Remove records whose files no longer exist."""
        rows = self._reader().execute("SELECT path FROM files").fetchall()
        missing = [Path(row["path"]) for row in rows if not path_exists(row["path"])]
        return self.mark_stale(missing)

    # ------------------------------------------------------------------- reads

    def get(self, path: Path) -> Optional[FileRecord]:
        row = self._reader().execute(
            "SELECT * FROM files WHERE path = ?", (str(path),)
        ).fetchone()
        return _row_to_record(row) if row else None

    def get_many(self, ids: Sequence[int]) -> Dict[int, FileRecord]:
        records: Dict[int, FileRecord] = {}
        ids = list(dict.fromkeys(ids))
        conn = self._reader()
        # Stay well below SQLite's host parameter limit.
        for start in range(0, len(ids), 500):
            batch = ids[start : start + 500]
            placeholders = ", ".join("?" for _ in batch)
            for row in conn.execute(
                f"SELECT * FROM files WHERE id IN ({placeholders})", batch
            ):
                records[row["id"]] = _row_to_record(row)
        return records

    def get_vector(self, file_id: int) -> Optional[np.ndarray]:
        row = self._reader().execute(
            "SELECT vector FROM embeddings WHERE file_id = ?", (file_id,)
        ).fetchone()
        if row is None:
            return None
        return np.frombuffer(row["vector"], dtype="float32").copy()

    def list_records(
        self,
        *,
        limit: int = 100,
        offset: int = 0,
        category: Category | None = None,
    ) -> List[FileRecord]:
        sql = "SELECT * FROM files"
        params: list = []
        if category is not None:
            sql += " WHERE category = ?"
            params.append(category.value)
        sql += " ORDER BY path LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [_row_to_record(row) for row in self._reader().execute(sql, params)]

    def paths_under(self, root: PurePath) -> List[Tuple[Path, bool, bool]]:
        """Return (path, content_processed, needs_retry) for every record inside ``root``."""
        root = PurePath(root)
        prefix = str(root).rstrip("/\\")
        rows = self._reader().execute(
            "SELECT path, content_processed, needs_retry FROM files "
            "WHERE path = ? OR path LIKE ? ESCAPE '\\'",
            (str(root), _escape_like(prefix) + "%"),
        ).fetchall()
        return [
            (Path(row["path"]), bool(row["content_processed"]), bool(row["needs_retry"]))
            for row in rows
            if is_under(PurePath(row["path"]), root)
        ]

    def pending_retry(self, limit: int | None = None) -> List[FileRecord]:
        sql = "SELECT * FROM files WHERE needs_retry = 1 ORDER BY id"
        params: list = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_record(row) for row in self._reader().execute(sql, params)]

    def count(self) -> int:
        return int(self._reader().execute("SELECT COUNT(*) FROM files").fetchone()[0])

    def get_stats(self) -> dict:
        """Return database statistics."""
        conn = self._reader()
        totals = conn.execute(
            """
            SELECT
                COUNT(*) AS files,
                COALESCE(SUM(content_processed), 0) AS content_processed,
                COALESCE(SUM(needs_retry), 0) AS needs_retry,
                COALESCE(SUM(size), 0) AS total_size
            FROM files
            """
        ).fetchone()
        embeddings = conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
        by_category = {
            row["category"]: row["n"]
            for row in conn.execute(
                "SELECT category, COUNT(*) AS n FROM files GROUP BY category ORDER BY category"
            )
        }
        return {
            "files": totals["files"],
            "content_processed": totals["content_processed"],
            "metadata_only": totals["files"] - totals["content_processed"],
            "needs_retry": totals["needs_retry"],
            "embeddings": embeddings,
            "total_size_bytes": totals["total_size"],
            "by_category": by_category,
        }

    # ------------------------------------------------------------------ search

    def vector_search(
        self,
        query: np.ndarray,
        *,
        top_k: int = 10,
        filters: SearchFilters | None = None,
    ) -> List[Tuple[int, float]]:
        """Brute-force cosine similarity over stored (normalized) vectors."""
        if top_k <= 0:
            return []
        query = np.asarray(query, dtype="float32")
        where, params = _filter_clause(filters)
        sql = "SELECT file_id, vector FROM embeddings"
        if where:
            sql = (
                "SELECT e.file_id AS file_id, e.vector AS vector FROM embeddings e "
                f"JOIN files f ON f.id = e.file_id WHERE {where}"
            )
        rows = self._reader().execute(sql, params).fetchall()
        expected_bytes = self.dimension * 4
        rows = [row for row in rows if len(row["vector"]) == expected_bytes]
        if not rows or query.shape != (self.dimension,):
            return []

        embeddings = np.vstack([np.frombuffer(row["vector"], dtype="float32") for row in rows])
        scores = embeddings @ query

        if top_k < len(scores):
            top_indices = np.argpartition(scores, -top_k)[-top_k:]
            top_indices = top_indices[np.argsort(scores[top_indices])[::-1]]
        else:
            top_indices = np.argsort(scores)[::-1]
        return [(int(rows[idx]["file_id"]), float(scores[idx])) for idx in top_indices]

    def text_search(
        self,
        query: str,
        *,
        top_k: int = 10,
        filters: SearchFilters | None = None,
    ) -> List[Tuple[int, float]]:
        """Full-text lookup over name and content, best match first.

        Every query token is quoted, so user input never reaches FTS5 as syntax.
        Scores are negated bm25 values: higher is better.
        """
        tokens = list(dict.fromkeys(tokenize(query)))
        if not tokens or top_k <= 0:
            return []
        match = " OR ".join(f'"{token}"' for token in tokens)
        where, params = _filter_clause(filters)
        join = " JOIN files f ON f.id = files_fts.rowid" if where else ""
        extra = f" AND {where}" if where else ""
        try:
            rows = self._reader().execute(
                f"""
                SELECT files_fts.rowid AS id, bm25(files_fts, 2.0, 1.0) AS rank
                FROM files_fts{join}
                WHERE files_fts MATCH ?{extra}
                ORDER BY rank
                LIMIT ?
                """,
                (match, *params, top_k),
            ).fetchall()
        except sqlite3.OperationalError as exc:
            LOGGER.warning("Full-text query failed for %r: %s", query, exc)
            return []
        return [(int(row["id"]), -float(row["rank"])) for row in rows]
