"""
Memory Store — SQLite Persistent Backend

Tables:
    pm_sources            - Canonical source identities (soft-delete only)
    pm_source_versions    - Immutable content snapshots per source
    pm_memories           - Atomic memories (and legacy document memories)
    pm_categories         - Seeded top-level buckets
    pm_memory_categories  - Category assignments, keyed by assignment source
    pm_related_memories   - Directed memory-to-memory links
    pm_memory_evidence    - Citation spans into source versions
    pm_source_aliases     - Review-first duplicate source proposals
    pm_extraction_runs    - Extraction audit (append-only)
    pm_jobs / pm_job_runs - Organizer and consolidator pass audit
    pm_embeddings         - Vector embeddings per memory or note
    notes                 - Captured notes

Thread safety: one connection (check_same_thread=False) serialized by a
re-entrant lock.  The connection runs in autocommit mode; multi-statement
mutations go through ``transaction()`` which issues BEGIN/COMMIT/ROLLBACK.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import struct
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from projmem.types import (
    Bucket,
    CategoryAssignment,
    EvidenceSpan,
    ExtractionRun,
    InputError,
    JobRun,
    MemoryRecord,
    Note,
    RelatedLink,
    Source,
    SourceAlias,
    SourceVersion,
    VersionResult,
    _now_iso,
    parse_iso,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pm_sources (
    source_id       TEXT PRIMARY KEY,
    source_filename TEXT NOT NULL,
    source_path     TEXT,
    source_kind     TEXT NOT NULL DEFAULT 'markdown',
    is_deleted      INTEGER NOT NULL DEFAULT 0,
    deleted_at      TEXT,
    first_seen_at   TEXT NOT NULL,
    last_seen_at    TEXT NOT NULL,
    last_checksum   TEXT,
    current_version INTEGER,
    metadata_json   TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS pm_source_versions (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id        TEXT NOT NULL REFERENCES pm_sources(source_id),
    version          INTEGER NOT NULL,
    checksum         TEXT NOT NULL,
    fuzzy_hash       TEXT,
    content_markdown TEXT NOT NULL,
    agentfs_uri      TEXT,
    content_bytes    INTEGER NOT NULL DEFAULT 0,
    created_at       TEXT NOT NULL,
    metadata_json    TEXT NOT NULL DEFAULT '{}',
    UNIQUE(source_id, version),
    UNIQUE(source_id, checksum)
);

CREATE TABLE IF NOT EXISTS pm_memories (
    memory_id        TEXT PRIMARY KEY,
    source_id        TEXT NOT NULL,
    latest_version   INTEGER NOT NULL,
    title_manual     TEXT,
    notes_manual     TEXT,
    pinned_tags_json TEXT NOT NULL DEFAULT '[]',
    summary_auto     TEXT,
    tags_auto_json   TEXT NOT NULL DEFAULT '[]',
    links_auto_json  TEXT NOT NULL DEFAULT '[]',
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    metadata_json    TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS pm_categories (
    category_id  TEXT PRIMARY KEY,
    slug         TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    description  TEXT,
    is_top_level INTEGER NOT NULL DEFAULT 1,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pm_memory_categories (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id         TEXT NOT NULL,
    category_id       TEXT NOT NULL,
    assignment_source TEXT NOT NULL,
    confidence        REAL,
    reason            TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    UNIQUE(memory_id, category_id, assignment_source)
);

CREATE TABLE IF NOT EXISTS pm_related_memories (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id         TEXT NOT NULL,
    related_memory_id TEXT NOT NULL,
    relation_type     TEXT NOT NULL DEFAULT 'related',
    confidence        REAL,
    reason            TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    UNIQUE(memory_id, related_memory_id, relation_type)
);

CREATE TABLE IF NOT EXISTS pm_memory_evidence (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id      TEXT NOT NULL,
    source_id      TEXT NOT NULL,
    source_version INTEGER NOT NULL,
    start_offset   INTEGER,
    end_offset     INTEGER,
    evidence_text  TEXT,
    created_at     TEXT NOT NULL,
    metadata_json  TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS pm_source_aliases (
    alias_source_id     TEXT PRIMARY KEY,
    canonical_source_id TEXT NOT NULL,
    reason              TEXT,
    confidence          REAL,
    is_active           INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pm_extraction_runs (
    run_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id       TEXT NOT NULL,
    source_version  INTEGER NOT NULL,
    model           TEXT NOT NULL,
    status          TEXT NOT NULL,
    started_at      TEXT NOT NULL,
    finished_at     TEXT,
    extracted_count INTEGER NOT NULL DEFAULT 0,
    error_text      TEXT,
    metadata_json   TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS pm_jobs (
    job_name          TEXT PRIMARY KEY,
    last_started_at   TEXT,
    last_completed_at TEXT,
    last_status       TEXT,
    last_run_id       INTEGER,
    updated_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pm_job_runs (
    run_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name        TEXT NOT NULL,
    started_at      TEXT NOT NULL,
    finished_at     TEXT,
    status          TEXT NOT NULL,
    processed_count INTEGER NOT NULL DEFAULT 0,
    error_text      TEXT,
    metadata_json   TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS pm_embeddings (
    item_id    TEXT PRIMARY KEY,
    item_type  TEXT NOT NULL DEFAULT 'memory',
    model_name TEXT NOT NULL,
    dimension  INTEGER NOT NULL,
    vector     BLOB NOT NULL,      -- float32 packed bytes
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id            TEXT PRIMARY KEY,
    content       TEXT NOT NULL,
    source_type   TEXT NOT NULL DEFAULT 'text',
    source_url    TEXT,
    summary       TEXT,
    tags_json     TEXT NOT NULL DEFAULT '[]',
    project       TEXT,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pm_sources_last_seen ON pm_sources(last_seen_at DESC);
CREATE INDEX IF NOT EXISTS idx_pm_versions_source ON pm_source_versions(source_id, version DESC);
CREATE INDEX IF NOT EXISTS idx_pm_memories_source ON pm_memories(source_id);
CREATE INDEX IF NOT EXISTS idx_pm_memories_updated ON pm_memories(updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_pm_memcat_memory ON pm_memory_categories(memory_id);
CREATE INDEX IF NOT EXISTS idx_pm_memcat_category ON pm_memory_categories(category_id);
CREATE INDEX IF NOT EXISTS idx_pm_related_memory ON pm_related_memories(memory_id);
CREATE INDEX IF NOT EXISTS idx_pm_evidence_memory ON pm_memory_evidence(memory_id);
CREATE INDEX IF NOT EXISTS idx_pm_runs_source ON pm_extraction_runs(source_id);
CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_notes_project ON notes(project);
"""

MAX_LIST_LIMIT = 500
MAX_EXPORT_LIMIT = 5000


def _pack_vector(vec: Sequence[float]) -> bytes:
    """Pack float list to bytes (float32)."""
    return struct.pack(f"{len(vec)}f", *vec)


def _unpack_vector(data: bytes, dim: int) -> List[float]:
    """Unpack bytes to float list (float32)."""
    return list(struct.unpack(f"{dim}f", data))


def _clamp(value: Any, lo: int, hi: int, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, n))


def _dumps(value: Any) -> str:
    return json.dumps(value if value is not None else {}, ensure_ascii=False)


class MemoryStore:
    """
    SQLite-backed store for sources, versions, memories and notes.

    Every multi-row mutation (category replace, evidence replace, memory
    deletion with its dependents) runs inside a single transaction.
    """

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """Open (or create) the database and seed the category buckets.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
        """
        self._db_path = db_path
        self._lock = threading.RLock()
        self._tx_depth = 0
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA_SQL)
        self._migrate_current_version(self._conn)
        with self.transaction():
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'projmem')",
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', datetime('now'))",
            )
            self._seed_categories()
        logger.info("MemoryStore initialized: %s", db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    @staticmethod
    def _migrate_current_version(conn) -> None:
        """Add ``pm_sources.current_version`` to older databases and backfill it."""
        try:
            conn.execute("ALTER TABLE pm_sources ADD COLUMN current_version INTEGER")
        except sqlite3.OperationalError:
            pass  # Column already exists
        conn.execute(
            """UPDATE pm_sources SET current_version =
                   (SELECT MAX(version) FROM pm_source_versions v
                    WHERE v.source_id = pm_sources.source_id)
               WHERE current_version IS NULL"""
        )

    def _seed_categories(self) -> None:
        now = _now_iso()
        for bucket in Bucket:
            self._conn.execute(
                """INSERT OR IGNORE INTO pm_categories
                   (category_id, slug, display_name, description,
                    is_top_level, created_at, updated_at)
                   VALUES (?,?,?,?,1,?,?)""",
                (bucket.category_id, bucket.value, bucket.label,
                 bucket.description, now, now),
            )

    @contextmanager
    def transaction(self) -> Iterator[MemoryStore]:
        """Hold the lock and group writes into one transaction.

        Nested calls join the outermost transaction.
        """
        with self._lock:
            outer = self._tx_depth == 0
            if outer:
                self._conn.execute("BEGIN")
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK")
                raise
            self._tx_depth -= 1
            if outer:
                self._conn.execute("COMMIT")

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Sources -----------------------------------------------------------

    def upsert_source(
        self,
        source_id: str,
        filename: str,
        path: Optional[str] = None,
        kind: str = "markdown",
        checksum: Optional[str] = None,
        seen_at: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Source:
        """Insert or refresh a source.  Always clears the soft-delete flag."""
        seen = seen_at or _now_iso()
        with self._lock:
            self._conn.execute(
                """INSERT INTO pm_sources
                   (source_id, source_filename, source_path, source_kind,
                    is_deleted, deleted_at, first_seen_at, last_seen_at,
                    last_checksum, metadata_json)
                   VALUES (?,?,?,?,0,NULL,?,?,?,?)
                   ON CONFLICT(source_id) DO UPDATE SET
                    source_filename = excluded.source_filename,
                    source_path = COALESCE(excluded.source_path, pm_sources.source_path),
                    source_kind = excluded.source_kind,
                    is_deleted = 0,
                    deleted_at = NULL,
                    last_seen_at = excluded.last_seen_at,
                    last_checksum = excluded.last_checksum,
                    metadata_json = excluded.metadata_json""",
                (source_id, filename, path, kind, seen, seen, checksum,
                 _dumps(metadata)),
            )
            return self.get_source(source_id)

    def mark_source_deleted(
        self,
        source_id: str,
        deleted_at: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Source]:
        """Soft-delete a source.  Versions and memories are kept."""
        when = deleted_at or _now_iso()
        with self._lock:
            existing = self.get_source(source_id)
            if existing is None:
                return None
            merged = {**existing.metadata, **(metadata or {})}
            self._conn.execute(
                """UPDATE pm_sources
                   SET is_deleted = 1, deleted_at = ?, last_seen_at = ?, metadata_json = ?
                   WHERE source_id = ?""",
                (when, when, _dumps(merged), source_id),
            )
            logger.info("Source soft-deleted: %s", source_id)
            return self.get_source(source_id)

    def get_source(self, source_id: str) -> Optional[Source]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pm_sources WHERE source_id = ?", (source_id,)
            ).fetchone()
        return Source.from_row(row) if row else None

    def list_sources(self, include_deleted: bool = False, limit: int = 100) -> List[Source]:
        where = "" if include_deleted else "WHERE is_deleted = 0"
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM pm_sources {where} ORDER BY last_seen_at DESC LIMIT ?",
                (_clamp(limit, 1, MAX_EXPORT_LIMIT, 100),),
            ).fetchall()
        return [Source.from_row(r) for r in rows]

    # -- Versions ----------------------------------------------------------

    def get_latest_version(self, source_id: str) -> Optional[SourceVersion]:
        """Highest-numbered version, regardless of which one is current."""
        with self._lock:
            row = self._conn.execute(
                """SELECT * FROM pm_source_versions WHERE source_id = ?
                   ORDER BY version DESC LIMIT 1""",
                (source_id,),
            ).fetchone()
        return SourceVersion.from_row(row) if row else None

    def get_current_version(self, source_id: str) -> Optional[SourceVersion]:
        """Version the source's content last resolved to (follows reverts)."""
        with self._lock:
            row = self._conn.execute(
                """SELECT v.* FROM pm_source_versions v
                   JOIN pm_sources s ON s.source_id = v.source_id
                   WHERE s.source_id = ? AND v.version = s.current_version""",
                (source_id,),
            ).fetchone()
        if row is None:
            return self.get_latest_version(source_id)
        return SourceVersion.from_row(row)

    def get_source_version(self, source_id: str, version: int) -> Optional[SourceVersion]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pm_source_versions WHERE source_id = ? AND version = ?",
                (source_id, version),
            ).fetchone()
        return SourceVersion.from_row(row) if row else None

    def list_source_versions(self, source_id: str) -> List[SourceVersion]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_source_versions WHERE source_id = ? ORDER BY version ASC",
                (source_id,),
            ).fetchall()
        return [SourceVersion.from_row(r) for r in rows]

    def _set_current_version(self, source_id: str, version: int) -> None:
        self._conn.execute(
            "UPDATE pm_sources SET current_version = ? WHERE source_id = ?",
            (version, source_id),
        )

    def create_version_if_changed(
        self,
        source_id: str,
        checksum: str,
        content: str,
        fuzzy_checksum: Optional[str] = None,
        agentfs_uri: Optional[str] = None,
        content_bytes: Optional[int] = None,
        created_at: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> VersionResult:
        """Append a version only when *checksum* differs from the current one.

        Content that reverts to an older version's checksum reuses that
        version row (``changed=True``, reporting the old version number)
        since ``(source_id, checksum)`` is unique; the row becomes current,
        so an identical follow-up ingest is unchanged.  New content always
        gets ``MAX(version) + 1``.
        """
        with self.transaction():
            current = self.get_current_version(source_id)
            if current is not None and current.checksum == checksum:
                return VersionResult(changed=False, version=current.version, row=current)

            prior = self._conn.execute(
                "SELECT * FROM pm_source_versions WHERE source_id = ? AND checksum = ?",
                (source_id, checksum),
            ).fetchone()
            if prior is not None:
                row = SourceVersion.from_row(prior)
                self._set_current_version(source_id, row.version)
                logger.info(
                    "Source %s reverted to version %d content", source_id, row.version,
                )
                return VersionResult(changed=True, version=row.version, row=row)

            latest = self.get_latest_version(source_id)
            next_version = latest.version + 1 if latest else 1
            size = content_bytes if content_bytes is not None else len(content.encode("utf-8"))
            self._conn.execute(
                """INSERT INTO pm_source_versions
                   (source_id, version, checksum, fuzzy_hash, content_markdown,
                    agentfs_uri, content_bytes, created_at, metadata_json)
                   VALUES (?,?,?,?,?,?,?,?,?)""",
                (source_id, next_version, checksum, fuzzy_checksum, content,
                 agentfs_uri, size, created_at or _now_iso(), _dumps(metadata)),
            )
            self._set_current_version(source_id, next_version)
            return VersionResult(
                changed=True,
                version=next_version,
                row=self.get_source_version(source_id, next_version),
            )

    def load_source_version_for_extraction(
        self, source_id: str, version: Optional[int] = None,
    ) -> SourceVersion:
        """Return the requested (or current) version; raise LookupError if absent."""
        row = (
            self.get_current_version(source_id) if version is None
            else self.get_source_version(source_id, version)
        )
        if row is None:
            raise LookupError(
                f"Unknown source version: {source_id} v{version if version else 'current'}"
            )
        return row

    def list_current_versions(self) -> List[SourceVersion]:
        """Current version of every non-deleted source."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT v.* FROM pm_source_versions v
                   JOIN pm_sources s ON s.source_id = v.source_id
                   WHERE s.is_deleted = 0
                     AND v.version = COALESCE(
                         s.current_version,
                         (SELECT MAX(version) FROM pm_source_versions
                          WHERE source_id = v.source_id))
                   ORDER BY s.first_seen_at ASC, v.source_id ASC"""
            ).fetchall()
        return [SourceVersion.from_row(r) for r in rows]

    # -- Memories ----------------------------------------------------------

    def get_memory_record(self, memory_id: str) -> Optional[MemoryRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pm_memories WHERE memory_id = ?", (memory_id,)
            ).fetchone()
        return MemoryRecord.from_row(row) if row else None

    def upsert_memory_record(
        self,
        memory_id: str,
        source_id: str,
        latest_version: int,
        summary_auto: Optional[str] = None,
        tags_auto: Optional[List[str]] = None,
        links_auto: Optional[List[str]] = None,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryRecord:
        """Insert or update the automated fields of a memory.

        Manual overrides and ``created_at`` of an existing row are kept;
        metadata is merged over the existing metadata.
        """
        now = _now_iso()
        with self._lock:
            existing = self.get_memory_record(memory_id)
            merged = {**(existing.metadata if existing else {}), **(metadata or {})}
            self._conn.execute(
                """INSERT INTO pm_memories
                   (memory_id, source_id, latest_version, summary_auto,
                    tags_auto_json, links_auto_json, created_at, updated_at,
                    metadata_json)
                   VALUES (?,?,?,?,?,?,?,?,?)
                   ON CONFLICT(memory_id) DO UPDATE SET
                    source_id = excluded.source_id,
                    latest_version = excluded.latest_version,
                    summary_auto = excluded.summary_auto,
                    tags_auto_json = excluded.tags_auto_json,
                    links_auto_json = excluded.links_auto_json,
                    updated_at = excluded.updated_at,
                    metadata_json = excluded.metadata_json""",
                (memory_id, source_id, latest_version, summary_auto,
                 json.dumps(tags_auto or []), json.dumps(links_auto or []),
                 created_at or now, updated_at or now, _dumps(merged)),
            )
            return self.get_memory_record(memory_id)

    def set_manual_fields(
        self,
        memory_id: str,
        title: Optional[str] = None,
        notes: Optional[str] = None,
        pinned_tags: Optional[List[str]] = None,
    ) -> Optional[MemoryRecord]:
        """Write user-entered overrides.  ``None`` leaves a field unchanged."""
        sets: List[str] = []
        params: list = []
        if title is not None:
            sets.append("title_manual = ?")
            params.append(title)
        if notes is not None:
            sets.append("notes_manual = ?")
            params.append(notes)
        if pinned_tags is not None:
            sets.append("pinned_tags_json = ?")
            params.append(json.dumps(pinned_tags))
        with self._lock:
            if sets:
                sets.append("updated_at = ?")
                params.append(_now_iso())
                self._conn.execute(
                    f"UPDATE pm_memories SET {', '.join(sets)} WHERE memory_id = ?",
                    params + [memory_id],
                )
            return self.get_memory_record(memory_id)

    def list_memory_records(self, limit: int = 50) -> List[MemoryRecord]:
        """Most recently updated first; *limit* clamped to [1, 500]."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_memories ORDER BY updated_at DESC, memory_id ASC LIMIT ?",
                (_clamp(limit, 1, MAX_LIST_LIMIT, 50),),
            ).fetchall()
        return [MemoryRecord.from_row(r) for r in rows]

    def list_memory_records_by_updated_range(
        self, start_iso: str, end_iso: str, limit: int = 2000,
    ) -> List[MemoryRecord]:
        """Export-style listing of memories updated within [start, end].

        Raises:
            InputError: On malformed timestamps or an inverted range.
        """
        try:
            start = parse_iso(start_iso)
            end = parse_iso(end_iso)
        except (TypeError, ValueError) as exc:
            raise InputError(f"Invalid date range: {exc}") from exc
        if start > end:
            raise InputError(f"Invalid date range: {start_iso} is after {end_iso}")
        bounded = _clamp(limit, 1, MAX_EXPORT_LIMIT, 2000)
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_memories ORDER BY updated_at ASC, memory_id ASC"
            ).fetchall()
        out: List[MemoryRecord] = []
        for row in rows:
            rec = MemoryRecord.from_row(row)
            try:
                updated = parse_iso(rec.updated_at)
            except ValueError:
                continue
            if start <= updated <= end:
                out.append(rec)
                if len(out) >= bounded:
                    break
        return out

    def list_memory_records_by_source(self, source_id: str) -> List[MemoryRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_memories WHERE source_id = ? ORDER BY updated_at DESC",
                (source_id,),
            ).fetchall()
        return [MemoryRecord.from_row(r) for r in rows]

    def list_extracted_memories(self, source_id: str) -> List[MemoryRecord]:
        """Pipeline-owned atomic memories of a source (metadata filter in Python)."""
        return [
            r for r in self.list_memory_records_by_source(source_id) if r.is_extracted
        ]

    def list_recent_extracted_memories(self, limit: int = 500) -> List[MemoryRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_memories ORDER BY created_at DESC, memory_id ASC"
            ).fetchall()
        out: List[MemoryRecord] = []
        for row in rows:
            rec = MemoryRecord.from_row(row)
            if rec.is_extracted:
                out.append(rec)
                if len(out) >= limit:
                    break
        return out

    def delete_memory_record(self, memory_id: str) -> bool:
        """Delete a memory with its categories (every source), links, evidence and embedding."""
        with self.transaction():
            self._conn.execute(
                "DELETE FROM pm_memory_categories WHERE memory_id = ?", (memory_id,)
            )
            self._conn.execute(
                "DELETE FROM pm_related_memories WHERE memory_id = ? OR related_memory_id = ?",
                (memory_id, memory_id),
            )
            self._conn.execute(
                "DELETE FROM pm_memory_evidence WHERE memory_id = ?", (memory_id,)
            )
            self._conn.execute(
                "DELETE FROM pm_embeddings WHERE item_id = ?", (memory_id,)
            )
            cur = self._conn.execute(
                "DELETE FROM pm_memories WHERE memory_id = ?", (memory_id,)
            )
            return cur.rowcount > 0

    # -- Categories --------------------------------------------------------

    def list_categories(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_categories ORDER BY category_id"
            ).fetchall()
        return [dict(r) for r in rows]

    def replace_memory_categories_by_source(
        self,
        memory_id: str,
        assignment_source: str,
        assignments: Sequence[Dict[str, Any]],
        assigned_at: Optional[str] = None,
    ) -> int:
        """Replace one assignment source's categories for a memory.

        Each assignment is ``{"category_id", "confidence"?, "reason"?}``.
        Rows of other assignment sources are untouched.
        """
        when = assigned_at or _now_iso()
        with self.transaction():
            self._conn.execute(
                "DELETE FROM pm_memory_categories WHERE memory_id = ? AND assignment_source = ?",
                (memory_id, assignment_source),
            )
            for a in assignments:
                self._conn.execute(
                    """INSERT INTO pm_memory_categories
                       (memory_id, category_id, assignment_source, confidence,
                        reason, created_at, updated_at)
                       VALUES (?,?,?,?,?,?,?)
                       ON CONFLICT(memory_id, category_id, assignment_source) DO UPDATE SET
                        confidence = excluded.confidence,
                        reason = excluded.reason,
                        updated_at = excluded.updated_at""",
                    (memory_id, a["category_id"], assignment_source,
                     a.get("confidence"), a.get("reason"), when, when),
                )
        return len(assignments)

    def list_memory_categories(
        self, memory_id: str, assignment_source: Optional[str] = None,
    ) -> List[CategoryAssignment]:
        sql = "SELECT * FROM pm_memory_categories WHERE memory_id = ?"
        params: list = [memory_id]
        if assignment_source:
            sql += " AND assignment_source = ?"
            params.append(assignment_source)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY id", params).fetchall()
        return [CategoryAssignment.from_row(r) for r in rows]

    # -- Related links -----------------------------------------------------

    def upsert_related_memory(
        self,
        memory_id: str,
        related_memory_id: str,
        relation_type: str = "related",
        confidence: Optional[float] = None,
        reason: Optional[str] = None,
        linked_at: Optional[str] = None,
    ) -> None:
        when = linked_at or _now_iso()
        with self._lock:
            self._conn.execute(
                """INSERT INTO pm_related_memories
                   (memory_id, related_memory_id, relation_type, confidence,
                    reason, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?)
                   ON CONFLICT(memory_id, related_memory_id, relation_type) DO UPDATE SET
                    confidence = excluded.confidence,
                    reason = excluded.reason,
                    updated_at = excluded.updated_at""",
                (memory_id, related_memory_id, relation_type or "related",
                 confidence, reason, when, when),
            )

    def list_related_memories(self, memory_id: str) -> List[RelatedLink]:
        """Outgoing links of a memory."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_related_memories WHERE memory_id = ? ORDER BY id",
                (memory_id,),
            ).fetchall()
        return [RelatedLink.from_row(r) for r in rows]

    # -- Source aliases ----------------------------------------------------

    def upsert_source_alias(
        self,
        alias_source_id: str,
        canonical_source_id: str,
        reason: Optional[str] = None,
        confidence: Optional[float] = None,
        is_active: bool = False,
        updated_at: Optional[str] = None,
    ) -> SourceAlias:
        when = updated_at or _now_iso()
        with self._lock:
            self._conn.execute(
                """INSERT INTO pm_source_aliases
                   (alias_source_id, canonical_source_id, reason, confidence,
                    is_active, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?)
                   ON CONFLICT(alias_source_id) DO UPDATE SET
                    canonical_source_id = excluded.canonical_source_id,
                    reason = excluded.reason,
                    confidence = excluded.confidence,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at""",
                (alias_source_id, canonical_source_id, reason, confidence,
                 int(bool(is_active)), when, when),
            )
            return self.get_source_alias(alias_source_id)

    def get_source_alias(self, alias_source_id: str) -> Optional[SourceAlias]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pm_source_aliases WHERE alias_source_id = ?",
                (alias_source_id,),
            ).fetchone()
        return SourceAlias.from_row(row) if row else None

    def list_source_aliases(self, active_only: bool = False) -> List[SourceAlias]:
        where = "WHERE is_active = 1" if active_only else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM pm_source_aliases {where} ORDER BY created_at, alias_source_id"
            ).fetchall()
        return [SourceAlias.from_row(r) for r in rows]

    # -- Evidence ----------------------------------------------------------

    def replace_memory_evidence(
        self,
        memory_id: str,
        source_id: str,
        source_version: int,
        evidence_items: Sequence[EvidenceSpan],
        created_at: Optional[str] = None,
    ) -> int:
        """Drop every prior evidence row of *memory_id*, then insert the new set."""
        when = created_at or _now_iso()
        with self.transaction():
            self._conn.execute(
                "DELETE FROM pm_memory_evidence WHERE memory_id = ?", (memory_id,)
            )
            for ev in evidence_items:
                self._conn.execute(
                    """INSERT INTO pm_memory_evidence
                       (memory_id, source_id, source_version, start_offset,
                        end_offset, evidence_text, created_at, metadata_json)
                       VALUES (?,?,?,?,?,?,?,?)""",
                    (memory_id, source_id, source_version, ev.start_offset,
                     ev.end_offset, ev.evidence_text, when, _dumps(ev.metadata)),
                )
        return len(evidence_items)

    def list_memory_evidence(self, memory_id: str) -> List[EvidenceSpan]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM pm_memory_evidence WHERE memory_id = ? ORDER BY id",
                (memory_id,),
            ).fetchall()
        return [EvidenceSpan.from_row(r) for r in rows]

    # -- Extraction runs ---------------------------------------------------

    def start_extraction_run(
        self,
        source_id: str,
        source_version: int,
        model: str,
        started_at: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._lock:
            cur = self._conn.execute(
                """INSERT INTO pm_extraction_runs
                   (source_id, source_version, model, status, started_at, metadata_json)
                   VALUES (?,?,?,'running',?,?)""",
                (source_id, source_version, model or "unknown",
                 started_at or _now_iso(), _dumps(metadata)),
            )
            return int(cur.lastrowid)

    def finish_extraction_run(
        self,
        run_id: int,
        status: str,
        finished_at: Optional[str] = None,
        extracted_count: int = 0,
        error_text: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Move a running run to ``success`` or ``failed``, exactly once."""
        if status not in ("success", "failed"):
            raise ValueError(f"Invalid terminal status: {status!r}")
        with self._lock:
            cur = self._conn.execute(
                """UPDATE pm_extraction_runs
                   SET status = ?, finished_at = ?, extracted_count = ?,
                       error_text = ?, metadata_json = ?
                   WHERE run_id = ? AND status = 'running'""",
                (status, finished_at or _now_iso(), extracted_count, error_text,
                 _dumps(metadata), run_id),
            )
            if cur.rowcount == 0:
                raise ValueError(f"Extraction run {run_id} is not running")

    def get_extraction_run(self, run_id: int) -> Optional[ExtractionRun]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pm_extraction_runs WHERE run_id = ?", (run_id,)
            ).fetchone()
        return ExtractionRun.from_row(row) if row else None

    def list_extraction_runs(self, source_id: Optional[str] = None) -> List[ExtractionRun]:
        sql = "SELECT * FROM pm_extraction_runs"
        params: list = []
        if source_id:
            sql += " WHERE source_id = ?"
            params.append(source_id)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY run_id", params).fetchall()
        return [ExtractionRun.from_row(r) for r in rows]

    # -- Job runs ----------------------------------------------------------

    def start_job_run(
        self, job_name: str, metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        now = _now_iso()
        with self.transaction():
            cur = self._conn.execute(
                """INSERT INTO pm_job_runs (job_name, started_at, status, metadata_json)
                   VALUES (?,?,'running',?)""",
                (job_name, now, _dumps(metadata)),
            )
            run_id = int(cur.lastrowid)
            self._conn.execute(
                """INSERT INTO pm_jobs
                   (job_name, last_started_at, last_status, last_run_id, updated_at)
                   VALUES (?,?,'running',?,?)
                   ON CONFLICT(job_name) DO UPDATE SET
                    last_started_at = excluded.last_started_at,
                    last_status = excluded.last_status,
                    last_run_id = excluded.last_run_id,
                    updated_at = excluded.updated_at""",
                (job_name, now, run_id, now),
            )
        return run_id

    def finish_job_run(
        self,
        run_id: int,
        status: str,
        processed_count: int = 0,
        error_text: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if status not in ("success", "failed"):
            raise ValueError(f"Invalid terminal status: {status!r}")
        now = _now_iso()
        with self.transaction():
            cur = self._conn.execute(
                """UPDATE pm_job_runs
                   SET status = ?, finished_at = ?, processed_count = ?,
                       error_text = ?, metadata_json = ?
                   WHERE run_id = ? AND status = 'running'""",
                (status, now, processed_count, error_text, _dumps(metadata), run_id),
            )
            if cur.rowcount == 0:
                raise ValueError(f"Job run {run_id} is not running")
            self._conn.execute(
                """UPDATE pm_jobs SET last_completed_at = ?, last_status = ?, updated_at = ?
                   WHERE last_run_id = ?""",
                (now, status, now, run_id),
            )

    def list_job_runs(self, job_name: Optional[str] = None) -> List[JobRun]:
        sql = "SELECT * FROM pm_job_runs"
        params: list = []
        if job_name:
            sql += " WHERE job_name = ?"
            params.append(job_name)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY run_id", params).fetchall()
        return [JobRun.from_row(r) for r in rows]

    # -- Notes -------------------------------------------------------------

    def insert_note(self, note: Note) -> Note:
        with self._lock:
            self._conn.execute(
                """INSERT INTO notes
                   (id, content, source_type, source_url, summary, tags_json,
                    project, created_at, updated_at, metadata_json)
                   VALUES (?,?,?,?,?,?,?,?,?,?)""",
                (note.id, note.content, note.source_type, note.source_url,
                 note.summary, json.dumps(note.tags), note.project,
                 note.created_at, note.updated_at, _dumps(note.metadata)),
            )
        return note

    def update_note_enrichment(
        self,
        note_id: str,
        summary: str,
        tags: List[str],
        project: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Note]:
        with self._lock:
            self._conn.execute(
                """UPDATE notes
                   SET summary = ?, tags_json = ?, project = ?, metadata_json = ?, updated_at = ?
                   WHERE id = ?""",
                (summary, json.dumps(tags), project, _dumps(metadata), _now_iso(), note_id),
            )
            return self.get_note(note_id)

    def get_note(self, note_id: str) -> Optional[Note]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
        return Note.from_row(row) if row else None

    def list_notes(self, project: Optional[str] = None, limit: int = 20) -> List[Note]:
        """Newest first, optionally restricted to one project."""
        sql = "SELECT * FROM notes"
        params: list = []
        if project:
            sql += " WHERE project = ?"
            params.append(project)
        sql += " ORDER BY created_at DESC, id ASC LIMIT ?"
        params.append(_clamp(limit, 1, MAX_EXPORT_LIMIT, 20))
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Note.from_row(r) for r in rows]

    def list_projects(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT project, COUNT(*) AS count FROM notes
                   WHERE project IS NOT NULL AND project != ''
                   GROUP BY project ORDER BY count DESC, project ASC"""
            ).fetchall()
        return [{"project": r["project"], "count": r["count"]} for r in rows]

    # -- Embeddings --------------------------------------------------------

    def write_embedding(
        self,
        item_id: str,
        vector: Sequence[float],
        model_name: str,
        item_type: str = "memory",
    ) -> None:
        """Store an embedding vector for a memory or note."""
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO pm_embeddings
                   (item_id, item_type, model_name, dimension, vector, created_at)
                   VALUES (?,?,?,?,?,?)""",
                (item_id, item_type, model_name, len(vector),
                 _pack_vector(vector), _now_iso()),
            )

    def read_embeddings(self, item_ids: Sequence[str]) -> Dict[str, List[float]]:
        """Return ``{item_id: vector}`` for the ids that have one."""
        if not item_ids:
            return {}
        out: Dict[str, List[float]] = {}
        ids = list(item_ids)
        with self._lock:
            # chunked to stay under SQLite's bound-parameter limit
            for i in range(0, len(ids), 500):
                chunk = ids[i:i + 500]
                marks = ",".join("?" for _ in chunk)
                rows = self._conn.execute(
                    f"SELECT item_id, dimension, vector FROM pm_embeddings WHERE item_id IN ({marks})",
                    chunk,
                ).fetchall()
                for row in rows:
                    out[row["item_id"]] = _unpack_vector(row["vector"], row["dimension"])
        return out

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            def count(sql: str) -> int:
                return self._conn.execute(sql).fetchone()[0]

            return {
                "sources": count("SELECT COUNT(*) FROM pm_sources WHERE is_deleted = 0"),
                "deleted_sources": count("SELECT COUNT(*) FROM pm_sources WHERE is_deleted = 1"),
                "versions": count("SELECT COUNT(*) FROM pm_source_versions"),
                "memories": count("SELECT COUNT(*) FROM pm_memories"),
                "evidence": count("SELECT COUNT(*) FROM pm_memory_evidence"),
                "aliases": count("SELECT COUNT(*) FROM pm_source_aliases"),
                "extraction_runs": count("SELECT COUNT(*) FROM pm_extraction_runs"),
                "notes": count("SELECT COUNT(*) FROM notes"),
                "embeddings": count("SELECT COUNT(*) FROM pm_embeddings"),
            }
