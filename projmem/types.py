"""
Data Model — Sources, Versions, Atomic Memories and their satellites

A source is one canonical input identity; each change of its content produces
an immutable version.  Atomic memories are extracted from a version and carry
evidence spans, category assignments and related-memory links.  Captured notes
live beside them and share the retrieval path.

Manual overrides on a memory (title, notes, pinned tags) are never written by
automated passes; the values shown to users come from ``effective_fields()``.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXTRACTED_MEMORY_KIND = "extracted_atomic_memory"

EXTRACTOR_SOURCE = "extractor_agent"
ORGANIZER_SOURCE = "organizer_agent"
CONSOLIDATOR_SOURCE = "consolidator_agent"

RunStatus = Literal["running", "success", "failed"]
VALID_RUN_STATUSES: set = {"running", "success", "failed"}


class InputError(ValueError):
    """Raised when caller-supplied input is missing or malformed."""

    pass


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str = "NOTE") -> str:
    """Generate a unique id with prefix (notes only; memories are content-addressed)."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (accepts a trailing ``Z``); naive -> UTC."""
    text = (value or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _loads(raw: Optional[str], default: Any) -> Any:
    """Decode a JSON column, returning *default* on NULL or garbage."""
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Category buckets
# ---------------------------------------------------------------------------


class Bucket(str, Enum):
    """Closed set of top-level categories an atomic memory can land in."""

    PREFERENCES = "preferences"
    PEOPLE = "people"
    COMMITMENTS = "commitments"
    DECISIONS = "decisions"
    KNOWLEDGE = "knowledge"
    RESOURCES = "resources"
    EVENTS = "events"
    INBOX = "inbox"

    @property
    def category_id(self) -> str:
        return f"cat_{self.value}"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def description(self) -> str:
        return _BUCKET_DESCRIPTIONS[self]

    @classmethod
    def from_kind(cls, kind: Optional[str]) -> Bucket:
        """Map an extractor ``kind`` (any casing) to its bucket.

        Unrecognized or empty kinds go to ``INBOX``.
        """
        key = (kind or "").strip().lower()
        for bucket in cls:
            if bucket.value == key:
                return bucket
        return cls.INBOX


_BUCKET_DESCRIPTIONS: Dict[Bucket, str] = {
    Bucket.PREFERENCES: "User likes, defaults, and style preferences.",
    Bucket.PEOPLE: "People, contacts, and relationship context.",
    Bucket.COMMITMENTS: "Promises, tasks, reminders, and follow-ups.",
    Bucket.DECISIONS: "Decisions taken and rationale.",
    Bucket.KNOWLEDGE: "Facts, learnings, and durable knowledge.",
    Bucket.RESOURCES: "Links, files, references, and source materials.",
    Bucket.EVENTS: "Timeline moments like meetings and appointments.",
    Bucket.INBOX: "Unclassified memory pending organization.",
}


# ---------------------------------------------------------------------------
# Sources and versions
# ---------------------------------------------------------------------------


@dataclass
class Source:
    """Canonical input identity.  Soft-deleted only, never removed."""

    source_id: str
    filename: str = ""
    path: Optional[str] = None
    kind: str = "markdown"
    is_deleted: bool = False
    deleted_at: Optional[str] = None
    first_seen_at: str = field(default_factory=_now_iso)
    last_seen_at: str = field(default_factory=_now_iso)
    last_checksum: Optional[str] = None
    current_version: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> Source:
        return cls(
            source_id=row["source_id"],
            filename=row["source_filename"],
            path=row["source_path"],
            kind=row["source_kind"],
            is_deleted=bool(row["is_deleted"]),
            deleted_at=row["deleted_at"],
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            last_checksum=row["last_checksum"],
            current_version=row["current_version"],
            metadata=_loads(row["metadata_json"], {}),
        )


@dataclass
class SourceVersion:
    """Immutable content snapshot of a source."""

    source_id: str
    version: int
    checksum: str
    content_markdown: str
    fuzzy_checksum: Optional[str] = None
    agentfs_uri: Optional[str] = None
    content_bytes: int = 0
    created_at: str = field(default_factory=_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        if not include_content:
            d.pop("content_markdown", None)
        return d

    @classmethod
    def from_row(cls, row) -> SourceVersion:
        return cls(
            source_id=row["source_id"],
            version=row["version"],
            checksum=row["checksum"],
            content_markdown=row["content_markdown"],
            fuzzy_checksum=row["fuzzy_hash"],
            agentfs_uri=row["agentfs_uri"],
            content_bytes=row["content_bytes"],
            created_at=row["created_at"],
            metadata=_loads(row["metadata_json"], {}),
        )


@dataclass
class VersionResult:
    """Outcome of ``create_version_if_changed``."""

    changed: bool
    version: int
    row: Optional[SourceVersion] = None


# ---------------------------------------------------------------------------
# Memory records
# ---------------------------------------------------------------------------


def effective_value(manual: Any, auto: Any) -> Any:
    """Return the manual override when it is set (non-empty), else *auto*."""
    if manual is None:
        return auto
    if isinstance(manual, (str, list, tuple, dict)) and len(manual) == 0:
        return auto
    return manual


@dataclass
class MemoryRecord:
    """One atomic, user-facing fact (or a legacy one-row-per-document memory)."""

    memory_id: str
    source_id: str
    latest_version: int = 1
    title_manual: Optional[str] = None
    notes_manual: Optional[str] = None
    pinned_tags: List[str] = field(default_factory=list)
    summary_auto: Optional[str] = None
    tags_auto: List[str] = field(default_factory=list)
    links_auto: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_extracted(self) -> bool:
        return self.metadata.get("memoryKind") == EXTRACTED_MEMORY_KIND

    @property
    def is_legacy(self) -> bool:
        return self.memory_id == self.source_id

    @property
    def statement(self) -> str:
        return str(self.metadata.get("statement") or self.summary_auto or "")

    def effective_fields(self) -> Dict[str, Any]:
        """Merge manual overrides over auto values (read-time only)."""
        return {
            "title": effective_value(self.title_manual, self.metadata.get("title")),
            "summary": effective_value(self.notes_manual, self.summary_auto),
            "tags": list(effective_value(self.pinned_tags, self.tags_auto) or []),
        }

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["effective"] = self.effective_fields()
        return d

    @classmethod
    def from_row(cls, row) -> MemoryRecord:
        return cls(
            memory_id=row["memory_id"],
            source_id=row["source_id"],
            latest_version=row["latest_version"],
            title_manual=row["title_manual"],
            notes_manual=row["notes_manual"],
            pinned_tags=_loads(row["pinned_tags_json"], []),
            summary_auto=row["summary_auto"],
            tags_auto=_loads(row["tags_auto_json"], []),
            links_auto=_loads(row["links_auto_json"], []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            metadata=_loads(row["metadata_json"], {}),
        )


@dataclass
class EvidenceSpan:
    """Citation of a memory back into a source version's markdown."""

    memory_id: str
    source_id: str
    source_version: int
    start_offset: Optional[int] = None
    end_offset: Optional[int] = None
    evidence_text: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> EvidenceSpan:
        return cls(
            memory_id=row["memory_id"],
            source_id=row["source_id"],
            source_version=row["source_version"],
            start_offset=row["start_offset"],
            end_offset=row["end_offset"],
            evidence_text=row["evidence_text"],
            created_at=row["created_at"],
            metadata=_loads(row["metadata_json"], {}),
        )


@dataclass
class CategoryAssignment:
    memory_id: str
    category_id: str
    assignment_source: str
    confidence: Optional[float] = None
    reason: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> CategoryAssignment:
        return cls(**{k: row[k] for k in cls.__dataclass_fields__})


@dataclass
class RelatedLink:
    """Directed edge between two memories."""

    memory_id: str
    related_memory_id: str
    relation_type: str = "related"
    confidence: Optional[float] = None
    reason: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> RelatedLink:
        return cls(**{k: row[k] for k in cls.__dataclass_fields__})


@dataclass
class SourceAlias:
    """Proposed duplicate mapping; inactive until promoted."""

    alias_source_id: str
    canonical_source_id: str
    reason: Optional[str] = None
    confidence: Optional[float] = None
    is_active: bool = False
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> SourceAlias:
        d = {k: row[k] for k in cls.__dataclass_fields__}
        d["is_active"] = bool(d["is_active"])
        return cls(**d)


# ---------------------------------------------------------------------------
# Audit rows
# ---------------------------------------------------------------------------


@dataclass
class ExtractionRun:
    run_id: int
    source_id: str
    source_version: int
    model: str
    status: RunStatus = "running"
    started_at: str = field(default_factory=_now_iso)
    finished_at: Optional[str] = None
    extracted_count: int = 0
    error_text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> ExtractionRun:
        d = {k: row[k] for k in cls.__dataclass_fields__ if k != "metadata"}
        return cls(metadata=_loads(row["metadata_json"], {}), **d)


@dataclass
class JobRun:
    """Audit row for an organizer or consolidator pass."""

    run_id: int
    job_name: str
    status: RunStatus = "running"
    started_at: str = field(default_factory=_now_iso)
    finished_at: Optional[str] = None
    processed_count: int = 0
    error_text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> JobRun:
        d = {k: row[k] for k in cls.__dataclass_fields__ if k != "metadata"}
        return cls(metadata=_loads(row["metadata_json"], {}), **d)


# ---------------------------------------------------------------------------
# Extraction I/O
# ---------------------------------------------------------------------------


@dataclass
class CandidateFact:
    """One fact proposed by the extractor, before persistence."""

    kind: str
    statement: str
    title: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    confidence: Optional[float] = None
    evidence_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> CandidateFact:
        """Build from a dict, accepting ``evidenceText`` as an alias."""
        data = dict(d)
        if "evidenceText" in data and "evidence_text" not in data:
            data["evidence_text"] = data.pop("evidenceText")
        tags = data.get("tags") or []
        if not isinstance(tags, list):
            tags = [str(tags)]
        data["tags"] = [str(t) for t in tags]
        data["kind"] = str(data.get("kind") or "")
        data["statement"] = str(data.get("statement") or "")
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class ExtractionDecision:
    memories: List[CandidateFact] = field(default_factory=list)
    summary: Optional[str] = None


# ---------------------------------------------------------------------------
# Notes and retrieval
# ---------------------------------------------------------------------------


@dataclass
class Note:
    """A searchable item: a captured note, or an atomic memory projected for search."""

    id: str
    content: str = ""
    source_type: str = "text"
    source_url: str = ""
    summary: str = ""
    tags: List[str] = field(default_factory=list)
    project: str = ""
    item_type: str = "note"
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> Note:
        return cls(
            id=row["id"],
            content=row["content"],
            source_type=row["source_type"],
            source_url=row["source_url"] or "",
            summary=row["summary"] or "",
            tags=_loads(row["tags_json"], []),
            project=row["project"] or "",
            item_type="note",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            metadata=_loads(row["metadata_json"], {}),
        )


@dataclass
class RankedCitation:
    """A retrieval hit: 1-based rank, score and the matched item."""

    rank: int
    score: float
    note: Note

    @property
    def label(self) -> str:
        return f"N{self.rank}"

    def to_dict(self) -> Dict[str, Any]:
        return {"rank": self.rank, "score": self.score, "note": self.note.to_dict()}
