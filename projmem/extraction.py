"""
Extraction Pipeline — versioned sources to atomic memories

Two layers:

``apply_extracted_memories``
    Deterministic persistence of extractor output for one source version:
    fingerprint, upsert, category + evidence replacement, stale pruning and
    legacy cleanup, all inside one store transaction.

``ExtractionPipeline``
    The orchestrator.  Decides whether a (re)ingest needs the extractor at
    all, records an ExtractionRun around the call, and re-raises failures.

States of one ingest call::

    skip      content unchanged, extracted rows present, no legacy row
    running   ExtractionRun opened, extractor invoked
    success   memories persisted, run closed with the count
    failed    run closed with the error text, exception re-raised
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from projmem.addressing import (
    checksum,
    derive_memory_id,
    derive_source_id,
    fingerprint,
    fuzzy_checksum,
    normalize_statement,
)
from projmem.embedding import Embedder
from projmem.llm import MIN_STATEMENT_LENGTH, Extractor, ExtractorUnavailable
from projmem.store import MemoryStore
from projmem.types import (
    EXTRACTED_MEMORY_KIND,
    EXTRACTOR_SOURCE,
    Bucket,
    CandidateFact,
    EvidenceSpan,
    MemoryRecord,
    Source,
    SourceVersion,
    _now_iso,
)

logger = logging.getLogger(__name__)


class EmptyExtractionError(ValueError):
    """Zero usable candidates and ``allow_empty`` not set; nothing was written."""

    pass


# ---------------------------------------------------------------------------
# Evidence location
# ---------------------------------------------------------------------------


def locate_evidence(
    markdown: str, *needles: Optional[str],
) -> Tuple[Optional[int], Optional[int], Optional[str]]:
    """Find the first needle in *markdown*.

    Each needle is tried as a literal case-insensitive substring, then with
    any whitespace run matching any other whitespace run.  Returns
    ``(start, end, excerpt)`` with ``end`` exclusive, or ``(None, None,
    first_needle)`` when nothing matches.
    """
    candidates = [n.strip() for n in needles if n and n.strip()]
    if not markdown or not candidates:
        return None, None, candidates[0] if candidates else None
    for needle in candidates:
        m = re.search(re.escape(needle), markdown, re.IGNORECASE)
        if m is None:
            pattern = r"\s+".join(re.escape(tok) for tok in needle.split())
            m = re.search(pattern, markdown, re.IGNORECASE)
        if m is not None:
            return m.start(), m.end(), markdown[m.start():m.end()]
    return None, None, candidates[0]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@dataclass
class ApplyResult:
    extracted_count: int = 0
    memory_ids: List[str] = field(default_factory=list)
    pruned_ids: List[str] = field(default_factory=list)
    legacy_removed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "extracted_count": self.extracted_count,
            "memory_ids": list(self.memory_ids),
            "pruned_ids": list(self.pruned_ids),
            "legacy_removed": self.legacy_removed,
        }


def _prepare_candidates(
    candidates: Sequence[Union[CandidateFact, Dict[str, Any]]],
) -> List[Tuple[CandidateFact, str, str, str]]:
    """Normalize, filter and dedupe.  Returns (fact, kind, statement, fingerprint)."""
    prepared: List[Tuple[CandidateFact, str, str, str]] = []
    seen: set = set()
    for raw in candidates:
        fact = raw if isinstance(raw, CandidateFact) else CandidateFact.from_dict(raw)
        kind = (fact.kind or "").strip().lower()
        statement = normalize_statement(fact.statement)
        if not kind or len(statement) < MIN_STATEMENT_LENGTH:
            continue
        fp = fingerprint(kind, statement)
        if fp in seen:
            continue
        seen.add(fp)
        prepared.append((fact, kind, statement, fp))
    return prepared


def apply_extracted_memories(
    store: MemoryStore,
    source_id: str,
    source_version: int,
    candidates: Sequence[Union[CandidateFact, Dict[str, Any]]],
    *,
    allow_empty: bool = False,
    metadata: Optional[Dict[str, Any]] = None,
) -> ApplyResult:
    """Persist one extraction pass for a source version.

    Memory ids are ``hash(source_id, hash(kind, statement))``: the same fact
    re-extracted updates its row, a reworded fact gets a new one.  Rows of
    this source that the pass did not produce are deleted with all their
    dependents, and the legacy document row (``memory_id == source_id``)
    is removed.

    Raises:
        EmptyExtractionError: No candidate survived filtering and
            *allow_empty* is False.  Raised before any write.
    """
    prepared = _prepare_candidates(candidates)
    if not prepared and not allow_empty:
        raise EmptyExtractionError(
            f"Extraction for {source_id} v{source_version} produced no usable "
            f"memories; refusing to prune existing memories (pass allow_empty=True)"
        )

    version_row = store.get_source_version(source_id, source_version)
    markdown = version_row.content_markdown if version_row else ""
    now = _now_iso()
    result = ApplyResult()

    with store.transaction():
        for fact, kind, statement, fp in prepared:
            memory_id = derive_memory_id(source_id, fp)
            bucket = Bucket.from_kind(kind)
            start, end, excerpt = locate_evidence(markdown, fact.evidence_text, statement)
            meta = {
                **(metadata or {}),
                "memoryKind": EXTRACTED_MEMORY_KIND,
                "extractedKind": kind,
                "bucket": bucket.value,
                "fingerprint": fp,
                "statement": statement,
                "title": fact.title,
                "confidence": fact.confidence,
                "sourceVersion": source_version,
            }
            store.upsert_memory_record(
                memory_id, source_id, source_version,
                summary_auto=statement,
                tags_auto=list(fact.tags),
                created_at=now,
                updated_at=now,
                metadata=meta,
            )
            store.replace_memory_categories_by_source(
                memory_id, EXTRACTOR_SOURCE,
                [{
                    "category_id": bucket.category_id,
                    "confidence": fact.confidence,
                    "reason": f"extracted kind: {kind}",
                }],
                assigned_at=now,
            )
            store.replace_memory_evidence(
                memory_id, source_id, source_version,
                [EvidenceSpan(
                    memory_id=memory_id,
                    source_id=source_id,
                    source_version=source_version,
                    start_offset=start,
                    end_offset=end,
                    evidence_text=excerpt,
                    metadata={"matched": start is not None},
                )],
                created_at=now,
            )
            result.memory_ids.append(memory_id)

        keep = set(result.memory_ids)
        for rec in store.list_extracted_memories(source_id):
            if rec.memory_id not in keep:
                store.delete_memory_record(rec.memory_id)
                result.pruned_ids.append(rec.memory_id)

        if store.get_memory_record(source_id) is not None:
            result.legacy_removed = store.delete_memory_record(source_id)

    result.extracted_count = len(result.memory_ids)
    logger.info(
        "Applied %d memories for %s v%d (pruned=%d, legacy_removed=%s)",
        result.extracted_count, source_id, source_version,
        len(result.pruned_ids), result.legacy_removed,
    )
    return result


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass
class IngestResult:
    """Outcome of one ingest (or re-extraction) call."""

    source: Source
    extracted_memories: List[MemoryRecord]
    extracted_count: int
    extraction_run_id: Optional[int]
    version: int
    changed: bool
    extraction_skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "extracted_memories": [m.to_dict() for m in self.extracted_memories],
            "extracted_count": self.extracted_count,
            "extraction_run_id": self.extraction_run_id,
            "version": self.version,
            "changed": self.changed,
            "extraction_skipped": self.extraction_skipped,
        }


class ExtractionPipeline:
    """Drive the extractor for versioned sources and persist its output."""

    def __init__(
        self,
        store: MemoryStore,
        extractor: Optional[Extractor] = None,
        embedder: Optional[Embedder] = None,
    ):
        self.store = store
        self.extractor = extractor
        self.embedder = embedder

    @property
    def model_name(self) -> str:
        if self.extractor is None:
            return "unavailable"
        return getattr(self.extractor, "model", None) or type(self.extractor).__name__

    def process(
        self,
        filename: str,
        markdown: str,
        *,
        source_path: Optional[str] = None,
        external_source_id: Optional[str] = None,
        agentfs_uri: Optional[str] = None,
        source_kind: str = "markdown",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        """Version the content and extract when needed.

        Input validation happens in ``projmem.ingest.ingest``.
        """
        source_id = derive_source_id(filename, external_source_id)
        digest = checksum(markdown)
        now = _now_iso()
        meta = dict(metadata or {})

        self.store.upsert_source(
            source_id, filename,
            path=source_path,
            kind=source_kind,
            checksum=digest,
            seen_at=now,
            metadata=meta,
        )
        version = self.store.create_version_if_changed(
            source_id, digest, markdown,
            fuzzy_checksum=fuzzy_checksum(markdown),
            agentfs_uri=agentfs_uri,
            content_bytes=len(markdown.encode("utf-8")),
            created_at=now,
            metadata=meta,
        )
        source = self.store.get_source(source_id)

        if not version.changed:
            existing = self.store.list_extracted_memories(source_id)
            if existing and self.store.get_memory_record(source_id) is None:
                logger.debug("Skipping extraction for unchanged source %s v%d",
                             source_id, version.version)
                return IngestResult(
                    source=source,
                    extracted_memories=existing,
                    extracted_count=len(existing),
                    extraction_run_id=None,
                    version=version.version,
                    changed=False,
                    extraction_skipped=True,
                )

        memory_meta = {
            **meta,
            "sourceFilename": filename,
            "sourcePath": source_path,
        }
        run_id, applied = self._extract_and_apply(source, version.row, memory_meta)
        return IngestResult(
            source=source,
            extracted_memories=self._load(applied.memory_ids),
            extracted_count=applied.extracted_count,
            extraction_run_id=run_id,
            version=version.version,
            changed=version.changed,
        )

    def extract_source(
        self,
        source_id: str,
        version: Optional[int] = None,
        *,
        allow_empty: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        """Re-run extraction for a stored version without re-ingesting.

        Raises:
            LookupError: Unknown source or version.
        """
        source = self.store.get_source(source_id)
        if source is None:
            raise LookupError(f"Unknown source: {source_id}")
        row = self.store.load_source_version_for_extraction(source_id, version)
        memory_meta = {
            **source.metadata,
            **(metadata or {}),
            "sourceFilename": source.filename,
            "sourcePath": source.path,
        }
        run_id, applied = self._extract_and_apply(
            source, row, memory_meta, allow_empty=allow_empty,
        )
        return IngestResult(
            source=source,
            extracted_memories=self._load(applied.memory_ids),
            extracted_count=applied.extracted_count,
            extraction_run_id=run_id,
            version=row.version,
            changed=False,
        )

    def _extract_and_apply(
        self,
        source: Source,
        version: SourceVersion,
        metadata: Dict[str, Any],
        allow_empty: bool = False,
    ) -> Tuple[int, ApplyResult]:
        run_id = self.store.start_extraction_run(
            source.source_id, version.version, self.model_name,
            metadata={"sourceFilename": source.filename},
        )
        try:
            if self.extractor is None:
                raise ExtractorUnavailable("No extractor is configured")
            decision = self.extractor.extract(
                source.source_id, source.filename, version.version,
                version.content_markdown,
            )
            applied = apply_extracted_memories(
                self.store, source.source_id, version.version, decision.memories,
                allow_empty=allow_empty,
                metadata=metadata,
            )
        except Exception as exc:
            self.store.finish_extraction_run(
                run_id, "failed", error_text=f"{type(exc).__name__}: {exc}",
            )
            logger.error("Extraction failed for %s v%d: %s",
                         source.source_id, version.version, exc)
            raise

        self.store.finish_extraction_run(
            run_id, "success",
            extracted_count=applied.extracted_count,
            metadata={
                "summary": decision.summary,
                "prunedCount": len(applied.pruned_ids),
                "legacyRemoved": applied.legacy_removed,
            },
        )
        self._embed(applied.memory_ids)
        return run_id, applied

    def _embed(self, memory_ids: Sequence[str]) -> None:
        """Store embeddings for new memories.  Failures only cost search quality."""
        if self.embedder is None:
            return
        for memory_id in memory_ids:
            rec = self.store.get_memory_record(memory_id)
            if rec is None:
                continue
            try:
                vector = self.embedder.embed(rec.statement)
            except Exception as exc:
                logger.warning("Embedding failed for %s: %s", memory_id, exc)
                continue
            self.store.write_embedding(memory_id, vector, self.embedder.model_name)

    def _load(self, memory_ids: Sequence[str]) -> List[MemoryRecord]:
        out: List[MemoryRecord] = []
        for memory_id in memory_ids:
            rec = self.store.get_memory_record(memory_id)
            if rec is not None:
                out.append(rec)
        return out
