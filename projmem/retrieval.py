"""
Hybrid retrieval over captured notes and extracted memories.

Scoring (non-empty query)::

    score = w_sem * cosine(query_vec, item_vec)
          + w_lex * lexical_overlap(query_tokens, item_fields)
          + w_rec * max(0, 1 - age_days / recency_days)

Item vectors come from ``pm_embeddings`` when one is stored with the query
vector's dimension, otherwise from the pseudo-embedding of the item's text.
An empty query returns the most recent items with a slowly decreasing score
so callers can treat both paths the same way.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from projmem.config import RetrievalConfig
from projmem.embedding import Embedder, embed_or_pseudo
from projmem.similarity import cosine_similarity, lexical_overlap, pseudo_embedding, tokenize
from projmem.store import MemoryStore, _clamp
from projmem.types import MemoryRecord, Note, RankedCitation, parse_iso

logger = logging.getLogger(__name__)


def memory_to_note(rec: MemoryRecord) -> Note:
    """Project an atomic memory into the searchable note shape."""
    eff = rec.effective_fields()
    return Note(
        id=rec.memory_id,
        content=rec.statement,
        source_type="memory",
        source_url="",
        summary=eff["summary"] or rec.statement,
        tags=eff["tags"],
        project=str(rec.metadata.get("project") or ""),
        item_type="memory",
        created_at=rec.created_at,
        updated_at=rec.updated_at,
        metadata={
            "source_id": rec.source_id,
            "source_version": rec.latest_version,
            "bucket": rec.metadata.get("bucket"),
            "title": eff["title"],
            "source_filename": rec.metadata.get("sourceFilename"),
        },
    )


def _sort_key(note: Note) -> float:
    try:
        return parse_iso(note.created_at).timestamp()
    except (TypeError, ValueError):
        return 0.0


def load_candidates(store: MemoryStore, project: str = "", window: int = 500) -> List[Note]:
    """Newest notes and extracted memories, merged newest first."""
    project = (project or "").strip()
    notes = store.list_notes(project or None, limit=window)
    memories = [memory_to_note(r) for r in store.list_recent_extracted_memories(window)]
    if project:
        memories = [m for m in memories if m.project == project]
    merged = sorted(notes + memories, key=_sort_key, reverse=True)
    return merged[:window]


def recency_boost(created_at: str, now: datetime, days: int = 30) -> float:
    """1.0 for brand-new items, decaying linearly to 0 after *days*."""
    try:
        created = parse_iso(created_at)
    except (TypeError, ValueError):
        return 0.0
    age_days = (now - created).total_seconds() / 86400.0
    return max(0.0, min(1.0, 1.0 - age_days / days))


def _item_text(note: Note) -> str:
    return f"{note.content}\n{note.summary}"


def search_memories(
    store: MemoryStore,
    query: str = "",
    project: str = "",
    limit: Optional[int] = None,
    embedder: Optional[Embedder] = None,
    config: Optional[RetrievalConfig] = None,
    now: Optional[datetime] = None,
) -> List[RankedCitation]:
    """Rank notes and memories for *query*; ranks are 1-based."""
    cfg = config or RetrievalConfig()
    bounded = _clamp(
        cfg.default_limit if limit is None else limit,
        1, cfg.max_limit, cfg.default_limit,
    )
    q = (query or "").strip()

    if not q:
        recent = load_candidates(store, project, bounded)
        return [
            RankedCitation(rank=i + 1, score=1 - i * 0.001, note=note)
            for i, note in enumerate(recent)
        ]

    candidates = load_candidates(store, project, cfg.candidate_window)
    if not candidates:
        return []

    current = now or datetime.now(timezone.utc)
    query_tokens = tokenize(q)
    query_vec = embed_or_pseudo(embedder, q)
    stored = store.read_embeddings([c.id for c in candidates])

    scored = []
    for note in candidates:
        vec = stored.get(note.id)
        if vec is None or len(vec) != len(query_vec):
            vec = pseudo_embedding(_item_text(note), len(query_vec))
        semantic = cosine_similarity(query_vec, vec)
        lexical = lexical_overlap(
            query_tokens,
            [note.content, note.summary, " ".join(note.tags), note.project],
        )
        recency = recency_boost(note.created_at, current, cfg.recency_days)
        score = (cfg.semantic_weight * semantic
                 + cfg.lexical_weight * lexical
                 + cfg.recency_weight * recency)
        scored.append((score, note))

    scored.sort(key=lambda item: item[0], reverse=True)
    logger.debug("Search %r ranked %d candidate(s)", q, len(scored))
    return [
        RankedCitation(rank=i + 1, score=score, note=note)
        for i, (score, note) in enumerate(scored[:bounded])
    ]
