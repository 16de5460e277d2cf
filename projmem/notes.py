"""
Captured notes: quick free-form entries that share the retrieval path with
extracted memories.

A note is stored immediately with heuristic summary and tags, then enriched
(summary, tags, project) by the model when one is configured, and embedded.
Enrichment never fails the capture: model errors fall back to heuristics.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from projmem.embedding import Embedder, embed_or_pseudo
from projmem.llm import Answerer, parse_json_object
from projmem.similarity import PSEUDO_DIMS, heuristic_summary, heuristic_tags
from projmem.store import MemoryStore, _clamp
from projmem.types import InputError, Note, _generate_id, _now_iso

logger = logging.getLogger(__name__)

SOURCE_TYPES = ("text", "link", "image", "file")

ENRICHMENT_INSTRUCTIONS = (
    "You are extracting memory metadata for a single-user project notebook. "
    "Output JSON only with keys: summary (<=180 chars), tags (array of 3-8 "
    "short lowercase tags), project (2-4 words)."
)


def normalize_source_type(source_type: Optional[str]) -> str:
    value = (source_type or "").strip().lower()
    return value if value in SOURCE_TYPES else "text"


def project_fallback(source_url: Optional[str], tags: List[str]) -> str:
    """Host label of the URL, else the first tag, else ``General``."""
    if source_url:
        host = urlparse(source_url).hostname or ""
        if host.startswith("www."):
            host = host[4:]
        label = host.split(".")[0]
        if label:
            return label
    if tags:
        return tags[0]
    return "General"


def note_text(note: Note) -> str:
    """Text embedded for a note."""
    parts = [
        note.content,
        note.summary,
        " ".join(note.tags),
        note.project,
        note.source_url,
    ]
    return "\n\n".join(p for p in parts if p)


def enrich_note(note: Note, answerer: Optional[Answerer] = None) -> Dict[str, Any]:
    """Return ``{summary, tags, project, source}``; ``source`` is model or heuristic."""
    fallback_summary = heuristic_summary(note.content)
    fallback_tags = heuristic_tags(note.content)
    fallback_project = note.project or project_fallback(note.source_url, fallback_tags)
    heuristic = {
        "summary": fallback_summary,
        "tags": fallback_tags,
        "project": fallback_project,
        "source": "heuristic",
    }
    if answerer is None:
        return heuristic

    prompt = "\n\n".join(p for p in [
        f"source_type: {note.source_type}",
        f"source_url: {note.source_url}" if note.source_url else "",
        f"content:\n{note.content}",
    ] if p)
    try:
        parsed = parse_json_object(answerer.complete(ENRICHMENT_INSTRUCTIONS, prompt))
    except (RuntimeError, ValueError) as exc:
        logger.warning("Note enrichment failed for %s, using heuristics: %s", note.id, exc)
        return heuristic

    summary = parsed.get("summary")
    summary = summary.strip()[:220] if isinstance(summary, str) and summary.strip() else fallback_summary
    tags = parsed.get("tags")
    if isinstance(tags, list):
        tags = [str(t).lower().strip() for t in tags if str(t).strip()][:8]
    else:
        tags = fallback_tags
    project = parsed.get("project")
    # an explicit project from the caller wins over the model's guess
    if note.project:
        project = note.project
    elif isinstance(project, str) and project.strip():
        project = project.strip()[:80]
    else:
        project = fallback_project
    return {"summary": summary, "tags": tags, "project": project, "source": "model"}


def create_note(
    store: MemoryStore,
    content: Optional[str] = "",
    *,
    source_type: str = "text",
    source_url: Optional[str] = "",
    project: Optional[str] = "",
    metadata: Optional[Dict[str, Any]] = None,
    answerer: Optional[Answerer] = None,
    embedder: Optional[Embedder] = None,
) -> Note:
    """Capture a note, enrich it and store its embedding.

    Raises:
        InputError: When both content and source URL are blank.
    """
    url = (source_url or "").strip()
    text = (content or "").strip() or url
    if not text:
        raise InputError("Missing content")

    now = _now_iso()
    note = store.insert_note(Note(
        id=_generate_id("NOTE"),
        content=text,
        source_type=normalize_source_type(source_type),
        source_url=url,
        summary=heuristic_summary(text),
        tags=heuristic_tags(f"{text} {url}"),
        project=(project or "").strip(),
        created_at=now,
        updated_at=now,
        metadata=dict(metadata or {}),
    ))

    enrichment = enrich_note(note, answerer)
    meta = {**note.metadata, "enrichmentSource": enrichment["source"], "enrichedAt": _now_iso()}
    updated = store.update_note_enrichment(
        note.id, enrichment["summary"], enrichment["tags"], enrichment["project"], meta,
    )

    vector = embed_or_pseudo(embedder, note_text(updated))
    model_name = embedder.model_name if embedder is not None else f"pseudo-sha256-{PSEUDO_DIMS}"
    store.write_embedding(updated.id, vector, model_name, item_type="note")
    logger.info("Captured note %s (project=%s, enrichment=%s)",
                updated.id, updated.project, enrichment["source"])
    return updated


def list_recent_notes(store: MemoryStore, limit: int = 20, project: str = "") -> List[Note]:
    return store.list_notes((project or "").strip() or None, _clamp(limit, 1, 200, 20))
