"""
Organizer and consolidator passes.

The organizer re-files memories into buckets and links related memories; the
consolidator proposes duplicate sources.  Both follow the same shape: load a
bounded batch, ask the model for a decision (or use the deterministic
fallback), then write the decision through the ``apply_*`` functions, which
only ever touch their own assignment source.

Decision dicts use the camelCase keys the model is told to produce
(``memoryId``, ``relatedMemoryId``, ``aliasMemoryId`` ...); snake_case keys
are accepted too.

Aliases are review-first: they are written inactive unless the proposal says
otherwise, and nothing here merges or deletes a memory.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from projmem.llm import CommandLLM
from projmem.store import MemoryStore, _clamp
from projmem.types import (
    CONSOLIDATOR_SOURCE,
    ORGANIZER_SOURCE,
    Bucket,
    MemoryRecord,
    _now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 120
MAX_BATCH_LIMIT = 250
FALLBACK_ORGANIZER_RECORDS = 100
MAX_REASON_LENGTH = 240

ORGANIZER_JOB = "memory-organizer"
CONSOLIDATOR_JOB = "memory-consolidator"

ORGANIZER_INSTRUCTIONS = "\n".join([
    "You classify consumer memory items into top-level buckets and suggest related-memory links.",
    "Never invent memory IDs. Only use memory IDs present in the input.",
    "Prefer conservative links with explicit confidence when uncertain.",
    "Reply with one JSON object only, shaped as:",
    '{"categoryAssignments": [{"memoryId": "...", "bucket": "<bucket>", '
    '"confidence": 0.0, "reason": "..."}], '
    '"relatedLinks": [{"memoryId": "...", "relatedMemoryId": "...", '
    '"confidence": 0.0, "reason": "..."}], "summary": "..."}',
    "bucket is one of: " + ", ".join(b.value for b in Bucket) + ".",
])

CONSOLIDATOR_INSTRUCTIONS = "\n".join([
    "You propose duplicate/alias candidates for memory sources.",
    "Avoid aggressive merges. Favor high-confidence duplicate pairs only.",
    "Set isActive false for review-first behavior unless exact duplicate "
    "confidence is very high.",
    "Reply with one JSON object only, shaped as:",
    '{"aliasProposals": [{"canonicalMemoryId": "...", "aliasMemoryId": "...", '
    '"confidence": 0.0, "reason": "...", "isActive": false}], "summary": "..."}',
])


def _pick(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _confidence(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return None


def _reason(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:MAX_REASON_LENGTH] or None


def _bucket_of(item: Dict[str, Any]) -> Bucket:
    raw = str(_pick(item, "bucket", "category", "categoryId", "category_id") or "")
    raw = raw.strip().lower()
    if raw.startswith("cat_"):
        raw = raw[len("cat_"):]
    return Bucket.from_kind(raw)


# ---------------------------------------------------------------------------
# Batch loading
# ---------------------------------------------------------------------------


def record_to_decision_input(rec: MemoryRecord) -> Dict[str, Any]:
    """Shape one record the way the organizer and consolidator see it."""
    eff = rec.effective_fields()
    return {
        "memoryId": rec.memory_id,
        "sourceId": rec.source_id,
        "latestVersion": rec.latest_version,
        "effectiveTitle": eff["title"],
        "effectiveSummary": eff["summary"],
        "effectiveTags": eff["tags"],
        "metadata": rec.metadata,
    }


def get_memory_decision_batch(
    store: MemoryStore, limit: int = DEFAULT_BATCH_LIMIT,
) -> List[Dict[str, Any]]:
    """Most recently updated memories, at most 250."""
    bounded = _clamp(limit, 1, MAX_BATCH_LIMIT, DEFAULT_BATCH_LIMIT)
    return [record_to_decision_input(r) for r in store.list_memory_records(bounded)]


# ---------------------------------------------------------------------------
# Deterministic fallbacks
# ---------------------------------------------------------------------------


def fallback_organizer(records: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Park everything in the inbox with low confidence; no links."""
    return {
        "categoryAssignments": [
            {
                "memoryId": r["memoryId"],
                "bucket": Bucket.INBOX.value,
                "confidence": 0.25,
                "reason": "fallback_default",
            }
            for r in list(records)[:FALLBACK_ORGANIZER_RECORDS]
        ],
        "relatedLinks": [],
        "summary": "fallback organizer output used because model is unavailable",
    }


def fallback_consolidator(records: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "aliasProposals": [],
        "summary": f"fallback consolidator output used with {len(records)} records",
    }


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


def apply_organizer_decisions(
    store: MemoryStore,
    category_assignments: Sequence[Dict[str, Any]],
    related_links: Sequence[Dict[str, Any]],
    assignment_source: str = ORGANIZER_SOURCE,
) -> Dict[str, int]:
    """Write organizer categories and links.

    Categories replace, per memory, the rows of *assignment_source* only.
    Links are written in both directions.  Self-links and unknown memory
    ids are skipped.
    """
    now = _now_iso()
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in category_assignments or []:
        memory_id = _pick(item, "memoryId", "memory_id")
        if not memory_id:
            continue
        bucket = _bucket_of(item)
        rows = grouped.setdefault(str(memory_id), [])
        if any(r["category_id"] == bucket.category_id for r in rows):
            continue
        rows.append({
            "category_id": bucket.category_id,
            "confidence": _confidence(item.get("confidence")),
            "reason": _reason(item.get("reason")),
        })

    category_count = 0
    relation_count = 0
    with store.transaction():
        for memory_id, rows in grouped.items():
            if store.get_memory_record(memory_id) is None:
                logger.debug("Organizer skipped unknown memory %s", memory_id)
                continue
            category_count += store.replace_memory_categories_by_source(
                memory_id, assignment_source, rows, assigned_at=now,
            )

        for item in related_links or []:
            left = _pick(item, "memoryId", "memory_id")
            right = _pick(item, "relatedMemoryId", "related_memory_id")
            if not left or not right or left == right:
                continue
            if store.get_memory_record(left) is None or store.get_memory_record(right) is None:
                logger.debug("Organizer skipped link %s -> %s", left, right)
                continue
            relation = str(_pick(item, "relationType", "relation_type") or "related")
            confidence = _confidence(item.get("confidence"))
            reason = _reason(item.get("reason"))
            store.upsert_related_memory(left, right, relation, confidence, reason, now)
            store.upsert_related_memory(right, left, relation, confidence, reason, now)
            relation_count += 1

    return {
        "applied_category_count": category_count,
        "applied_relation_count": relation_count,
    }


def apply_consolidator_alias_proposals(
    store: MemoryStore,
    alias_proposals: Sequence[Dict[str, Any]],
    proposal_source: str = CONSOLIDATOR_SOURCE,
    default_is_active: bool = False,
) -> Dict[str, int]:
    """Resolve memory-id pairs to their sources and record alias proposals."""
    applied = 0
    now = _now_iso()
    with store.transaction():
        for item in alias_proposals or []:
            canonical_id = _pick(item, "canonicalMemoryId", "canonical_memory_id")
            alias_id = _pick(item, "aliasMemoryId", "alias_memory_id")
            if not canonical_id or not alias_id:
                continue
            canonical = store.get_memory_record(canonical_id)
            alias = store.get_memory_record(alias_id)
            if canonical is None or alias is None:
                logger.debug("Consolidator skipped unresolvable pair %s / %s",
                             canonical_id, alias_id)
                continue
            if canonical.source_id == alias.source_id:
                continue
            is_active = item.get("isActive", item.get("is_active"))
            store.upsert_source_alias(
                alias.source_id,
                canonical.source_id,
                reason=_reason(item.get("reason")) or f"proposed by {proposal_source}",
                confidence=_confidence(item.get("confidence")),
                is_active=default_is_active if is_active is None else bool(is_active),
                updated_at=now,
            )
            applied += 1
    return {"applied_alias_count": applied}


def propose_fuzzy_aliases(store: MemoryStore, confidence: float = 0.9) -> int:
    """Propose inactive aliases between sources with the same fuzzy checksum.

    The earliest-seen source of each group is canonical.  An alias that a
    reviewer already activated is left alone.
    """
    groups: Dict[str, List[str]] = {}
    for version in store.list_current_versions():
        if version.fuzzy_checksum:
            groups.setdefault(version.fuzzy_checksum, []).append(version.source_id)

    proposed = 0
    for members in groups.values():
        if len(members) < 2:
            continue
        canonical = members[0]
        for alias_source_id in members[1:]:
            existing = store.get_source_alias(alias_source_id)
            if existing is not None and existing.is_active:
                continue
            store.upsert_source_alias(
                alias_source_id, canonical,
                reason="fuzzy checksum match",
                confidence=confidence,
                is_active=False,
            )
            proposed += 1
    if proposed:
        logger.info("Proposed %d fuzzy alias(es)", proposed)
    return proposed


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def _decide(
    llm: Optional[CommandLLM],
    instructions: str,
    records: List[Dict[str, Any]],
    fallback,
) -> Dict[str, Any]:
    """Ask the model; fall back to the deterministic decision.  Adds ``mode``."""
    if not records:
        decision = fallback(records)
        decision["mode"] = "empty"
        return decision
    if llm is None:
        decision = fallback(records)
        decision["mode"] = "fallback"
        return decision
    prompt = json.dumps({"records": records}, ensure_ascii=False, default=str)
    try:
        decision = llm.complete_json(instructions, prompt)
    except (RuntimeError, ValueError) as exc:
        logger.warning("Model decision failed, using fallback: %s", exc)
        decision = fallback(records)
        decision["mode"] = "fallback"
        return decision
    decision["mode"] = "model"
    return decision


def _as_list(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def run_organizer_pass(
    store: MemoryStore,
    llm: Optional[CommandLLM] = None,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> Dict[str, Any]:
    """Load a batch, decide, apply; recorded as a job run."""
    run_id = store.start_job_run(ORGANIZER_JOB, metadata={"limit": limit})
    try:
        records = get_memory_decision_batch(store, limit)
        decision = _decide(llm, ORGANIZER_INSTRUCTIONS, records, fallback_organizer)
        applied = apply_organizer_decisions(
            store,
            _as_list(decision.get("categoryAssignments")),
            _as_list(decision.get("relatedLinks")),
        )
    except Exception as exc:
        store.finish_job_run(run_id, "failed", error_text=f"{type(exc).__name__}: {exc}")
        raise

    summary = (
        f"applied {applied['applied_category_count']} category assignments and "
        f"{applied['applied_relation_count']} related-memory links"
    )
    store.finish_job_run(
        run_id, "success",
        processed_count=len(records),
        metadata={"mode": decision["mode"], "summary": decision.get("summary"), **applied},
    )
    logger.info("Organizer pass %d (%s): %s", run_id, decision["mode"], summary)
    return {
        "run_id": run_id,
        "mode": decision["mode"],
        "processed_count": len(records),
        "summary": summary,
        **applied,
    }


def run_consolidator_pass(
    store: MemoryStore,
    llm: Optional[CommandLLM] = None,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> Dict[str, Any]:
    """Fuzzy-checksum proposals plus model (or fallback) alias proposals."""
    run_id = store.start_job_run(CONSOLIDATOR_JOB, metadata={"limit": limit})
    try:
        fuzzy_count = propose_fuzzy_aliases(store)
        records = get_memory_decision_batch(store, limit)
        decision = _decide(llm, CONSOLIDATOR_INSTRUCTIONS, records, fallback_consolidator)
        applied = apply_consolidator_alias_proposals(
            store, _as_list(decision.get("aliasProposals")),
        )
    except Exception as exc:
        store.finish_job_run(run_id, "failed", error_text=f"{type(exc).__name__}: {exc}")
        raise

    summary = (
        f"persisted {applied['applied_alias_count']} alias proposals "
        f"and {fuzzy_count} fuzzy alias proposals"
    )
    store.finish_job_run(
        run_id, "success",
        processed_count=len(records),
        metadata={
            "mode": decision["mode"],
            "summary": decision.get("summary"),
            "fuzzy_alias_count": fuzzy_count,
            **applied,
        },
    )
    logger.info("Consolidator pass %d (%s): %s", run_id, decision["mode"], summary)
    return {
        "run_id": run_id,
        "mode": decision["mode"],
        "processed_count": len(records),
        "fuzzy_alias_count": fuzzy_count,
        "summary": summary,
        **applied,
    }
