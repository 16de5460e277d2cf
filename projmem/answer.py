"""
Grounded answers and project context briefs.

Both builders retrieve first, then either ask the answerer to write a reply
citing the snippets as ``[N1]``, ``[N2]`` ..., or, with no answerer or when
it fails, list the top snippets directly.  ``[Nk]`` always refers to the
citation with rank k, in both the prompt and the returned citations.

Modes: ``empty`` (nothing retrieved), ``heuristic`` (no answerer),
``model`` (answerer reply), ``fallback`` (answerer raised).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from projmem.config import RetrievalConfig
from projmem.embedding import Embedder
from projmem.llm import Answerer
from projmem.retrieval import search_memories
from projmem.similarity import heuristic_summary
from projmem.store import MemoryStore
from projmem.types import InputError, RankedCitation

logger = logging.getLogger(__name__)

HEURISTIC_ANSWER_LINES = 4

ASK_INSTRUCTIONS = (
    "Answer ONLY using the provided memory snippets. Be concise. Every factual "
    "claim must cite at least one snippet using [N1], [N2], etc. If uncertain, "
    "say what is missing."
)

CONTEXT_INSTRUCTIONS = (
    "Build a short project context brief (decisions, open questions, next "
    "actions) from the notes. Cite snippets as [N1], [N2], etc."
)

_LABEL_RE = re.compile(r"\[N(\d+)\]")


@dataclass
class AskResult:
    answer: str
    citations: List[RankedCitation] = field(default_factory=list)
    mode: str = "empty"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "citations": [c.to_dict() for c in self.citations],
            "mode": self.mode,
        }


@dataclass
class ContextResult:
    context: str
    citations: List[RankedCitation] = field(default_factory=list)
    mode: str = "empty"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "citations": [c.to_dict() for c in self.citations],
            "mode": self.mode,
        }


def build_citation_block(citations: Sequence[RankedCitation]) -> str:
    """Render citations as labelled snippets for the answerer prompt."""
    blocks = []
    for c in citations:
        note = c.note
        blocks.append("\n".join([
            f"[{c.label}] note_id={note.id}",
            f"summary: {note.summary or ''}",
            f"project: {note.project or ''}",
            f"source_url: {note.source_url or ''}",
            f"content: {note.content or ''}",
        ]))
    return "\n\n".join(blocks)


def _snippet(c: RankedCitation) -> str:
    return c.note.summary or heuristic_summary(c.note.content, 120)


def _bullets(citations: Sequence[RankedCitation]) -> List[str]:
    return [f"- [{c.label}] {_snippet(c)}" for c in citations[:HEURISTIC_ANSWER_LINES]]


def _context_lines(citations: Sequence[RankedCitation]) -> str:
    return "\n".join(f"[{c.label}] {_snippet(c)}" for c in citations)


def sanitize_labels(text: str, citation_count: int) -> str:
    """Drop ``[Nk]`` labels that point past the last citation."""
    def keep(m: "re.Match[str]") -> str:
        k = int(m.group(1))
        return m.group(0) if 1 <= k <= citation_count else ""

    cleaned = _LABEL_RE.sub(keep, text)
    if cleaned != text:
        logger.debug("Removed out-of-range citation labels from model reply")
    return cleaned


def ask_memories(
    store: MemoryStore,
    question: str,
    project: str = "",
    limit: int = 6,
    *,
    answerer: Optional[Answerer] = None,
    embedder: Optional[Embedder] = None,
    config: Optional[RetrievalConfig] = None,
) -> AskResult:
    """Answer *question* from stored notes and memories.

    Raises:
        InputError: When the question is blank.
    """
    q = (question or "").strip()
    if not q:
        raise InputError("question is required")

    citations = search_memories(
        store, q, project, limit, embedder=embedder, config=config,
    )
    if not citations:
        return AskResult(
            answer="No relevant memory found yet. Save a few notes first.",
            mode="empty",
        )

    if answerer is None:
        return AskResult(
            answer="\n".join(["Based on your saved notes:"] + _bullets(citations)),
            citations=citations,
            mode="heuristic",
        )

    prompt = f"Question: {q}\n\nMemory snippets:\n{build_citation_block(citations)}"
    try:
        text = answerer.complete(ASK_INSTRUCTIONS, prompt)
    except Exception as exc:
        logger.warning("Answerer failed, returning snippets: %s", exc)
        return AskResult(
            answer="\n".join(
                ["I could not call the model, but these notes look relevant:"]
                + _bullets(citations)
            ),
            citations=citations,
            mode="fallback",
        )

    text = sanitize_labels((text or "").strip(), len(citations)).strip()
    return AskResult(
        answer=text or "I could not generate an answer.",
        citations=citations,
        mode="model",
    )


def build_project_context(
    store: MemoryStore,
    task: str = "",
    project: str = "",
    limit: int = 8,
    *,
    answerer: Optional[Answerer] = None,
    embedder: Optional[Embedder] = None,
    config: Optional[RetrievalConfig] = None,
) -> ContextResult:
    """Short brief for a task (or the whole project) with citations."""
    t = (task or "").strip()
    p = (project or "").strip()
    citations = search_memories(
        store, t or p or "recent", p, limit, embedder=embedder, config=config,
    )
    if not citations:
        return ContextResult(context="No project context found yet.", mode="empty")

    if answerer is None:
        return ContextResult(
            context=_context_lines(citations), citations=citations, mode="heuristic",
        )

    prompt = (
        f"Task: {t or 'Build project context'}\n\n"
        f"Snippets:\n{build_citation_block(citations)}"
    )
    try:
        text = answerer.complete(CONTEXT_INSTRUCTIONS, prompt)
    except Exception as exc:
        logger.warning("Answerer failed, returning snippets: %s", exc)
        return ContextResult(
            context=_context_lines(citations), citations=citations, mode="fallback",
        )

    text = sanitize_labels((text or "").strip(), len(citations)).strip()
    return ContextResult(
        context=text or "No context generated.",
        citations=citations,
        mode="model",
    )
