"""
LLM Collaborators — subprocess-backed extractor and answerer

Any command that reads a prompt on stdin (or from a file path appended to
its argv) and prints a completion on stdout can serve as the model:
``claude -p``, ``ollama run mistral``, ``llm -m gpt-4o-mini`` ...

The extractor has no fallback: a missing or failing command raises
``ExtractorUnavailable`` so callers can tell "the model is down" apart from
"the model found nothing".
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import tempfile
from typing import Any, Dict, List, Optional, Protocol

from projmem.types import Bucket, CandidateFact, ExtractionDecision

logger = logging.getLogger(__name__)

MAX_EXTRACTED_MEMORIES = 50
MAX_TITLE_LENGTH = 140
MAX_TAGS = 12
MAX_TAG_LENGTH = 40
MAX_EVIDENCE_LENGTH = 400
MIN_STATEMENT_LENGTH = 10
MAX_STATEMENT_LENGTH = 600

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class ExtractorUnavailable(RuntimeError):
    """The extraction model is not configured, not reachable, or unusable."""

    pass


# ---------------------------------------------------------------------------
# Subprocess invocation
# ---------------------------------------------------------------------------


def invoke_llm(
    cmd: str,
    prompt: str,
    *,
    mode: str = "stdin",
    timeout: int = 300,
) -> str:
    """Invoke an LLM command as a subprocess.

    Args:
        cmd: Shell command string (e.g. "claude -p", "ollama run mistral").
        prompt: The full prompt text to send.
        mode: "stdin" (pipe prompt to stdin) or "file" (write temp file, append path).
        timeout: Subprocess timeout in seconds (default: 5 minutes).

    Returns:
        LLM output (stdout).

    Raises:
        RuntimeError: If the LLM command fails or times out.
    """
    args = shlex.split(cmd)
    if not args:
        raise RuntimeError("LLM command is empty")

    prompt_path = None
    if mode == "file":
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".txt", delete=False, prefix="projmem_prompt_",
            encoding="utf-8",
        ) as f:
            f.write(prompt)
            f.flush()
            prompt_path = f.name
        args.append(prompt_path)
        stdin_data = None
    else:
        stdin_data = prompt

    try:
        result = subprocess.run(
            args,
            input=stdin_data,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"LLM command timed out after {timeout}s: {cmd}")
    except FileNotFoundError:
        raise RuntimeError(f"LLM command not found: {args[0]!r}")
    finally:
        if prompt_path is not None and os.path.exists(prompt_path):
            os.unlink(prompt_path)

    if result.returncode != 0:
        stderr_preview = (result.stderr or "").strip()[:200]
        raise RuntimeError(
            f"LLM command failed (exit {result.returncode}): {stderr_preview}"
        )

    return result.stdout


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse a JSON object from model output, tolerating prose around it.

    Raises:
        ValueError: When no JSON object can be recovered.
    """
    raw = (text or "").strip()
    try:
        value = json.loads(raw)
    except ValueError:
        match = _JSON_OBJECT_RE.search(raw)
        if not match:
            raise ValueError("no JSON object in model output")
        value = json.loads(match.group(0))
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class Extractor(Protocol):
    model: str

    def extract(
        self,
        source_id: str,
        source_filename: str,
        source_version: int,
        markdown: str,
    ) -> ExtractionDecision:
        ...


class Answerer(Protocol):
    def complete(self, instructions: str, prompt: str) -> str:
        ...


class CommandLLM:
    """Text completion through an LLM command."""

    def __init__(self, cmd: str, *, mode: str = "stdin", timeout: int = 120):
        self.cmd = cmd
        self.mode = mode
        self.timeout = timeout

    def complete(self, instructions: str, prompt: str) -> str:
        full = f"{instructions.strip()}\n\n{prompt.strip()}\n"
        return invoke_llm(self.cmd, full, mode=self.mode, timeout=self.timeout).strip()

    def complete_json(self, instructions: str, prompt: str) -> Dict[str, Any]:
        return parse_json_object(self.complete(instructions, prompt))


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

EXTRACTOR_INSTRUCTIONS = "\n".join([
    "Extract atomic user memory units from input markdown.",
    "A memory unit must be concise, standalone, and useful for future personalization.",
    "Prefer durable facts, preferences, commitments, decisions, events, people context, "
    "and high-value knowledge/resources.",
    "Do not copy full paragraphs verbatim. Produce short normalized statements.",
    "Reply with one JSON object only, shaped as:",
    '{"memories": [{"kind": "<bucket>", "statement": "...", "title": "...", '
    '"tags": ["..."], "confidence": 0.0, "evidenceText": "..."}], "summary": "..."}',
    "kind is one of: " + ", ".join(b.value for b in Bucket) + ".",
])


def _clean_candidate(item: Any) -> Optional[CandidateFact]:
    """Coerce one raw memory dict into a CandidateFact, or None if unusable."""
    if not isinstance(item, dict):
        return None
    fact = CandidateFact.from_dict(item)
    fact.kind = fact.kind.strip().lower()
    fact.statement = fact.statement.strip()[:MAX_STATEMENT_LENGTH]
    if not fact.kind or len(fact.statement) < MIN_STATEMENT_LENGTH:
        return None
    if fact.title:
        fact.title = str(fact.title).strip()[:MAX_TITLE_LENGTH] or None
    fact.tags = [t.strip()[:MAX_TAG_LENGTH] for t in fact.tags if t and t.strip()][:MAX_TAGS]
    if fact.confidence is not None:
        try:
            fact.confidence = min(1.0, max(0.0, float(fact.confidence)))
        except (TypeError, ValueError):
            fact.confidence = None
    if fact.evidence_text:
        fact.evidence_text = str(fact.evidence_text).strip()[:MAX_EVIDENCE_LENGTH] or None
    return fact


def decision_from_dict(data: Dict[str, Any], max_memories: int = MAX_EXTRACTED_MEMORIES) -> ExtractionDecision:
    """Validate and clamp a raw extractor reply."""
    raw = data.get("memories") or []
    if not isinstance(raw, list):
        raise ValueError("'memories' must be a list")
    memories: List[CandidateFact] = []
    for item in raw[:max_memories]:
        fact = _clean_candidate(item)
        if fact is not None:
            memories.append(fact)
    summary = data.get("summary")
    return ExtractionDecision(
        memories=memories,
        summary=str(summary)[:400] if summary else None,
    )


class CommandExtractor:
    """Extractor backed by an LLM command returning JSON."""

    def __init__(
        self,
        cmd: Optional[str],
        *,
        model: str = "llm-command",
        mode: str = "stdin",
        timeout: int = 300,
        max_memories: int = MAX_EXTRACTED_MEMORIES,
    ):
        self.cmd = cmd
        self.model = model
        self.mode = mode
        self.timeout = timeout
        self.max_memories = max_memories

    def build_prompt(
        self, source_id: str, source_filename: str, source_version: int, markdown: str,
    ) -> str:
        context = json.dumps({
            "sourceId": source_id,
            "sourceFilename": source_filename,
            "sourceVersion": source_version,
        })
        return "\n\n".join([
            EXTRACTOR_INSTRUCTIONS,
            "Extract atomic memories from this source.",
            "Source context:",
            context,
            "Markdown:",
            markdown,
        ])

    def extract(
        self,
        source_id: str,
        source_filename: str,
        source_version: int,
        markdown: str,
    ) -> ExtractionDecision:
        if not self.cmd:
            raise ExtractorUnavailable(
                "An extractor command is required for memory extraction "
                "(set PROJMEM_EXTRACT_LLM or extractor.llm_cmd)."
            )
        prompt = self.build_prompt(source_id, source_filename, source_version, markdown)
        try:
            output = invoke_llm(self.cmd, prompt, mode=self.mode, timeout=self.timeout)
        except RuntimeError as exc:
            raise ExtractorUnavailable(str(exc)) from exc
        try:
            decision = decision_from_dict(parse_json_object(output), self.max_memories)
        except ValueError as exc:
            raise ExtractorUnavailable(f"Unusable extractor output: {exc}") from exc
        logger.debug(
            "Extractor returned %d candidate(s) for %s v%d",
            len(decision.memories), source_id, source_version,
        )
        return decision
