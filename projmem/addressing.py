"""
Content Addressing — stable identities and checksums (pure, no I/O)

Sources, versions and memories are identified by hashes of what they are,
not by counters.  Re-ingesting identical input therefore resolves to the
same rows.
"""

from __future__ import annotations

import hashlib
import re
from typing import Optional

from projmem.types import InputError

EXTERNAL_PREFIX = "ext:"
MAX_STATEMENT_LENGTH = 600
MEMORY_ID_PREFIX = "mem_"

_WS_RE = re.compile(r"\s+")
_HSPACE_RE = re.compile(r"[ \t]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_SLASH_RUN_RE = re.compile(r"/+")


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_newlines(content: str) -> str:
    return (content or "").replace("\r\n", "\n").replace("\r", "\n")


def collapse_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


# ---------------------------------------------------------------------------
# Source identity
# ---------------------------------------------------------------------------


def normalize_external_id(external_id: Optional[str]) -> str:
    """Trim, collapse whitespace, lowercase and drop any ``ext:`` prefix."""
    value = collapse_whitespace(external_id or "").lower()
    if value.startswith(EXTERNAL_PREFIX):
        value = value[len(EXTERNAL_PREFIX):].strip()
    return value


def normalize_path(filename: str) -> str:
    """Lowercase and slash-normalize a filename or path."""
    value = (filename or "").strip().replace("\\", "/")
    return _SLASH_RUN_RE.sub("/", value).lower()


def derive_source_id(
    filename: Optional[str] = None,
    external_id: Optional[str] = None,
) -> str:
    """Derive the content-independent source id.

    An external id wins when present (``ext:<normalized>``).  Otherwise the
    id is the SHA-256 of the normalized filename, so identical filenames
    collide on purpose.

    Raises:
        InputError: When neither a filename nor an external id is given.
    """
    ext = normalize_external_id(external_id)
    if ext:
        return EXTERNAL_PREFIX + ext
    path = normalize_path(filename or "")
    if not path:
        raise InputError("filename or external source id is required")
    return _sha256(path)


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------


def checksum(content: str) -> str:
    """SHA-256 of the content with newlines normalized to ``\\n``."""
    return _sha256(normalize_newlines(content))


def fuzzy_normalize(content: str) -> str:
    """Case-fold, collapse tabs/spaces, strip line ends, collapse blank runs."""
    text = normalize_newlines(content).casefold()
    lines = [_HSPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


def fuzzy_checksum(content: str) -> str:
    """Whitespace- and case-insensitive checksum for near-duplicate detection."""
    return _sha256(fuzzy_normalize(content))


# ---------------------------------------------------------------------------
# Memory identity
# ---------------------------------------------------------------------------


def normalize_statement(statement: str, max_length: int = MAX_STATEMENT_LENGTH) -> str:
    return collapse_whitespace(statement)[:max_length].strip()


def fingerprint(kind: str, statement: str) -> str:
    """Hash of (lowercased kind, normalized statement)."""
    return _sha256(f"{(kind or '').strip().lower()}\n{normalize_statement(statement)}")


def derive_memory_id(source_id: str, fact_fingerprint: str) -> str:
    return MEMORY_ID_PREFIX + _sha256(f"{source_id}\n{fact_fingerprint}")[:32]
