"""
Stdlib text similarity and deterministic embeddings for retrieval.

Provides the pieces the hybrid ranker combines:
- **Pseudo-embedding**: a normalized vector of per-token SHA-256 hash buckets,
  reproducible byte-for-byte without any model.
- **Cosine similarity** between two vectors.
- **Lexical overlap**: fraction of query tokens present in a bag of tokens.

Also holds the heuristic summary and tag builders used when no model is
configured.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from typing import Iterable, List, Sequence

PSEUDO_DIMS = 256

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Anything outside [a-z0-9] and whitespace becomes a separator
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")

_WS_RE = re.compile(r"\s+")

STOP_WORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "into", "about",
    "have", "what", "when", "where", "which", "your", "you", "our", "are",
    "was", "were", "will", "can", "not",
})


def tokenize(text: str) -> List[str]:
    """Lowercase, replace non-alphanumerics with spaces, split."""
    cleaned = _NON_ALNUM_RE.sub(" ", (text or "").lower())
    return cleaned.split()


# ---------------------------------------------------------------------------
# Vectors
# ---------------------------------------------------------------------------


def normalize_vector(vector: Sequence[float]) -> List[float]:
    """L2-normalize; a zero vector is returned unchanged."""
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return list(vector)
    return [v / norm for v in vector]


def pseudo_embedding(text: str, dims: int = PSEUDO_DIMS) -> List[float]:
    """Deterministic hash-bucket embedding.

    Each token adds 1.0 at ``uint32_be(sha256[0:4]) % dims`` and 0.5 at
    ``uint32_be(sha256[4:8]) % dims``; the result is L2-normalized.
    """
    vector = [0.0] * dims
    for token in tokenize(text):
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        a = int.from_bytes(digest[0:4], "big") % dims
        b = int.from_bytes(digest[4:8], "big") % dims
        vector[a] += 1.0
        vector[b] += 0.5
    return normalize_vector(vector)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of two equal-length vectors; 0.0 on length mismatch or zero magnitude."""
    if a is None or b is None or len(a) != len(b):
        return 0.0
    dot = mag_a = mag_b = 0.0
    for av, bv in zip(a, b):
        dot += av * bv
        mag_a += av * av
        mag_b += bv * bv
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / math.sqrt(mag_a * mag_b)


# ---------------------------------------------------------------------------
# Lexical overlap
# ---------------------------------------------------------------------------


def lexical_overlap(query_tokens: Sequence[str], fields: Iterable[str]) -> float:
    """Fraction of query tokens (with repeats) found among the tokens of *fields*."""
    if not query_tokens:
        return 0.0
    bag = set(tokenize(" ".join(f for f in fields if f)))
    hits = sum(1 for t in query_tokens if t in bag)
    return hits / len(query_tokens)


# ---------------------------------------------------------------------------
# Heuristic enrichment
# ---------------------------------------------------------------------------


def heuristic_summary(text: str, max_len: int = 220) -> str:
    """Whitespace-collapsed text, truncated with ``...``; ``No content`` if empty."""
    normalized = _WS_RE.sub(" ", text or "").strip()
    if not normalized:
        return "No content"
    if len(normalized) <= max_len:
        return normalized
    return normalized[: max_len - 3] + "..."


def heuristic_tags(text: str, max_tags: int = 6) -> List[str]:
    """Most frequent non-stopword tokens of length >= 3 (first-seen breaks ties)."""
    tokens = [t for t in tokenize(text) if len(t) >= 3 and t not in STOP_WORDS]
    return [tok for tok, _ in Counter(tokens).most_common(max_tags)]
