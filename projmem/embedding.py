"""
Embedder collaborators.

``PseudoEmbedder`` needs nothing and is always available.  ``CommandEmbedder``
runs an external command that prints a JSON array of floats (or an object
with an ``embedding`` key) for the text it receives on stdin.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional, Protocol

from projmem.llm import invoke_llm
from projmem.similarity import PSEUDO_DIMS, pseudo_embedding

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    model_name: str

    def embed(self, text: str) -> List[float]:
        ...


class PseudoEmbedder:
    """Deterministic SHA-256 bucket embedding."""

    def __init__(self, dims: int = PSEUDO_DIMS):
        self.dims = dims
        self.model_name = f"pseudo-sha256-{dims}"

    def embed(self, text: str) -> List[float]:
        return pseudo_embedding(text, self.dims)


class CommandEmbedder:
    """Embedding through an external command.

    Raises RuntimeError on command failure or malformed output; callers
    decide whether to fall back to the pseudo-embedding.
    """

    def __init__(self, cmd: str, *, model_name: str = "command", timeout: int = 60):
        self.cmd = cmd
        self.model_name = model_name
        self.timeout = timeout

    def embed(self, text: str) -> List[float]:
        output = invoke_llm(self.cmd, text, mode="stdin", timeout=self.timeout)
        try:
            data = json.loads(output)
        except ValueError as exc:
            raise RuntimeError(f"Embedding command returned non-JSON output: {exc}") from exc
        if isinstance(data, dict):
            data = data.get("embedding")
        if not isinstance(data, list) or not data:
            raise RuntimeError("Embedding command returned no vector")
        try:
            return [float(v) for v in data]
        except (TypeError, ValueError) as exc:
            raise RuntimeError(f"Embedding vector is not numeric: {exc}") from exc


def embed_or_pseudo(embedder: Optional[Embedder], text: str) -> List[float]:
    """Embed with *embedder*, falling back to the pseudo-embedding on any error."""
    if embedder is None:
        return pseudo_embedding(text)
    try:
        return embedder.embed(text)
    except Exception as exc:
        logger.warning("Embedder %s failed, using pseudo-embedding: %s",
                       getattr(embedder, "model_name", "?"), exc)
        return pseudo_embedding(text)
