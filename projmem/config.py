"""
projmem Configuration

Configuration dataclasses for the store, the extractor, the embedder, the
retrieval ranking and the answer builder.  Includes load_config() for
reading a JSON config file with silent fallback to compiled defaults, and
from_env() for the PROJMEM_* environment variables.

Precedence (invariant):
    CLI --flag  >  PROJMEM_* env var  >  config file  >  compiled default
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _check_mode(errors: List[str], name: str, value: str) -> None:
    if value not in ("stdin", "file"):
        errors.append(f"{name}: {value!r} not in ('stdin', 'file')")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".projmem/memory.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.db_path:
            errors.append("store.db_path: must not be empty")
        return errors


@dataclass
class ExtractorConfig:
    """Atomic-fact extractor (LLM subprocess).  No command = unavailable."""
    llm_cmd: Optional[str] = None
    model: str = "llm-command"
    llm_mode: Literal["stdin", "file"] = "stdin"
    timeout: int = 300
    max_memories: int = 50

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_mode(errors, "extractor.llm_mode", self.llm_mode)
        _check_range(errors, "extractor.timeout", self.timeout, 1, 3600, int)
        _check_range(errors, "extractor.max_memories", self.max_memories, 1, 500, int)
        return errors


@dataclass
class EmbedderConfig:
    """Embedding provider.  No command = deterministic pseudo-embedding."""
    embed_cmd: Optional[str] = None
    model_name: str = "pseudo-sha256"
    dims: int = 256
    timeout: int = 60

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "embedder.dims", self.dims, 8, 8192, int)
        _check_range(errors, "embedder.timeout", self.timeout, 1, 3600, int)
        return errors


@dataclass
class RetrievalConfig:
    """Hybrid ranking weights and windows."""
    semantic_weight: float = 0.82
    lexical_weight: float = 0.13
    recency_weight: float = 0.05
    recency_days: int = 30
    candidate_window: int = 500
    default_limit: int = 15
    max_limit: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "retrieval.semantic_weight", self.semantic_weight, 0.0, 1.0, float)
        _check_range(errors, "retrieval.lexical_weight", self.lexical_weight, 0.0, 1.0, float)
        _check_range(errors, "retrieval.recency_weight", self.recency_weight, 0.0, 1.0, float)
        _check_range(errors, "retrieval.recency_days", self.recency_days, 1, 3650, int)
        _check_range(errors, "retrieval.candidate_window", self.candidate_window, 1, 100000, int)
        _check_range(errors, "retrieval.max_limit", self.max_limit, 1, 1000, int)
        _check_range(errors, "retrieval.default_limit", self.default_limit, 1, self.max_limit, int)
        return errors


@dataclass
class AnswerConfig:
    """Answer/context builder.  No command = heuristic answers."""
    llm_cmd: Optional[str] = None
    llm_mode: Literal["stdin", "file"] = "stdin"
    timeout: int = 120
    ask_limit: int = 6
    context_limit: int = 8

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_mode(errors, "answer.llm_mode", self.llm_mode)
        _check_range(errors, "answer.timeout", self.timeout, 1, 3600, int)
        _check_range(errors, "answer.ask_limit", self.ask_limit, 1, 100, int)
        _check_range(errors, "answer.context_limit", self.context_limit, 1, 100, int)
        return errors


@dataclass
class ProjmemConfig:
    """Top-level projmem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    embedder: EmbedderConfig = field(default_factory=EmbedderConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    answer: AnswerConfig = field(default_factory=AnswerConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ProjmemConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "extractor" in d:
            kwargs["extractor"] = ExtractorConfig(**d["extractor"])
        if "embedder" in d:
            kwargs["embedder"] = EmbedderConfig(**d["embedder"])
        if "retrieval" in d:
            kwargs["retrieval"] = RetrievalConfig(**d["retrieval"])
        if "answer" in d:
            kwargs["answer"] = AnswerConfig(**d["answer"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.extractor.validate())
        errors.extend(self.embedder.validate())
        errors.extend(self.retrieval.validate())
        errors.extend(self.answer.validate())
        weights = (self.retrieval.semantic_weight + self.retrieval.lexical_weight
                   + self.retrieval.recency_weight)
        if weights <= 0:
            errors.append("retrieval: weights must not all be zero")
        return errors

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> ProjmemConfig:
        """Overlay PROJMEM_* environment variables (in place)."""
        env = os.environ if environ is None else environ
        if env.get("PROJMEM_DB"):
            self.store.db_path = env["PROJMEM_DB"]
        llm = env.get("PROJMEM_LLM")
        if llm:
            self.answer.llm_cmd = llm
            if not self.extractor.llm_cmd:
                self.extractor.llm_cmd = llm
        if env.get("PROJMEM_EXTRACT_LLM"):
            self.extractor.llm_cmd = env["PROJMEM_EXTRACT_LLM"]
        if env.get("PROJMEM_EXTRACT_MODEL"):
            self.extractor.model = env["PROJMEM_EXTRACT_MODEL"]
        if env.get("PROJMEM_EMBED_CMD"):
            self.embedder.embed_cmd = env["PROJMEM_EMBED_CMD"]
        return self


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> ProjmemConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        ProjmemConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = ProjmemConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = ProjmemConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = ProjmemConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
