"""
projmem — versioned sources to cited, atomic project memories.

Markdown sources are versioned by content checksum; each new version is run
through an extractor that yields atomic memories with evidence spans back into
the source.  Memories and captured notes share one hybrid retrieval path that
feeds grounded, citation-labelled answers.  Everything lives in a single
SQLite database.
"""

__version__ = "0.1.0"

from projmem.types import (
    Bucket,
    CandidateFact,
    EvidenceSpan,
    InputError,
    MemoryRecord,
    Note,
    RankedCitation,
    Source,
    SourceVersion,
)
from projmem.store import MemoryStore, SCHEMA_VERSION
from projmem.config import ProjmemConfig
from projmem.extraction import EmptyExtractionError, ExtractionPipeline, IngestResult
from projmem.llm import ExtractorUnavailable
from projmem.service import MemoryService

__all__ = [
    "__version__",
    "Bucket",
    "CandidateFact",
    "EvidenceSpan",
    "InputError",
    "MemoryRecord",
    "Note",
    "RankedCitation",
    "Source",
    "SourceVersion",
    "MemoryStore",
    "SCHEMA_VERSION",
    "ProjmemConfig",
    "EmptyExtractionError",
    "ExtractionPipeline",
    "IngestResult",
    "ExtractorUnavailable",
    "MemoryService",
]
