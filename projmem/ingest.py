"""
Ingestion entrypoints.

``ingest`` is the one call upstream transports (CLI, MCP, bridges) make with
markdown they already hold.  ``ingest_file`` converts a document on disk to
markdown first.  Both validate input before anything is written.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from projmem.convert import convert_to_markdown
from projmem.extraction import ExtractionPipeline, IngestResult
from projmem.types import InputError

logger = logging.getLogger(__name__)


def ingest(
    pipeline: ExtractionPipeline,
    filename: Optional[str],
    markdown: Optional[str],
    *,
    source_path: Optional[str] = None,
    external_source_id: Optional[str] = None,
    agentfs_uri: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    source_kind: str = "markdown",
) -> IngestResult:
    """Ingest one markdown document.

    Args:
        pipeline: Extraction pipeline bound to a store and extractor.
        filename: Display name; also the identity when no external id is given.
        markdown: Document body (required, non-blank).
        source_path: Optional original path, kept as provenance.
        external_source_id: Stable caller-side identity (``ext:`` ids).
        agentfs_uri: Optional pointer to the stored original.
        metadata: Free-form provenance copied onto source, version and memories.

    Raises:
        InputError: Missing filename and external id, or blank markdown.
        ExtractorUnavailable: Extraction was needed but the model is unusable.
        EmptyExtractionError: The extractor returned nothing usable.
    """
    name = (filename or "").strip()
    ext_id = (external_source_id or "").strip()
    if not name and not ext_id:
        raise InputError("filename or external source id is required")
    if markdown is None or not str(markdown).strip():
        raise InputError("markdown is required")
    if metadata is not None and not isinstance(metadata, dict):
        raise InputError("metadata must be an object")

    result = pipeline.process(
        name or ext_id,
        str(markdown),
        source_path=(source_path or "").strip() or None,
        external_source_id=ext_id or None,
        agentfs_uri=(agentfs_uri or "").strip() or None,
        source_kind=source_kind,
        metadata=metadata,
    )
    logger.info(
        "Ingested %s: version=%d changed=%s skipped=%s memories=%d",
        result.source.source_id, result.version, result.changed,
        result.extraction_skipped, result.extracted_count,
    )
    return result


def ingest_file(
    pipeline: ExtractionPipeline,
    path: str,
    *,
    external_source_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> IngestResult:
    """Convert a file to markdown and ingest it under its path.

    Raises:
        FileNotFoundError: When the file does not exist.
        ImportError: When the converter for its format is not installed.
        InputError: When the converted document is empty.
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"No such file: {path}")
    markdown = convert_to_markdown(str(p))
    meta = {"createdFrom": "file", **(metadata or {})}
    return ingest(
        pipeline,
        p.name,
        markdown,
        source_path=str(p.resolve()),
        external_source_id=external_source_id,
        metadata=meta,
        source_kind=p.suffix.lower().lstrip(".") or "markdown",
    )
