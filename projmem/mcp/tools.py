"""
projmem MCP Tools — thin wrappers around MemoryService.

Every tool returns a dict with ``status``:

    ok      result fields alongside
    error   ``message`` plus ``error_type`` (InputError, ExtractorUnavailable,
            EmptyExtractionError, LookupError ...)

Tool groups:
    INGEST:    memory_ingest, memory_ingest_file, memory_extract, memory_delete_source
    RECORDS:   memory_records, memory_export
    RECALL:    memory_search, memory_ask, memory_context
    NOTES:     memory_note, memory_notes, memory_projects
    LIFECYCLE: memory_organize, memory_consolidate, memory_stats
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from projmem.extraction import EmptyExtractionError
from projmem.llm import ExtractorUnavailable
from projmem.service import MemoryService
from projmem.types import InputError

logger = logging.getLogger(__name__)

_EXPECTED_ERRORS = (
    InputError,
    ExtractorUnavailable,
    EmptyExtractionError,
    LookupError,
    FileNotFoundError,
    ImportError,
    ValueError,
)


def _error(tool: str, e: Exception) -> Dict[str, Any]:
    if isinstance(e, _EXPECTED_ERRORS):
        logger.info("%s rejected: %s", tool, e)
    else:
        logger.exception("%s failed", tool)
    return {"status": "error", "error_type": type(e).__name__, "message": str(e)}


def register_memory_tools(mcp, service: MemoryService) -> None:
    """
    Register the projmem MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything with a ``tool()`` decorator).
        service: Fully initialized MemoryService.
    """

    # =====================================================================
    # INGEST
    # =====================================================================

    @mcp.tool()
    def memory_ingest(
        markdown: str,
        filename: Optional[str] = None,
        external_source_id: Optional[str] = None,
        source_path: Optional[str] = None,
        agentfs_uri: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Ingest a markdown source and extract atomic memories.

        Unchanged content is skipped; a changed source gets a new version
        and its memories are re-extracted (stale ones are pruned).

        Args:
            markdown: Document body.
            filename: Display name; identity when no external id is given.
            external_source_id: Stable caller-side id (preferred identity).
            source_path: Original path, kept as provenance.
            agentfs_uri: Pointer to the stored original.
            metadata: Free-form provenance.

        Returns:
            source, version, changed, extraction_skipped, extracted_count,
            extraction_run_id and extracted_memories.
        """
        try:
            result = service.ingest(
                filename, markdown,
                source_path=source_path,
                external_source_id=external_source_id,
                agentfs_uri=agentfs_uri,
                metadata=metadata,
            )
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            return _error("memory_ingest", e)

    @mcp.tool()
    def memory_ingest_file(
        path: str,
        external_source_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Convert a local document (md, txt, docx, pdf ...) and ingest it."""
        try:
            result = service.ingest_file(path, external_source_id=external_source_id)
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            return _error("memory_ingest_file", e)

    @mcp.tool()
    def memory_extract(
        source_id: str,
        version: Optional[int] = None,
        allow_empty: bool = False,
    ) -> Dict[str, Any]:
        """Re-run extraction for a stored source version (default: latest)."""
        try:
            result = service.extract_source(source_id, version, allow_empty=allow_empty)
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            return _error("memory_extract", e)

    @mcp.tool()
    def memory_delete_source(source_id: str) -> Dict[str, Any]:
        """Soft-delete a source. Versions and memories are kept."""
        try:
            source = service.delete_source(source_id)
            if source is None:
                return {"status": "error", "error_type": "LookupError",
                        "message": f"Unknown source: {source_id}"}
            return {"status": "ok", "source": source.to_dict()}
        except Exception as e:
            return _error("memory_delete_source", e)

    # =====================================================================
    # RECORDS
    # =====================================================================

    @mcp.tool()
    def memory_records(limit: int = 50) -> Dict[str, Any]:
        """Most recently updated memory records (limit 1..500)."""
        try:
            records = service.list_memory_records(limit)
            return {
                "status": "ok",
                "count": len(records),
                "records": [r.to_dict() for r in records],
            }
        except Exception as e:
            return _error("memory_records", e)

    @mcp.tool()
    def memory_export(start: str, end: str, limit: int = 2000) -> Dict[str, Any]:
        """Memory records updated between two ISO-8601 timestamps (inclusive)."""
        try:
            records = service.export_range(start, end, limit)
            return {
                "status": "ok",
                "count": len(records),
                "records": [r.to_dict() for r in records],
            }
        except Exception as e:
            return _error("memory_export", e)

    # =====================================================================
    # RECALL
    # =====================================================================

    @mcp.tool()
    def memory_search(
        query: str = "",
        project: str = "",
        limit: int = 15,
    ) -> Dict[str, Any]:
        """Hybrid search over notes and extracted memories.

        An empty query lists the most recent items.
        """
        try:
            citations = service.search(query, project, limit)
            return {
                "status": "ok",
                "count": len(citations),
                "results": [c.to_dict() for c in citations],
            }
        except Exception as e:
            return _error("memory_search", e)

    @mcp.tool()
    def memory_ask(
        question: str,
        project: str = "",
        limit: int = 6,
    ) -> Dict[str, Any]:
        """Answer a question from memory; claims cite [N1], [N2] ... in rank order.

        Returns:
            answer, citations and mode (empty|heuristic|model|fallback).
        """
        try:
            return {"status": "ok", **service.ask(question, project, limit).to_dict()}
        except Exception as e:
            return _error("memory_ask", e)

    @mcp.tool()
    def memory_context(
        task: str = "",
        project: str = "",
        limit: int = 8,
    ) -> Dict[str, Any]:
        """Short project brief (decisions, open questions, next actions) with citations."""
        try:
            return {"status": "ok", **service.build_context(task, project, limit).to_dict()}
        except Exception as e:
            return _error("memory_context", e)

    # =====================================================================
    # NOTES
    # =====================================================================

    @mcp.tool()
    def memory_note(
        content: str = "",
        source_url: str = "",
        project: str = "",
        source_type: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Capture a note; summary, tags and project are filled in automatically."""
        try:
            note = service.create_note(
                content,
                source_type=source_type,
                source_url=source_url,
                project=project,
                metadata=metadata,
            )
            return {"status": "ok", "note": note.to_dict()}
        except Exception as e:
            return _error("memory_note", e)

    @mcp.tool()
    def memory_notes(limit: int = 20, project: str = "") -> Dict[str, Any]:
        """Most recent notes, optionally for one project."""
        try:
            notes = service.list_recent_notes(limit, project)
            return {"status": "ok", "count": len(notes), "notes": [n.to_dict() for n in notes]}
        except Exception as e:
            return _error("memory_notes", e)

    @mcp.tool()
    def memory_projects() -> Dict[str, Any]:
        """Projects with their note counts."""
        try:
            return {"status": "ok", "projects": service.list_projects()}
        except Exception as e:
            return _error("memory_projects", e)

    # =====================================================================
    # LIFECYCLE
    # =====================================================================

    @mcp.tool()
    def memory_organize(limit: int = 120) -> Dict[str, Any]:
        """Run the organizer pass: bucket assignments and related-memory links."""
        try:
            return {"status": "ok", **service.organize(limit)}
        except Exception as e:
            return _error("memory_organize", e)

    @mcp.tool()
    def memory_consolidate(limit: int = 120) -> Dict[str, Any]:
        """Run the consolidator pass: inactive duplicate-source alias proposals."""
        try:
            return {"status": "ok", **service.consolidate(limit)}
        except Exception as e:
            return _error("memory_consolidate", e)

    @mcp.tool()
    def memory_stats() -> Dict[str, Any]:
        """Store metrics: sources, versions, memories, evidence, notes ..."""
        try:
            return {"status": "ok", **service.stats()}
        except Exception as e:
            return _error("memory_stats", e)
