"""
projmem MCP Server — cited project memory over the Model Context Protocol

Thin MCP layer delegating to MemoryService; no business logic here.

Usage:
    python -m projmem.mcp.server --db /path/to/memory.db
    python -m projmem.mcp.server --config projmem.json -v
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Versioned project memory with cited atomic facts.\n"
    "\n"
    "INGEST:  Use memory_ingest to add or update a markdown source; unchanged\n"
    "         content is skipped, changed content is re-extracted.\n"
    "RECALL:  Use memory_search for ranked notes and memories,\n"
    "         memory_ask for a grounded answer citing [N1], [N2] ...,\n"
    "         memory_context for a project brief.\n"
    "CAPTURE: Use memory_note for quick free-form notes.\n"
    "ORGANIZE: memory_organize and memory_consolidate run the bucket/link and\n"
    "         duplicate-source passes (aliases are proposals, never merges).\n"
    "\n"
    "Rules:\n"
    "- Cite answers with the [Nk] labels returned alongside citations\n"
    "- Source ids are stable: pass external_source_id for non-file sources\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the projmem MCP server."""
    p = argparse.ArgumentParser(
        prog="projmem-mcp",
        description="projmem MCP Server — cited project memory",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("PROJMEM_DB"),
        help="SQLite database path (default: $PROJMEM_DB or config store.db_path)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("PROJMEM_CONFIG"),
        help="JSON config file (default: $PROJMEM_CONFIG)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with memory tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, service) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from projmem.config import load_config
    from projmem.mcp.tools import register_memory_tools
    from projmem.service import MemoryService

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config)
    config.apply_env()
    if args.db:
        config.store.db_path = args.db

    service = MemoryService.from_config(config)

    mcp = FastMCP(
        name="projmem Memory",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_memory_tools(mcp, service)

    logger.info(
        "projmem MCP server ready: db=%s, extractor=%s, answerer=%s",
        config.store.db_path,
        "configured" if config.extractor.llm_cmd else "none",
        "configured" if config.answer.llm_cmd else "none",
    )
    return mcp, service


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _service = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
