"""
projmem CLI — project memory from the shell

Commands:
    projmem ingest  PATH | --stdin --filename F  — version + extract atomic memories
    projmem extract SOURCE_ID [--version N]      — re-run extraction for a stored version
    projmem records [-k N]                       — most recently updated memories
    projmem export  --start ISO --end ISO        — memories updated in a date range
    projmem search  ["query"] [--project P]      — hybrid search over notes + memories
    projmem ask     "question" [--project P]     — grounded answer with [Nk] citations
    projmem context ["task"] [--project P]       — project context brief
    projmem note    "text" [--url U]             — capture a note
    projmem notes   [-k N]                       — recent notes
    projmem projects                             — projects with note counts
    projmem organize    [--limit N]              — bucket + link pass
    projmem consolidate [--limit N]              — duplicate-source alias pass
    projmem delete-source SOURCE_ID              — soft-delete a source
    projmem stats                                — store metrics
    projmem serve                                — start MCP server (foreground)

Environment variables:
    PROJMEM_DB           Path to SQLite database (default: .projmem/memory.db)
    PROJMEM_CONFIG       Path to a JSON config file
    PROJMEM_LLM          Answer/enrichment command (also extractor default)
    PROJMEM_EXTRACT_LLM  Extractor command
    PROJMEM_EMBED_CMD    Embedding command (default: pseudo-embedding)

Precedence (invariant):
    CLI --flag  >  PROJMEM_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including skipped re-ingest)
    1  Operational error (bad input, extractor unavailable, unknown source)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from projmem.extraction import EmptyExtractionError
from projmem.llm import ExtractorUnavailable
from projmem.types import InputError

logger = logging.getLogger(__name__)

_OPERATIONAL_ERRORS = (
    InputError,
    ExtractorUnavailable,
    EmptyExtractionError,
    LookupError,
    FileNotFoundError,
    ImportError,
    ValueError,
)


# ---------------------------------------------------------------------------
# Env parsing and resolvers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


def _resolve_config_path(args: Optional[argparse.Namespace] = None) -> Optional[str]:
    """Resolve config path: CLI --config > PROJMEM_CONFIG > none."""
    if args and getattr(args, "config", None):
        return args.config
    return os.environ.get("PROJMEM_CONFIG") or None


def _resolve_config(args: Optional[argparse.Namespace] = None):
    from projmem.config import load_config

    cfg = load_config(_resolve_config_path(args))
    cfg.apply_env()
    if args and getattr(args, "db", None):
        cfg.store.db_path = args.db
    return cfg


def _resolve_db(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve database path: CLI --db > PROJMEM_DB > config > default."""
    return _resolve_config(args).store.db_path


def _open_service(args: argparse.Namespace):
    """Open a MemoryService. Creates the DB and parent dirs if needed."""
    from projmem.service import MemoryService
    return MemoryService.from_config(_resolve_config(args))


def _parse_metadata(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise InputError(f"--meta is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise InputError("--meta must be a JSON object")
    return value


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _print_citations(citations) -> None:
    for c in citations:
        note = c.note
        label = note.summary or note.content
        print(f"  [{c.label}] {c.score:.3f}  {note.item_type:6s}  {note.id}")
        print(f"    {label[:160]}")


# ===========================================================================
# Command: ingest
# ===========================================================================


def cmd_ingest(args: argparse.Namespace) -> None:
    """Ingest a file (converted to markdown) or markdown from stdin."""
    metadata = _parse_metadata(args.meta)
    service = _open_service(args)
    try:
        if args.stdin:
            result = service.ingest(
                args.filename, sys.stdin.read(),
                source_path=args.source_path,
                external_source_id=args.external_id,
                metadata=metadata,
            )
        elif args.path:
            result = service.ingest_file(
                args.path, external_source_id=args.external_id, metadata=metadata,
            )
        else:
            raise InputError("a PATH or --stdin is required")
    finally:
        service.close()

    if getattr(args, "json", False):
        data = result.to_dict()
        data["status"] = "ok"
        _print_json(data)
        return

    src = result.source
    if result.extraction_skipped:
        _info(f"[ingest] {src.source_id} unchanged (v{result.version}); extraction skipped")
    else:
        _info(
            f"[ingest] {src.source_id} v{result.version} "
            f"({'changed' if result.changed else 'unchanged'}): "
            f"{result.extracted_count} memories (run {result.extraction_run_id})"
        )
    for rec in result.extracted_memories:
        bucket = rec.metadata.get("bucket", "")
        print(f"  {rec.memory_id}  {bucket:11s}  {rec.statement}")


# ===========================================================================
# Command: extract
# ===========================================================================


def cmd_extract(args: argparse.Namespace) -> None:
    """Re-run extraction for a stored source version."""
    service = _open_service(args)
    try:
        result = service.extract_source(
            args.source_id, args.version, allow_empty=args.allow_empty,
        )
    finally:
        service.close()

    if getattr(args, "json", False):
        data = result.to_dict()
        data["status"] = "ok"
        _print_json(data)
    else:
        _info(
            f"[extract] {args.source_id} v{result.version}: "
            f"{result.extracted_count} memories (run {result.extraction_run_id})"
        )
        for rec in result.extracted_memories:
            print(f"  {rec.memory_id}  {rec.statement}")


# ===========================================================================
# Command: records / export
# ===========================================================================


def _print_records(records, as_json: bool) -> None:
    if as_json:
        _print_json([r.to_dict() for r in records])
        return
    if not records:
        _info("No memory records.")
        return
    print(f"{len(records)} record(s):\n")
    for rec in records:
        eff = rec.effective_fields()
        title = eff["title"] or eff["summary"] or ""
        print(f"  {rec.memory_id}  v{rec.latest_version}  {rec.updated_at}")
        print(f"    {title[:160]}")
        if eff["tags"]:
            print(f"    tags: {', '.join(eff['tags'])}")


def cmd_records(args: argparse.Namespace) -> None:
    """List most recently updated memory records."""
    service = _open_service(args)
    try:
        records = service.list_memory_records(args.k)
    finally:
        service.close()
    _print_records(records, getattr(args, "json", False))


def cmd_export(args: argparse.Namespace) -> None:
    """Export memory records updated within a date range."""
    service = _open_service(args)
    try:
        records = service.export_range(args.start, args.end, args.limit)
    finally:
        service.close()
    _print_records(records, getattr(args, "json", False))


# ===========================================================================
# Command: search / ask / context
# ===========================================================================


def cmd_search(args: argparse.Namespace) -> None:
    """Hybrid search over notes and extracted memories."""
    service = _open_service(args)
    try:
        citations = service.search(args.query or "", args.project or "", args.k)
    finally:
        service.close()

    if getattr(args, "json", False):
        _print_json([c.to_dict() for c in citations])
        return
    if not citations:
        _info("No results found.")
        return
    print(f"Found {len(citations)} item(s):\n")
    _print_citations(citations)


def cmd_ask(args: argparse.Namespace) -> None:
    """Answer a question from memory, citing [Nk] snippets."""
    service = _open_service(args)
    try:
        result = service.ask(args.question, args.project or "", args.k)
    finally:
        service.close()

    if getattr(args, "json", False):
        data = result.to_dict()
        data["status"] = "ok"
        _print_json(data)
        return
    print(result.answer)
    if result.citations:
        print()
        _print_citations(result.citations)
    _info(f"[ask] mode={result.mode}")


def cmd_context(args: argparse.Namespace) -> None:
    """Build a project context brief."""
    service = _open_service(args)
    try:
        result = service.build_context(args.task or "", args.project or "", args.k)
    finally:
        service.close()

    if getattr(args, "json", False):
        data = result.to_dict()
        data["status"] = "ok"
        _print_json(data)
        return
    print(result.context)
    _info(f"[context] mode={result.mode}")


# ===========================================================================
# Command: note / notes / projects
# ===========================================================================


def cmd_note(args: argparse.Namespace) -> None:
    """Capture a note (content argument or stdin)."""
    content = args.content
    if content == "-" or (content is None and not args.url):
        content = sys.stdin.read()
    service = _open_service(args)
    try:
        note = service.create_note(
            content or "",
            source_type=args.type,
            source_url=args.url or "",
            project=args.project or "",
            metadata=_parse_metadata(args.meta),
        )
    finally:
        service.close()

    if getattr(args, "json", False):
        data = note.to_dict()
        data["status"] = "ok"
        _print_json(data)
    else:
        _info(f"[note] Stored {note.id} in project {note.project!r}")
        print(note.id)


def cmd_notes(args: argparse.Namespace) -> None:
    """List recent notes."""
    service = _open_service(args)
    try:
        notes = service.list_recent_notes(args.k, args.project or "")
    finally:
        service.close()

    if getattr(args, "json", False):
        _print_json([n.to_dict() for n in notes])
        return
    for n in notes:
        print(f"  {n.id}  {n.created_at}  [{n.project}]")
        print(f"    {n.summary[:160]}")


def cmd_projects(args: argparse.Namespace) -> None:
    """List projects with note counts."""
    service = _open_service(args)
    try:
        projects = service.list_projects()
    finally:
        service.close()

    if getattr(args, "json", False):
        _print_json(projects)
        return
    for p in projects:
        print(f"  {p['count']:5d}  {p['project']}")


# ===========================================================================
# Command: organize / consolidate
# ===========================================================================


def _print_pass(result: Dict[str, Any], label: str, as_json: bool) -> None:
    if as_json:
        data = dict(result)
        data["status"] = "ok"
        _print_json(data)
        return
    print(f"{label} complete (run {result['run_id']}, mode={result['mode']}):")
    print(f"  Records processed: {result['processed_count']}")
    print(f"  {result['summary']}")


def cmd_organize(args: argparse.Namespace) -> None:
    """Run the organizer pass (buckets + related links)."""
    service = _open_service(args)
    try:
        result = service.organize(args.limit)
    finally:
        service.close()
    _print_pass(result, "Organizer", getattr(args, "json", False))


def cmd_consolidate(args: argparse.Namespace) -> None:
    """Run the consolidator pass (alias proposals, never merges)."""
    service = _open_service(args)
    try:
        result = service.consolidate(args.limit)
    finally:
        service.close()
    _print_pass(result, "Consolidator", getattr(args, "json", False))


# ===========================================================================
# Command: delete-source / stats
# ===========================================================================


def cmd_delete_source(args: argparse.Namespace) -> None:
    """Soft-delete a source."""
    service = _open_service(args)
    try:
        source = service.delete_source(args.source_id)
    finally:
        service.close()
    if source is None:
        raise LookupError(f"Unknown source: {args.source_id}")
    if getattr(args, "json", False):
        data = source.to_dict()
        data["status"] = "ok"
        _print_json(data)
    else:
        _info(f"[delete-source] {source.source_id} marked deleted at {source.deleted_at}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show memory store statistics."""
    service = _open_service(args)
    try:
        stats = service.stats()
    finally:
        service.close()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _print_json(stats)
    else:
        print("Memory Store Statistics")
        print("=" * 40)
        for key, value in stats.items():
            print(f"  {key.replace('_', ' ').capitalize():18s} {value}")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the projmem MCP server in foreground."""
    try:
        from projmem.mcp.server import create_server, build_parser as mcp_parser
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install projmem[mcp]")
        sys.exit(1)

    server_argv = ["--db", _resolve_db(args)]
    config_path = _resolve_config_path(args)
    if config_path:
        server_argv.extend(["--config", config_path])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install projmem[mcp]")
        sys.exit(1)

    _info(f"projmem MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the projmem argument parser."""
    # SUPPRESS defaults keep subparser defaults from overriding values parsed
    # at the main-parser level (argparse parents quirk).
    _db_default = _env_str("PROJMEM_DB", ".projmem/memory.db")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to JSON config file (default: PROJMEM_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="projmem",
        description="projmem — versioned sources to cited atomic memories",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- ingest ------------------------------------------------------------
    p = sub.add_parser("ingest", parents=[_common], help="Ingest a document")
    p.add_argument("path", nargs="?", default=None, help="File to ingest")
    p.add_argument("--stdin", action="store_true", help="Read markdown from stdin")
    p.add_argument("--filename", default=None, help="Source filename (with --stdin)")
    p.add_argument("--external-id", default=None, help="Stable external source id")
    p.add_argument("--source-path", default=None, help="Original path (provenance)")
    p.add_argument("--meta", default=None, help="JSON object of source metadata")
    p.set_defaults(func=cmd_ingest)

    # -- extract -----------------------------------------------------------
    p = sub.add_parser("extract", parents=[_common], help="Re-run extraction for a source")
    p.add_argument("source_id", help="Source id")
    p.add_argument("--version", type=int, default=None, help="Version (default: latest)")
    p.add_argument("--allow-empty", action="store_true",
                   help="Accept an empty extraction (prunes all memories of the source)")
    p.set_defaults(func=cmd_extract)

    # -- records / export --------------------------------------------------
    p = sub.add_parser("records", parents=[_common], help="List memory records")
    p.add_argument("-k", type=int, default=50, help="Max records (default: 50)")
    p.set_defaults(func=cmd_records)

    p = sub.add_parser("export", parents=[_common], help="Export records by update date")
    p.add_argument("--start", required=True, help="ISO-8601 start (inclusive)")
    p.add_argument("--end", required=True, help="ISO-8601 end (inclusive)")
    p.add_argument("--limit", type=int, default=2000, help="Max records (default: 2000)")
    p.set_defaults(func=cmd_export)

    # -- search / ask / context --------------------------------------------
    p = sub.add_parser("search", parents=[_common], help="Hybrid search")
    p.add_argument("query", nargs="?", default="", help="Search query (empty = recent)")
    p.add_argument("--project", default=None, help="Restrict to one project")
    p.add_argument("-k", type=int, default=None, help="Max results (default: 15)")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("ask", parents=[_common], help="Grounded answer with citations")
    p.add_argument("question", help="Question")
    p.add_argument("--project", default=None, help="Restrict to one project")
    p.add_argument("-k", type=int, default=None, help="Citations (default: 6)")
    p.set_defaults(func=cmd_ask)

    p = sub.add_parser("context", parents=[_common], help="Project context brief")
    p.add_argument("task", nargs="?", default="", help="Task description")
    p.add_argument("--project", default=None, help="Restrict to one project")
    p.add_argument("-k", type=int, default=None, help="Citations (default: 8)")
    p.set_defaults(func=cmd_context)

    # -- note / notes / projects -------------------------------------------
    p = sub.add_parser("note", parents=[_common], help="Capture a note")
    p.add_argument("content", nargs="?", default=None, help="Note text ('-' = stdin)")
    p.add_argument("--url", default=None, help="Source URL")
    p.add_argument("--type", default="text", help="text|link|image|file (default: text)")
    p.add_argument("--project", default=None, help="Project name")
    p.add_argument("--meta", default=None, help="JSON object of note metadata")
    p.set_defaults(func=cmd_note)

    p = sub.add_parser("notes", parents=[_common], help="Recent notes")
    p.add_argument("-k", type=int, default=20, help="Max notes (default: 20)")
    p.add_argument("--project", default=None, help="Restrict to one project")
    p.set_defaults(func=cmd_notes)

    p = sub.add_parser("projects", parents=[_common], help="Projects with note counts")
    p.set_defaults(func=cmd_projects)

    # -- organize / consolidate --------------------------------------------
    p = sub.add_parser("organize", parents=[_common], help="Run the organizer pass")
    p.add_argument("--limit", type=int, default=120, help="Batch size (default: 120)")
    p.set_defaults(func=cmd_organize)

    p = sub.add_parser("consolidate", parents=[_common], help="Run the consolidator pass")
    p.add_argument("--limit", type=int, default=120, help="Batch size (default: 120)")
    p.set_defaults(func=cmd_consolidate)

    # -- delete-source / stats / serve -------------------------------------
    p = sub.add_parser("delete-source", parents=[_common], help="Soft-delete a source")
    p.add_argument("source_id", help="Source id")
    p.set_defaults(func=cmd_delete_source)

    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.set_defaults(func=cmd_serve)

    return parser


def main() -> None:
    """CLI entry point: projmem <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # e.g. projmem search | head
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except _OPERATIONAL_ERRORS as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
