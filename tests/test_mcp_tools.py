"""
Tests for the projmem MCP tools in projmem.mcp.tools.

Tests use direct function calls (not MCP protocol) via a mock FastMCP.
"""

import pytest

from projmem.config import ProjmemConfig, StoreConfig
from projmem.embedding import PseudoEmbedder
from projmem.service import MemoryService
from projmem.store import MemoryStore
from conftest import FakeAnswerer, FakeExtractor

DOC = """# Runbook

Deploys happen every Tuesday morning.
Rollbacks require approval from the on-call lead.
"""


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


def _env(tmp_path, extractor=None, answerer=None):
    db_path = str(tmp_path / "memory.db")
    config = ProjmemConfig(store=StoreConfig(db_path=db_path))
    store = MemoryStore(db_path=db_path)
    service = MemoryService(
        store,
        extractor=extractor,
        embedder=PseudoEmbedder(),
        answerer=answerer,
        config=config,
    )
    mcp = MockMCP()

    from projmem.mcp.tools import register_memory_tools
    register_memory_tools(mcp, service)
    return {"mcp": mcp, "store": store, "service": service, "tmp_path": tmp_path}


@pytest.fixture
def mcp_env(tmp_path):
    env = _env(tmp_path, extractor=FakeExtractor())
    yield env
    env["store"].close()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_all_tools_registered(self, mcp_env):
        assert set(mcp_env["mcp"].tools) == {
            "memory_ingest", "memory_ingest_file", "memory_extract",
            "memory_delete_source", "memory_records", "memory_export",
            "memory_search", "memory_ask", "memory_context",
            "memory_note", "memory_notes", "memory_projects",
            "memory_organize", "memory_consolidate", "memory_stats",
        }


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------


class TestIngestTools:
    def test_ingest_and_skip(self, mcp_env):
        first = call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")
        assert first["status"] == "ok"
        assert first["extracted_count"] == 2
        again = call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")
        assert again["extraction_skipped"] is True

    def test_ingest_input_error(self, mcp_env):
        result = call(mcp_env, "memory_ingest", markdown="", filename="x.md")
        assert result["status"] == "error"
        assert result["error_type"] == "InputError"

    def test_extractor_unavailable(self, tmp_path):
        env = _env(tmp_path)
        try:
            result = call(env, "memory_ingest", markdown=DOC, filename="runbook.md")
        finally:
            env["store"].close()
        assert result["status"] == "error"
        assert result["error_type"] == "ExtractorUnavailable"

    def test_empty_extraction(self, tmp_path):
        env = _env(tmp_path, extractor=FakeExtractor(facts=[]))
        try:
            result = call(env, "memory_ingest", markdown=DOC, filename="runbook.md")
        finally:
            env["store"].close()
        assert result["error_type"] == "EmptyExtractionError"

    def test_ingest_file(self, mcp_env, tmp_path):
        path = tmp_path / "runbook.md"
        path.write_text(DOC, encoding="utf-8")
        result = call(mcp_env, "memory_ingest_file", path=str(path))
        assert result["status"] == "ok"
        assert result["source"]["filename"] == "runbook.md"

    def test_ingest_file_missing(self, mcp_env, tmp_path):
        result = call(mcp_env, "memory_ingest_file", path=str(tmp_path / "nope.md"))
        assert result["error_type"] == "FileNotFoundError"

    def test_extract_and_delete(self, mcp_env):
        source_id = call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")["source"]["source_id"]
        result = call(mcp_env, "memory_extract", source_id=source_id)
        assert result["status"] == "ok"
        assert result["extracted_memories"][0]["metadata"]["writtenBy"] == "memory-extraction-workflow"

        deleted = call(mcp_env, "memory_delete_source", source_id=source_id)
        assert deleted["source"]["is_deleted"] is True

    def test_extract_unknown(self, mcp_env):
        result = call(mcp_env, "memory_extract", source_id="missing")
        assert result["error_type"] == "LookupError"

    def test_delete_unknown(self, mcp_env):
        result = call(mcp_env, "memory_delete_source", source_id="missing")
        assert result["status"] == "error"
        assert result["error_type"] == "LookupError"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class TestRecordTools:
    def test_records(self, mcp_env):
        call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")
        result = call(mcp_env, "memory_records", limit=1)
        assert result["count"] == 1

    def test_export_bad_range(self, mcp_env):
        result = call(mcp_env, "memory_export", start="garbage", end="2024-01-01")
        assert result["error_type"] == "InputError"

    def test_export(self, mcp_env):
        call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")
        result = call(mcp_env, "memory_export", start="2000-01-01", end="2999-12-31")
        assert result["count"] == 2


# ---------------------------------------------------------------------------
# Recall and notes
# ---------------------------------------------------------------------------


class TestRecallTools:
    def test_search(self, mcp_env):
        call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")
        result = call(mcp_env, "memory_search", query="rollback approval")
        assert result["status"] == "ok"
        assert result["count"] == 2
        assert result["results"][0]["note"]["content"].startswith("Rollbacks")

    def test_ask_modes(self, mcp_env):
        assert call(mcp_env, "memory_ask", question="deploy day?")["mode"] == "empty"
        call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")
        result = call(mcp_env, "memory_ask", question="deploy day?")
        assert result["mode"] == "heuristic"
        assert len(result["citations"]) == 2

    def test_ask_blank(self, mcp_env):
        assert call(mcp_env, "memory_ask", question="")["error_type"] == "InputError"

    def test_ask_with_model(self, tmp_path):
        env = _env(tmp_path, extractor=FakeExtractor(), answerer=FakeAnswerer(reply="Tuesday [N1]."))
        try:
            call(env, "memory_ingest", markdown=DOC, filename="runbook.md")
            result = call(env, "memory_ask", question="deploy day?")
        finally:
            env["store"].close()
        assert result["mode"] == "model"
        assert result["answer"] == "Tuesday [N1]."

    def test_context(self, mcp_env):
        call(mcp_env, "memory_note", content="Decided to freeze deploys in December", project="ops")
        result = call(mcp_env, "memory_context", project="ops")
        assert result["status"] == "ok"
        assert result["context"].startswith("[N1]")

    def test_note_notes_projects(self, mcp_env):
        note = call(mcp_env, "memory_note", content="Pager rotation changes next week", project="ops")
        assert note["status"] == "ok"
        assert note["note"]["project"] == "ops"
        assert call(mcp_env, "memory_notes", project="ops")["count"] == 1
        assert call(mcp_env, "memory_projects")["projects"] == [{"project": "ops", "count": 1}]

    def test_note_missing_content(self, mcp_env):
        result = call(mcp_env, "memory_note", content="")
        assert result["error_type"] == "InputError"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycleTools:
    def test_organize(self, mcp_env):
        call(mcp_env, "memory_ingest", markdown=DOC, filename="runbook.md")
        result = call(mcp_env, "memory_organize")
        assert result["status"] == "ok"
        assert result["mode"] == "fallback"
        assert result["processed_count"] == 2

    def test_consolidate(self, mcp_env):
        call(mcp_env, "memory_ingest", markdown=DOC, filename="a.md")
        call(mcp_env, "memory_ingest", markdown=DOC.upper(), filename="b.md")
        result = call(mcp_env, "memory_consolidate")
        assert result["status"] == "ok"
        assert result["fuzzy_alias_count"] == 1

    def test_stats(self, mcp_env):
        call(mcp_env, "memory_note", content="one note here")
        result = call(mcp_env, "memory_stats")
        assert result["status"] == "ok"
        assert result["notes"] == 1
        assert result["embeddings"] == 1
