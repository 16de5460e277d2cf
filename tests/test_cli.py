"""
Tests for the projmem CLI via subprocess.

Every test runs the real entry point (`python -m projmem.cli`) against a
temporary SQLite database; the extractor is a tiny Python command printing
a fixed JSON reply.
"""

import json
import os
import shlex
import subprocess
import sys

import pytest

PYTHON = sys.executable
CLI = [PYTHON, "-m", "projmem.cli"]

EXTRACTOR_REPLY = json.dumps({
    "memories": [
        {"kind": "decisions", "statement": "We use microservices for scalability.",
         "evidenceText": "We use microservices for scalability."},
        {"kind": "knowledge", "statement": "Communication between services is via gRPC.",
         "evidenceText": "Communication is via gRPC."},
    ],
    "summary": "architecture",
})

EXTRACTOR_CMD = " ".join(shlex.quote(a) for a in [
    PYTHON, "-c", f"import sys; sys.stdin.read(); print({EXTRACTOR_REPLY!r})",
])

SAMPLE = (
    "# Architecture Guide\n\n"
    "We use microservices for scalability.\n\n"
    "Communication is via gRPC.\n"
)


def run(args, *, env=None, stdin=None):
    """Run a projmem CLI command and return CompletedProcess."""
    base = {k: v for k, v in os.environ.items() if not k.startswith("PROJMEM_")}
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env={**base, **(env or {})},
        input=stdin,
        timeout=60,
    )


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "ws" / "memory.db")


@pytest.fixture
def with_extractor():
    return {"PROJMEM_EXTRACT_LLM": EXTRACTOR_CMD}


@pytest.fixture
def populated_db(db, tmp_path, with_extractor):
    sample = tmp_path / "architecture.md"
    sample.write_text(SAMPLE, encoding="utf-8")
    r = run(["ingest", str(sample), "--db", db, "-q"], env=with_extractor)
    assert r.returncode == 0, f"ingest failed: {r.stderr}"
    return db


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class TestEntryPoint:
    def test_no_command_prints_help(self):
        r = run([])
        assert r.returncode == 1
        assert "usage" in r.stdout.lower()

    def test_help(self):
        r = run(["--help"])
        assert r.returncode == 0
        for cmd in ("ingest", "extract", "search", "ask", "note", "organize", "serve"):
            assert cmd in r.stdout


# ---------------------------------------------------------------------------
# ingest / extract
# ---------------------------------------------------------------------------


class TestIngest:
    def test_stdin_without_extractor_fails(self, db):
        r = run(["ingest", "--stdin", "--filename", "a.md", "--db", db], stdin=SAMPLE)
        assert r.returncode == 1
        assert "Error:" in r.stderr
        assert "extractor" in r.stderr.lower()

    def test_stdin_with_extractor_json(self, db, with_extractor):
        r = run(["ingest", "--stdin", "--filename", "arch.md", "--db", db, "--json"],
                env=with_extractor, stdin=SAMPLE)
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert data["status"] == "ok"
        assert data["version"] == 1
        assert data["extracted_count"] == 2
        buckets = {m["metadata"]["bucket"] for m in data["extracted_memories"]}
        assert buckets == {"decisions", "knowledge"}

    def test_reingest_skips(self, populated_db, tmp_path, with_extractor):
        r = run(["ingest", str(tmp_path / "architecture.md"), "--db", populated_db, "--json"],
                env=with_extractor)
        assert r.returncode == 0
        data = json.loads(r.stdout)
        assert data["extraction_skipped"] is True
        assert data["extraction_run_id"] is None

    def test_missing_input(self, db):
        r = run(["ingest", "--db", db])
        assert r.returncode == 1

    def test_missing_file(self, db, tmp_path):
        r = run(["ingest", str(tmp_path / "nope.md"), "--db", db])
        assert r.returncode == 1

    def test_bad_meta(self, db, with_extractor):
        r = run(["ingest", "--stdin", "--filename", "a.md", "--meta", "{oops", "--db", db],
                env=with_extractor, stdin=SAMPLE)
        assert r.returncode == 1
        assert "--meta" in r.stderr

    def test_extract_unknown_source(self, db):
        r = run(["extract", "deadbeef", "--db", db])
        assert r.returncode == 1

    def test_extract_existing(self, populated_db, with_extractor):
        r = run(["records", "--db", populated_db, "--json"])
        source_id = json.loads(r.stdout)[0]["source_id"]
        r = run(["extract", source_id, "--db", populated_db, "--json"], env=with_extractor)
        assert r.returncode == 0, r.stderr
        assert json.loads(r.stdout)["extracted_count"] == 2


# ---------------------------------------------------------------------------
# records / export / delete-source
# ---------------------------------------------------------------------------


class TestRecords:
    def test_records_json(self, populated_db):
        r = run(["records", "--db", populated_db, "--json"])
        assert r.returncode == 0
        records = json.loads(r.stdout)
        assert len(records) == 2
        assert all("effective" in rec for rec in records)

    def test_export_range(self, populated_db):
        r = run(["export", "--start", "2000-01-01T00:00:00Z", "--end", "2999-01-01T00:00:00Z",
                 "--db", populated_db, "--json"])
        assert r.returncode == 0
        assert len(json.loads(r.stdout)) == 2

    def test_export_inverted_range(self, populated_db):
        r = run(["export", "--start", "2024-02-01", "--end", "2024-01-01", "--db", populated_db])
        assert r.returncode == 1

    def test_delete_source(self, populated_db):
        source_id = json.loads(run(["records", "--db", populated_db, "--json"]).stdout)[0]["source_id"]
        r = run(["delete-source", source_id, "--db", populated_db, "--json"])
        assert r.returncode == 0
        assert json.loads(r.stdout)["is_deleted"] is True
        stats = json.loads(run(["stats", "--db", populated_db, "--json"]).stdout)
        assert stats["deleted_sources"] == 1
        assert stats["memories"] == 2

    def test_delete_unknown_source(self, db):
        r = run(["delete-source", "nope", "--db", db])
        assert r.returncode == 1


# ---------------------------------------------------------------------------
# note / notes / projects / search / ask / context
# ---------------------------------------------------------------------------


class TestRecall:
    def test_note_then_search(self, db):
        r = run(["note", "Rotate the staging API keys monthly", "--project", "ops", "--db", db, "--json"])
        assert r.returncode == 0, r.stderr
        note = json.loads(r.stdout)
        assert note["project"] == "ops"

        r = run(["search", "api keys", "--db", db, "--json"])
        assert r.returncode == 0
        results = json.loads(r.stdout)
        assert results[0]["note"]["id"] == note["id"]
        assert results[0]["rank"] == 1

    def test_note_from_stdin(self, db):
        r = run(["note", "-", "--db", db, "-q"], stdin="Meeting moved to Thursday")
        assert r.returncode == 0
        assert r.stdout.strip().startswith("NOTE-")

    def test_empty_note(self, db):
        r = run(["note", "  ", "--db", db])
        assert r.returncode == 1
        assert "Missing content" in r.stderr

    def test_notes_and_projects(self, db):
        run(["note", "alpha one", "--project", "alpha", "--db", db, "-q"])
        run(["note", "alpha two", "--project", "alpha", "--db", db, "-q"])
        r = run(["notes", "--project", "alpha", "--db", db, "--json"])
        assert len(json.loads(r.stdout)) == 2
        r = run(["projects", "--db", db, "--json"])
        assert json.loads(r.stdout) == [{"project": "alpha", "count": 2}]

    def test_ask_heuristic(self, populated_db):
        r = run(["ask", "how do services communicate?", "--db", populated_db, "--json"])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert data["mode"] == "heuristic"
        assert data["answer"].startswith("Based on your saved notes:")
        assert data["citations"][0]["note"]["item_type"] == "memory"

    def test_ask_blank_question(self, db):
        r = run(["ask", " ", "--db", db])
        assert r.returncode == 1

    def test_context_empty_store(self, db):
        r = run(["context", "--db", db])
        assert r.returncode == 0
        assert "No project context found yet." in r.stdout

    def test_search_empty_store(self, db):
        r = run(["search", "anything", "--db", db, "--json"])
        assert r.returncode == 0
        assert json.loads(r.stdout) == []


# ---------------------------------------------------------------------------
# organize / consolidate / stats
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_organize_fallback(self, populated_db):
        r = run(["organize", "--db", populated_db, "--json"])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert data["status"] == "ok"
        assert data["mode"] == "fallback"
        assert data["applied_category_count"] == 2

    def test_consolidate(self, populated_db):
        r = run(["consolidate", "--db", populated_db, "--json"])
        assert r.returncode == 0
        assert json.loads(r.stdout)["applied_alias_count"] == 0

    def test_stats(self, populated_db):
        r = run(["stats", "--db", populated_db])
        assert r.returncode == 0
        assert "Memory Store Statistics" in r.stdout

    def test_env_db(self, populated_db):
        r = run(["stats", "--json"], env={"PROJMEM_DB": populated_db})
        assert json.loads(r.stdout)["memories"] == 2

    def test_config_file(self, populated_db, tmp_path):
        cfg = tmp_path / "projmem.json"
        cfg.write_text(json.dumps({"store": {"db_path": populated_db}}))
        r = run(["stats", "--config", str(cfg), "--json"])
        assert json.loads(r.stdout)["memories"] == 2
