"""
Tests for projmem.notes — capture, enrichment and listing.
"""

import pytest

from projmem.embedding import PseudoEmbedder
from projmem.notes import (
    create_note,
    enrich_note,
    list_recent_notes,
    normalize_source_type,
    project_fallback,
)
from projmem.types import InputError, Note
from conftest import FakeAnswerer


class TestHelpers:
    def test_source_type(self):
        assert normalize_source_type("LINK") == "link"
        assert normalize_source_type("video") == "text"
        assert normalize_source_type(None) == "text"

    def test_project_fallback(self):
        assert project_fallback("https://www.github.com/org/repo", ["x"]) == "github"
        assert project_fallback("https://docs.python.org/3/", []) == "docs"
        assert project_fallback("", ["infra", "db"]) == "infra"
        assert project_fallback(None, []) == "General"


class TestEnrichment:
    def test_heuristic_without_answerer(self):
        note = Note(id="n", content="Rotate staging database credentials every month")
        out = enrich_note(note)
        assert out["source"] == "heuristic"
        assert out["summary"] == "Rotate staging database credentials every month"
        assert "rotate" in out["tags"]
        assert out["project"] == "rotate"

    def test_model_reply_normalized(self):
        reply = '{"summary": "  Credential rotation  ", "tags": ["Security", "DB", " "], "project": "Platform Ops"}'
        out = enrich_note(Note(id="n", content="rotate creds"), FakeAnswerer(reply=reply))
        assert out == {
            "summary": "Credential rotation",
            "tags": ["security", "db"],
            "project": "Platform Ops",
            "source": "model",
        }

    def test_model_reply_in_prose(self):
        reply = 'Sure! {"summary": "ok", "tags": [], "project": ""} hope that helps'
        out = enrich_note(Note(id="n", content="some text", project=""), FakeAnswerer(reply=reply))
        assert out["source"] == "model"
        assert out["summary"] == "ok"
        assert out["project"] == "some"

    def test_caller_project_wins(self):
        reply = '{"summary": "s", "tags": ["a"], "project": "Guess"}'
        out = enrich_note(Note(id="n", content="x", project="apollo"), FakeAnswerer(reply=reply))
        assert out["project"] == "apollo"

    @pytest.mark.parametrize("answerer", [
        FakeAnswerer(reply="not json at all"),
        FakeAnswerer(exc=RuntimeError("LLM command timed out")),
    ])
    def test_model_problems_fall_back(self, answerer):
        out = enrich_note(Note(id="n", content="Quarterly planning offsite"), answerer)
        assert out["source"] == "heuristic"


class TestCreateNote:
    def test_capture_with_heuristics(self, store):
        note = create_note(store, "Use feature flags for the billing rollout", source_url="https://www.launchdarkly.com/x")
        assert note.id.startswith("NOTE-")
        assert note.project == "launchdarkly"
        assert note.metadata["enrichmentSource"] == "heuristic"
        assert "enrichedAt" in note.metadata
        assert store.get_note(note.id).summary == "Use feature flags for the billing rollout"
        vec = store.read_embeddings([note.id])[note.id]
        assert len(vec) == 256

    def test_url_only(self, store):
        note = create_note(store, "", source_type="link", source_url="https://example.com/post")
        assert note.content == "https://example.com/post"
        assert note.source_type == "link"

    def test_missing_content(self, store):
        with pytest.raises(InputError, match="Missing content"):
            create_note(store, "  ", source_url="  ")
        assert store.list_notes() == []

    def test_model_enrichment_and_embedder(self, store):
        answerer = FakeAnswerer(reply='{"summary": "Flags", "tags": ["release"], "project": "Billing"}')
        note = create_note(store, "Feature flags for billing", metadata={"origin": "slack"},
                           answerer=answerer, embedder=PseudoEmbedder(32))
        assert note.summary == "Flags"
        assert note.tags == ["release"]
        assert note.project == "Billing"
        assert note.metadata["origin"] == "slack"
        assert note.metadata["enrichmentSource"] == "model"
        assert len(store.read_embeddings([note.id])[note.id]) == 32

    def test_list_recent_and_projects(self, store):
        for i in range(3):
            create_note(store, f"alpha note {i}", project="alpha")
        create_note(store, "beta note", project="beta")
        assert len(list_recent_notes(store, project="alpha")) == 3
        assert len(list_recent_notes(store, limit=0)) == 1
        assert store.list_projects()[0] == {"project": "alpha", "count": 3}
