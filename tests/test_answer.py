"""
Tests for projmem.answer — grounded answers and context briefs.
"""

import pytest

from projmem.answer import (
    ASK_INSTRUCTIONS,
    CONTEXT_INSTRUCTIONS,
    ask_memories,
    build_project_context,
    sanitize_labels,
)
from projmem.types import InputError, Note
from conftest import FakeAnswerer


def _seed(store, n=3, project="apollo"):
    for i in range(n):
        store.insert_note(Note(
            id=f"n{i}",
            content=f"Apollo deployment detail number {i}",
            summary=f"Deployment detail {i}",
            project=project,
        ))


class TestSanitize:
    def test_out_of_range_labels_removed(self):
        assert sanitize_labels("A [N1] B [N2] C [N3] D [N0]", 2) == "A [N1] B [N2] C  D "

    def test_untouched_when_valid(self):
        assert sanitize_labels("See [N1].", 1) == "See [N1]."


class TestAsk:
    def test_blank_question(self, store):
        with pytest.raises(InputError):
            ask_memories(store, "   ")

    def test_empty_store(self, store):
        result = ask_memories(store, "what is deployed?")
        assert result.mode == "empty"
        assert result.answer == "No relevant memory found yet. Save a few notes first."
        assert result.citations == []

    def test_heuristic_lists_top_four(self, store):
        _seed(store, 6)
        result = ask_memories(store, "apollo deployment", limit=6)
        lines = result.answer.splitlines()
        assert result.mode == "heuristic"
        assert lines[0] == "Based on your saved notes:"
        assert len(lines) == 5
        assert lines[1] == f"- [N1] {result.citations[0].note.summary}"
        assert len(result.citations) == 6

    def test_model_prompt_labels_match_citations(self, store):
        _seed(store)
        answerer = FakeAnswerer(reply="Deployed via CI [N1][N2].")
        result = ask_memories(store, "how is apollo deployed?", answerer=answerer)
        assert result.mode == "model"
        assert result.answer == "Deployed via CI [N1][N2]."
        instructions, prompt = answerer.prompts[0]
        assert instructions == ASK_INSTRUCTIONS
        assert prompt.startswith("Question: how is apollo deployed?")
        for c in result.citations:
            assert f"[{c.label}] note_id={c.note.id}" in prompt

    def test_model_invented_label_dropped(self, store):
        _seed(store, 2)
        result = ask_memories(store, "apollo", answerer=FakeAnswerer(reply="Yes [N1] [N7]"))
        assert result.answer == "Yes [N1]"

    def test_empty_model_reply(self, store):
        _seed(store)
        result = ask_memories(store, "apollo", answerer=FakeAnswerer(reply="  "))
        assert result.mode == "model"
        assert result.answer == "I could not generate an answer."

    def test_answerer_failure_falls_back(self, store):
        _seed(store)
        result = ask_memories(store, "apollo", answerer=FakeAnswerer(exc=RuntimeError("503")))
        assert result.mode == "fallback"
        assert result.answer.startswith("I could not call the model, but these notes look relevant:")
        assert "- [N1] " in result.answer

    def test_to_dict(self, store):
        _seed(store, 1)
        d = ask_memories(store, "apollo").to_dict()
        assert set(d) == {"answer", "citations", "mode"}
        assert d["citations"][0]["rank"] == 1


class TestContext:
    def test_empty(self, store):
        result = build_project_context(store, project="apollo")
        assert result.mode == "empty"
        assert result.context == "No project context found yet."

    def test_heuristic_lines(self, store):
        _seed(store, 2)
        result = build_project_context(store, project="apollo")
        assert result.mode == "heuristic"
        assert result.context.splitlines() == [
            f"[N{c.rank}] {c.note.summary}" for c in result.citations
        ]

    def test_project_scopes_results(self, store):
        _seed(store, 2, project="apollo")
        store.insert_note(Note(id="other", content="Gemini deployment detail", project="gemini"))
        result = build_project_context(store, "deployment", project="apollo")
        assert {c.note.project for c in result.citations} == {"apollo"}

    def test_model_brief(self, store):
        _seed(store)
        answerer = FakeAnswerer(reply="Decisions: ship [N1]. Open: [N12]")
        result = build_project_context(store, "release", project="apollo", answerer=answerer)
        assert result.mode == "model"
        assert result.context == "Decisions: ship [N1]. Open:"
        instructions, prompt = answerer.prompts[0]
        assert instructions == CONTEXT_INSTRUCTIONS
        assert prompt.startswith("Task: release")

    def test_model_failure(self, store):
        _seed(store)
        result = build_project_context(store, answerer=FakeAnswerer(exc=ValueError("bad")))
        assert result.mode == "fallback"
        assert result.context.startswith("[N1] ")

    def test_empty_model_reply(self, store):
        _seed(store)
        result = build_project_context(store, answerer=FakeAnswerer(reply=""))
        assert result.context == "No context generated."
