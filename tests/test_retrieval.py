"""
Tests for projmem.retrieval — hybrid ranking over notes and memories.
"""

from datetime import datetime, timedelta, timezone

import pytest

from projmem.config import RetrievalConfig
from projmem.retrieval import load_candidates, memory_to_note, recency_boost, search_memories
from projmem.types import EXTRACTED_MEMORY_KIND, Note

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _note(store, nid, content, project="", days_ago=0, summary=""):
    created = (NOW - timedelta(days=days_ago)).isoformat()
    return store.insert_note(Note(
        id=nid, content=content, summary=summary or content, project=project,
        created_at=created, updated_at=created,
    ))


def _memory(store, mid, statement, project=None, days_ago=0):
    created = (NOW - timedelta(days=days_ago)).isoformat()
    meta = {"memoryKind": EXTRACTED_MEMORY_KIND, "statement": statement, "bucket": "knowledge",
            "sourceFilename": "plan.md"}
    if project:
        meta["project"] = project
    return store.upsert_memory_record(
        mid, "src-1", 2, summary_auto=statement, created_at=created, updated_at=created,
        metadata=meta,
    )


class TestMemoryProjection:
    def test_fields(self, store):
        rec = _memory(store, "mem_1", "We deploy on Tuesdays.", project="ops")
        note = memory_to_note(rec)
        assert note.item_type == "memory"
        assert note.source_type == "memory"
        assert note.content == "We deploy on Tuesdays."
        assert note.project == "ops"
        assert note.metadata["source_id"] == "src-1"
        assert note.metadata["source_version"] == 2
        assert note.metadata["bucket"] == "knowledge"
        assert note.metadata["source_filename"] == "plan.md"

    def test_manual_summary_wins(self, store):
        _memory(store, "mem_1", "We deploy on Tuesdays.")
        rec = store.set_manual_fields("mem_1", notes="Deploy day is Tuesday")
        assert memory_to_note(rec).summary == "Deploy day is Tuesday"


class TestCandidates:
    def test_merged_newest_first(self, store):
        _note(store, "n-old", "old note", days_ago=5)
        _memory(store, "mem_mid", "a memory statement", days_ago=2)
        _note(store, "n-new", "new note", days_ago=0)
        assert [c.id for c in load_candidates(store)] == ["n-new", "mem_mid", "n-old"]

    def test_legacy_rows_excluded(self, store):
        store.upsert_memory_record("src-1", "src-1", 1, summary_auto="whole doc")
        assert load_candidates(store) == []

    def test_project_filter(self, store):
        _note(store, "n-a", "alpha note", project="alpha")
        _note(store, "n-b", "beta note", project="beta")
        _memory(store, "mem_a", "alpha memory", project="alpha")
        assert {c.id for c in load_candidates(store, "alpha")} == {"n-a", "mem_a"}


class TestRecency:
    def test_linear_decay(self):
        assert recency_boost(NOW.isoformat(), NOW) == 1.0
        assert recency_boost((NOW - timedelta(days=15)).isoformat(), NOW) == pytest.approx(0.5)
        assert recency_boost((NOW - timedelta(days=90)).isoformat(), NOW) == 0.0

    def test_bad_timestamp(self):
        assert recency_boost("yesterday", NOW) == 0.0


class TestSearch:
    def test_empty_query_lists_recent(self, store):
        _note(store, "n1", "first", days_ago=3)
        _note(store, "n2", "second", days_ago=1)
        results = search_memories(store, "", now=NOW)
        assert [r.note.id for r in results] == ["n2", "n1"]
        assert [r.rank for r in results] == [1, 2]
        assert results[0].score == 1.0
        assert results[1].score == pytest.approx(0.999)

    def test_lexical_match_ranks_first(self, store):
        _note(store, "lunch", "Lunch menu for Friday")
        _note(store, "db", "Postgres migration plan for Q3")
        _memory(store, "mem_db", "Postgres migration needs a maintenance window")
        results = search_memories(store, "postgres migration", now=NOW)
        top = {results[0].note.id, results[1].note.id}
        assert top == {"db", "mem_db"}
        assert results[-1].note.id == "lunch"
        assert [r.label for r in results] == ["N1", "N2", "N3"]

    def test_scores_descending(self, store):
        for i, text in enumerate(["api keys rotate monthly", "rotate tires", "monthly budget review"]):
            _note(store, f"n{i}", text, days_ago=i)
        scores = [r.score for r in search_memories(store, "rotate api keys", now=NOW)]
        assert scores == sorted(scores, reverse=True)

    def test_limit_clamped(self, store):
        for i in range(5):
            _note(store, f"n{i}", f"note number {i}")
        cfg = RetrievalConfig(max_limit=3)
        assert len(search_memories(store, "note", limit=0, config=cfg, now=NOW)) == 1
        assert len(search_memories(store, "note", limit=50, config=cfg, now=NOW)) == 3
        assert len(search_memories(store, "note", config=RetrievalConfig(default_limit=2), now=NOW)) == 2

    def test_mismatched_stored_vector_ignored(self, store):
        _note(store, "n1", "Kafka consumer lag alert")
        store.write_embedding("n1", [1.0, 0.0, 0.0], "tiny", item_type="note")
        results = search_memories(store, "kafka lag", now=NOW)
        assert results[0].note.id == "n1"
        assert results[0].score > 0

    def test_stored_vector_used(self, store):
        class FixedEmbedder:
            model_name = "fixed"

            def embed(self, text):
                return [1.0, 0.0]

        _note(store, "match", "unrelated words entirely")
        _note(store, "other", "something else here")
        store.write_embedding("match", [1.0, 0.0], "fixed", item_type="note")
        store.write_embedding("other", [0.0, 1.0], "fixed", item_type="note")
        cfg = RetrievalConfig(semantic_weight=1.0, lexical_weight=0.0, recency_weight=0.0)
        results = search_memories(store, "query", embedder=FixedEmbedder(), config=cfg, now=NOW)
        assert results[0].note.id == "match"
        assert results[0].score == pytest.approx(1.0)

    def test_no_candidates(self, store):
        assert search_memories(store, "anything", now=NOW) == []
