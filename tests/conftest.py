"""
Shared fixtures: in-memory store and scripted collaborators.
"""

import pytest

from projmem.extraction import ExtractionPipeline
from projmem.store import MemoryStore
from projmem.types import CandidateFact, ExtractionDecision


def facts_from_lines(markdown):
    """One knowledge fact per non-heading line of at least 10 characters."""
    out = []
    for line in markdown.splitlines():
        line = line.strip()
        if line.startswith("#") or len(line) < 10:
            continue
        out.append({"kind": "knowledge", "statement": line, "evidenceText": line})
    return out


class FakeExtractor:
    """Extractor returning scripted facts; records every call."""

    model = "fake-extractor"

    def __init__(self, facts=None, summary="scripted"):
        self.facts = facts if facts is not None else facts_from_lines
        self.summary = summary
        self.calls = []

    def extract(self, source_id, source_filename, source_version, markdown):
        self.calls.append((source_id, source_filename, source_version))
        raw = self.facts(markdown) if callable(self.facts) else self.facts
        return ExtractionDecision(
            memories=[CandidateFact.from_dict(f) for f in raw],
            summary=self.summary,
        )


class FailingExtractor:
    model = "failing-extractor"

    def __init__(self, exc):
        self.exc = exc

    def extract(self, source_id, source_filename, source_version, markdown):
        raise self.exc


class FakeAnswerer:
    """Answerer returning a fixed reply (or raising)."""

    def __init__(self, reply="", exc=None):
        self.reply = reply
        self.exc = exc
        self.prompts = []

    def complete(self, instructions, prompt):
        self.prompts.append((instructions, prompt))
        if self.exc is not None:
            raise self.exc
        return self.reply


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def pipeline(store, extractor):
    return ExtractionPipeline(store, extractor=extractor)
