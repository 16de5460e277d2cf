"""
Tests for projmem.addressing — source ids, checksums, fingerprints.
"""

import pytest

from projmem.addressing import (
    checksum,
    derive_memory_id,
    derive_source_id,
    fingerprint,
    fuzzy_checksum,
    normalize_external_id,
    normalize_statement,
)
from projmem.types import InputError


class TestSourceId:
    def test_filename_is_case_and_slash_insensitive(self):
        assert derive_source_id("Notes/Plan.md") == derive_source_id("notes\\plan.md")
        assert derive_source_id("a//b.md") == derive_source_id("A/B.md")

    def test_external_id_wins(self):
        sid = derive_source_id("plan.md", "  Drive:ABC  ")
        assert sid == "ext:drive:abc"

    def test_external_prefix_not_doubled(self):
        assert derive_source_id(external_id="ext:Doc-1") == "ext:doc-1"
        assert normalize_external_id("EXT: Doc  1") == "doc 1"

    def test_missing_identity_rejected(self):
        with pytest.raises(InputError):
            derive_source_id("  ", "   ")
        with pytest.raises(InputError):
            derive_source_id()

    def test_is_content_independent(self):
        assert len(derive_source_id("plan.md")) == 64


class TestChecksums:
    def test_newline_styles_share_checksum(self):
        assert checksum("a\r\nb\rc") == checksum("a\nb\nc")

    def test_different_content_differs(self):
        assert checksum("alpha") != checksum("beta")

    def test_fuzzy_ignores_case_and_spacing(self):
        a = "# Title\n\nSome   text here  \n\n\n\nMore"
        b = "# TITLE\n\nsome text here\n\nmore"
        assert fuzzy_checksum(a) == fuzzy_checksum(b)
        assert checksum(a) != checksum(b)


class TestFingerprint:
    def test_kind_case_insensitive(self):
        assert fingerprint("Decisions", "Use SQLite") == fingerprint("decisions", "Use SQLite")

    def test_whitespace_normalized(self):
        assert fingerprint("knowledge", "a  fact\nhere") == fingerprint("knowledge", " a fact here ")

    def test_statement_case_matters(self):
        assert fingerprint("knowledge", "Use SQLite") != fingerprint("knowledge", "use sqlite")

    def test_statement_capped(self):
        assert len(normalize_statement("x" * 1000)) == 600

    def test_memory_id_scoped_by_source(self):
        fp = fingerprint("knowledge", "The API key rotates monthly")
        a = derive_memory_id("src-a", fp)
        b = derive_memory_id("src-b", fp)
        assert a != b
        assert a.startswith("mem_") and len(a) == 36
        assert derive_memory_id("src-a", fp) == a
