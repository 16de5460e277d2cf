"""
Tests for projmem.llm — subprocess invocation and extractor output parsing.
"""

import json
import os
import shlex
import sys

import pytest

from projmem.llm import (
    MAX_TAGS,
    CommandExtractor,
    CommandLLM,
    ExtractorUnavailable,
    decision_from_dict,
    invoke_llm,
    parse_json_object,
)


def _py(script):
    return " ".join(shlex.quote(a) for a in [sys.executable, "-c", script])


ECHO = _py("import sys; sys.stdout.write(sys.stdin.read())")


class TestInvoke:
    def test_stdin_mode(self):
        assert invoke_llm(ECHO, "hello") == "hello"

    def test_file_mode_appends_path(self):
        cmd = _py("import sys; print(open(sys.argv[1], encoding='utf-8').read())")
        assert invoke_llm(cmd, "from file", mode="file").strip() == "from file"

    def test_file_mode_removes_prompt_file(self):
        cmd = _py("import sys; print(sys.argv[1])")
        path = invoke_llm(cmd, "transient", mode="file").strip()
        assert os.path.basename(path).startswith("projmem_prompt_")
        assert not os.path.exists(path)

    def test_file_mode_removes_prompt_file_on_failure(self, tmp_path):
        record = tmp_path / "seen.txt"
        script = f"import sys; open({str(record)!r}, 'w').write(sys.argv[1]); sys.exit(4)"
        with pytest.raises(RuntimeError, match="exit 4"):
            invoke_llm(_py(script), "transient", mode="file")
        assert not os.path.exists(record.read_text())

    def test_nonzero_exit(self):
        with pytest.raises(RuntimeError, match="exit 2"):
            invoke_llm(_py("import sys; sys.exit(2)"), "x")

    def test_missing_binary(self):
        with pytest.raises(RuntimeError, match="not found"):
            invoke_llm("definitely-not-a-real-llm-binary", "x")

    def test_empty_command(self):
        with pytest.raises(RuntimeError):
            invoke_llm("   ", "x")

    def test_command_llm_complete(self):
        llm = CommandLLM(ECHO)
        assert llm.complete("Instructions.", "Prompt body") == "Instructions.\n\nPrompt body"


class TestParseJson:
    def test_plain(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_wrapped_in_prose(self):
        assert parse_json_object('Here you go:\n```json\n{"a": [1]}\n```') == {"a": [1]}

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            parse_json_object("[1, 2]")
        with pytest.raises(ValueError):
            parse_json_object("no json here")


class TestDecision:
    def test_cleans_candidates(self):
        decision = decision_from_dict({
            "memories": [
                {"kind": " Decisions ", "statement": "Adopt Postgres for billing.",
                 "confidence": 3, "tags": [f"t{i}" for i in range(20)], "title": "  DB  "},
                {"kind": "knowledge", "statement": "short"},
                "not a dict",
                {"kind": "events", "statement": "Offsite planned for June.", "confidence": "high"},
            ],
            "summary": "two facts",
        })
        assert [m.kind for m in decision.memories] == ["decisions", "events"]
        first, second = decision.memories
        assert first.confidence == 1.0
        assert len(first.tags) == MAX_TAGS
        assert first.title == "DB"
        assert second.confidence is None
        assert decision.summary == "two facts"

    def test_max_memories(self):
        raw = {"memories": [{"kind": "knowledge", "statement": f"Fact number {i} here"} for i in range(10)]}
        assert len(decision_from_dict(raw, max_memories=3).memories) == 3

    def test_memories_must_be_list(self):
        with pytest.raises(ValueError):
            decision_from_dict({"memories": "oops"})


class TestCommandExtractor:
    def test_no_command(self):
        with pytest.raises(ExtractorUnavailable):
            CommandExtractor(None).extract("s", "a.md", 1, "text")

    def test_parses_reply(self):
        reply = json.dumps({"memories": [
            {"kind": "preferences", "statement": "Prefers async standups.", "evidenceText": "async standups"},
        ], "summary": "one"})
        script = f"import sys; sys.stdin.read(); print({reply!r})"
        extractor = CommandExtractor(_py(script), model="scripted")
        decision = extractor.extract("s", "a.md", 1, "We prefer async standups.")
        assert decision.memories[0].kind == "preferences"
        assert decision.memories[0].evidence_text == "async standups"

    def test_prompt_carries_context(self):
        prompt = CommandExtractor("x").build_prompt("src-9", "a.md", 4, "BODY")
        assert '"sourceId": "src-9"' in prompt
        assert '"sourceVersion": 4' in prompt
        assert prompt.endswith("BODY")

    def test_failing_command(self):
        with pytest.raises(ExtractorUnavailable):
            CommandExtractor(_py("import sys; sys.exit(1)")).extract("s", "a.md", 1, "t")

    def test_garbage_output(self):
        with pytest.raises(ExtractorUnavailable, match="Unusable"):
            CommandExtractor(_py("print('I cannot do that')")).extract("s", "a.md", 1, "t")
