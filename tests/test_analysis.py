"""
Tests for the analysis stages: static pattern rules and the inference-backed
analyzer (with a mocked provider).
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from conftest import CRITICAL_ENTRY
from backend.core.analysis import CommitContext, LLMAnalyzer, Patch, PatternRuleAnalyzer
from backend.core.analysis.base import clamp_confidence
from backend.core.analysis.pattern_rules import split_diff
from backend.core.errors import AnalysisFailure
from backend.core.llm import LLMResponse, extract_json_object

ORIGINAL = "import pickle\n\ndef load(raw):\n    return pickle.loads(raw)\n"


def context(diff: str, files=("app.py",)) -> CommitContext:
    return CommitContext(
        owner="acme", name="widget", language="Python", commit_sha="c0ffee" * 6 + "abcd",
        message="load cache", diff=diff, changed_files=list(files),
    )


def added(path: str, line: str) -> str:
    return f"--- a/{path}\n+++ b/{path}\n@@ -1 +1,2 @@\n+{line}\n"


def removed(path: str, line: str) -> str:
    return f"--- a/{path}\n+++ b/{path}\n@@ -1,2 +1 @@\n-{line}\n"


@pytest.fixture
def files():
    return {("acme", "widget", "app.py"): ORIGINAL, ("acme", "widget", "util.py"): "x = 1\n"}


@pytest.fixture
def fetch_file(files):
    async def _fetch(owner, name, path, ref):
        return files.get((owner, name, path))
    return _fetch


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_clamp_confidence(self):
        assert clamp_confidence(1.7) == 1.0
        assert clamp_confidence(-0.2) == 0.0
        assert clamp_confidence("0.4") == 0.4
        assert clamp_confidence("high") == 0.0
        assert clamp_confidence(float("nan")) == 0.0

    def test_split_diff(self):
        parsed = split_diff(added("app.py", "a = 1") + removed("old.py", "b = 2"))
        assert parsed["app.py"] == {"added": ["a = 1"], "removed": []}
        assert parsed["old.py"] == {"added": [], "removed": ["b = 2"]}

    def test_extract_json_object(self):
        assert extract_json_object('```json\n{"confidence": 0.9}\n```') == {"confidence": 0.9}
        assert extract_json_object('Sure! {"a": {"b": "}"}} done') == {"a": {"b": "}"}}
        assert extract_json_object("no json here") is None


# ---------------------------------------------------------------------------
# Pattern rules
# ---------------------------------------------------------------------------

class TestPatternRuleDetect:
    @pytest.mark.asyncio
    async def test_added_line_matches(self, fetch_file):
        result = await PatternRuleAnalyzer(fetch_file).detect(
            context(added("app.py", "data = pickle.loads(raw)")), CRITICAL_ENTRY
        )
        assert result.confidence == pytest.approx(0.7)
        assert result.affected_files == ["app.py"]
        assert "pickle.loads" in result.evidence

    @pytest.mark.asyncio
    async def test_more_files_raise_confidence(self, fetch_file):
        diff = added("app.py", "pickle.loads(a)") + added("util.py", "pickle.loads(b)")
        result = await PatternRuleAnalyzer(fetch_file).detect(context(diff), CRITICAL_ENTRY)
        assert result.confidence == pytest.approx(0.8)
        assert result.affected_files == ["app.py", "util.py"]

    @pytest.mark.asyncio
    async def test_removed_only_is_low(self, fetch_file):
        result = await PatternRuleAnalyzer(fetch_file).detect(
            context(removed("app.py", "pickle.loads(raw)")), CRITICAL_ENTRY
        )
        assert result.confidence == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_no_match(self, fetch_file):
        result = await PatternRuleAnalyzer(fetch_file).detect(context(added("app.py", "x = 1")), CRITICAL_ENTRY)
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_invalid_rule_is_analysis_failure(self, fetch_file):
        from dataclasses import replace

        broken = replace(CRITICAL_ENTRY, vulnerable_pattern="(unclosed")
        with pytest.raises(AnalysisFailure):
            await PatternRuleAnalyzer(fetch_file).detect(context(added("app.py", "x")), broken)


class TestPatternRuleFix:
    @pytest.mark.asyncio
    async def test_generate_then_verify(self, fetch_file):
        analyzer = PatternRuleAnalyzer(fetch_file)
        patch = await analyzer.generate_fix(context(""), CRITICAL_ENTRY, ["app.py", "missing.py"])

        assert list(patch.files) == ["app.py"]
        assert "json.loads(raw)" in patch.files["app.py"]
        assert patch.diff.startswith("--- a/app.py")

        verdict = await analyzer.verify_fix(context(""), CRITICAL_ENTRY, patch)
        assert verdict.confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_untouched_files_give_empty_patch(self, fetch_file):
        analyzer = PatternRuleAnalyzer(fetch_file)
        patch = await analyzer.generate_fix(context(""), CRITICAL_ENTRY, ["util.py"])
        assert patch.is_empty
        assert (await analyzer.verify_fix(context(""), CRITICAL_ENTRY, patch)).confidence == 0.0

    @pytest.mark.asyncio
    async def test_verify_flags_remaining_pattern(self, fetch_file):
        patch = Patch(files={"app.py": "json.loads(a)\n", "b.py": "pickle.loads(b)\n"})
        verdict = await PatternRuleAnalyzer(fetch_file).verify_fix(context(""), CRITICAL_ENTRY, patch)
        assert verdict.confidence == pytest.approx(0.45)
        assert "b.py" in verdict.notes


# ---------------------------------------------------------------------------
# Inference-backed analyzer
# ---------------------------------------------------------------------------

def mock_provider(*texts):
    provider = MagicMock()
    provider.name = "mock"
    provider.generate = AsyncMock(side_effect=[LLMResponse(text=t, provider="mock") for t in texts])
    return provider


class TestLLMAnalyzer:
    @pytest.mark.asyncio
    async def test_detect_parses_verdict(self, gateway, fetch_file):
        provider = mock_provider('{"confidence": 0.92, "affected_files": ["app.py"], "evidence": "unsafe load"}')
        analyzer = LLMAnalyzer(provider, gateway, fetch_file, model="m")

        result = await analyzer.detect(context(added("app.py", "pickle.loads(x)")), CRITICAL_ENTRY)
        assert result.confidence == pytest.approx(0.92)
        assert result.affected_files == ["app.py"]
        options = provider.generate.await_args.args[2]
        assert options.json_mode is True
        assert options.model == "m"

    @pytest.mark.asyncio
    async def test_out_of_range_confidence_is_clamped(self, gateway, fetch_file):
        analyzer = LLMAnalyzer(mock_provider('{"confidence": 3}'), gateway, fetch_file)
        result = await analyzer.detect(context(""), CRITICAL_ENTRY)
        assert result.confidence == 1.0
        assert result.affected_files == ["app.py"]

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_analysis_failure(self, gateway, fetch_file):
        analyzer = LLMAnalyzer(mock_provider("I cannot help with that"), gateway, fetch_file)
        with pytest.raises(AnalysisFailure):
            await analyzer.detect(context(""), CRITICAL_ENTRY)

    @pytest.mark.asyncio
    async def test_fix_and_verify(self, gateway, fetch_file):
        provider = mock_provider(
            '{"content": "import json\\n\\ndef load(raw):\\n    return json.loads(raw)\\n", "summary": "use json"}',
            '{"confidence": 0.85, "notes": "safe"}',
        )
        analyzer = LLMAnalyzer(provider, gateway, fetch_file)

        patch = await analyzer.generate_fix(context(""), CRITICAL_ENTRY, ["app.py"])
        assert patch.summary == "use json"
        assert "+    return json.loads(raw)" in patch.diff

        verdict = await analyzer.verify_fix(context(""), CRITICAL_ENTRY, patch)
        assert verdict.confidence == pytest.approx(0.85)
        assert provider.generate.await_count == 2
