"""
Inference-backed analyzer.

Asks the configured LLM provider for a JSON verdict at each stage. Each
model call is a single ResilienceGateway.invoke() on the "inference" key;
retries are left to the next pipeline cycle.
"""

import difflib
import logging
from typing import Dict, List, Optional

from backend.core.analysis.base import (
    CommitContext,
    DetectionResult,
    Patch,
    VerificationResult,
    clamp_confidence,
)
from backend.core.analysis.pattern_rules import FileFetcher
from backend.core.catalog import CatalogEntry
from backend.core.errors import AnalysisFailure
from backend.core.llm import GenerateOptions, LLMProvider, extract_json_object
from backend.core.resilience import INFERENCE, ResilienceGateway

logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 12000
MAX_FILE_CHARS = 16000

SYSTEM_PROMPT = (
    "You are a senior application security engineer reviewing source changes "
    "for known vulnerabilities. Answer with a single JSON object and nothing else."
)

DETECT_PROMPT = """Vulnerability {catalog_id} ({severity}): {summary}

Repository {repo} ({language}), commit {sha}:
{message}

Diff:
{diff}

Does this commit introduce or keep code affected by {catalog_id}?
Reply as {{"confidence": <0..1>, "affected_files": [<paths>], "evidence": "<short reason>"}}"""

FIX_PROMPT = """Vulnerability {catalog_id} ({severity}): {summary}

Rewrite the file below so it is no longer affected. Keep behaviour otherwise
identical and change as little as possible.

Path: {path}
----
{content}
----

Reply as {{"content": "<full new file content>", "summary": "<one line>"}}"""

VERIFY_PROMPT = """Vulnerability {catalog_id} ({severity}): {summary}

Proposed fix:
{diff}

Does this patch fully remediate {catalog_id} without breaking the code?
Reply as {{"confidence": <0..1>, "notes": "<short reason>"}}"""


class LLMAnalyzer:
    """PresenceDetector, FixGenerator and FixVerifier backed by an LLM provider."""

    name = "llm"

    def __init__(
        self,
        provider: LLMProvider,
        gateway: ResilienceGateway,
        fetch_file: FileFetcher,
        model: str = "",
        max_tokens: int = 4096,
    ):
        self.provider = provider
        self.gateway = gateway
        self._fetch_file = fetch_file
        self.options = GenerateOptions(model=model, max_tokens=max_tokens, temperature=0.0, json_mode=True)

    async def _ask(self, prompt: str) -> Dict:
        messages = [{"role": "user", "content": prompt}]
        response = await self.gateway.invoke(
            INFERENCE, lambda: self.provider.generate(messages, SYSTEM_PROMPT, self.options)
        )
        data = extract_json_object(response.text)
        if data is None:
            raise AnalysisFailure(f"{self.provider.name} returned no parseable JSON")
        return data

    async def detect(self, commit: CommitContext, vulnerability: CatalogEntry) -> DetectionResult:
        data = await self._ask(DETECT_PROMPT.format(
            catalog_id=vulnerability.catalog_id,
            severity=vulnerability.severity,
            summary=vulnerability.summary or "no summary",
            repo=commit.full_name,
            language=commit.language or "unknown",
            sha=commit.commit_sha,
            message=commit.message[:500],
            diff=commit.diff[:MAX_DIFF_CHARS],
        ))
        files = [f for f in data.get("affected_files") or [] if isinstance(f, str)]
        return DetectionResult(
            confidence=clamp_confidence(data.get("confidence")),
            affected_files=files or list(commit.changed_files),
            evidence=str(data.get("evidence", ""))[:2000],
        )

    async def generate_fix(
        self, commit: CommitContext, vulnerability: CatalogEntry, affected_files: List[str]
    ) -> Patch:
        patched: Dict[str, str] = {}
        diffs: List[str] = []
        summaries: List[str] = []
        for path in affected_files:
            original = await self._fetch_file(commit.owner, commit.name, path, commit.commit_sha)
            if original is None:
                continue
            data = await self._ask(FIX_PROMPT.format(
                catalog_id=vulnerability.catalog_id,
                severity=vulnerability.severity,
                summary=vulnerability.summary or "no summary",
                path=path,
                content=original[:MAX_FILE_CHARS],
            ))
            rewritten: Optional[str] = data.get("content")
            if not isinstance(rewritten, str) or rewritten == original:
                continue
            patched[path] = rewritten
            summaries.append(str(data.get("summary", "")))
            diffs.append("".join(difflib.unified_diff(
                original.splitlines(keepends=True),
                rewritten.splitlines(keepends=True),
                fromfile=f"a/{path}",
                tofile=f"b/{path}",
            )))
        return Patch(files=patched, diff="".join(diffs), summary="; ".join(s for s in summaries if s))

    async def verify_fix(
        self, commit: CommitContext, vulnerability: CatalogEntry, patch: Patch
    ) -> VerificationResult:
        if patch.is_empty:
            return VerificationResult(confidence=0.0, notes="Empty patch")
        data = await self._ask(VERIFY_PROMPT.format(
            catalog_id=vulnerability.catalog_id,
            severity=vulnerability.severity,
            summary=vulnerability.summary or "no summary",
            diff=patch.diff[:MAX_DIFF_CHARS],
        ))
        return VerificationResult(
            confidence=clamp_confidence(data.get("confidence")),
            notes=str(data.get("notes", ""))[:2000],
        )
