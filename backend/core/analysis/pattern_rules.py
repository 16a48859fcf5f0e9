"""
Static pattern-rule analyzer.

Uses the catalog record's vulnerable_pattern / fixed_pattern regexes:
detection scans lines added by the commit, fix generation rewrites the
affected files at the commit, verification re-scans the patched files.
"""

import difflib
import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional

from backend.core.analysis.base import (
    CommitContext,
    DetectionResult,
    Patch,
    VerificationResult,
    clamp_confidence,
)
from backend.core.catalog import CatalogEntry
from backend.core.errors import AnalysisFailure

logger = logging.getLogger(__name__)

# (owner, name, path, ref) -> file content or None
FileFetcher = Callable[[str, str, str, str], Awaitable[Optional[str]]]

BASE_PRESENCE = 0.7
PER_EXTRA_FILE = 0.1
MAX_PRESENCE = 0.95
REMOVED_ONLY_PRESENCE = 0.2
CLEAN_PATCH_CONFIDENCE = 0.9


def _compile(pattern: str) -> "re.Pattern":
    try:
        return re.compile(pattern, re.MULTILINE)
    except re.error as e:
        raise AnalysisFailure(f"Invalid rule pattern {pattern!r}: {e}") from e


def split_diff(diff: str) -> Dict[str, Dict[str, List[str]]]:
    """Per-file added/removed lines of a unified diff."""
    files: Dict[str, Dict[str, List[str]]] = {}
    current: Optional[Dict[str, List[str]]] = None
    for line in diff.splitlines():
        if line.startswith("+++ "):
            path = line[4:].strip()
            if path.startswith("b/"):
                path = path[2:]
            current = files.setdefault(path, {"added": [], "removed": []})
        elif line.startswith("--- ") or line.startswith("@@"):
            continue
        elif current is None:
            continue
        elif line.startswith("+"):
            current["added"].append(line[1:])
        elif line.startswith("-"):
            current["removed"].append(line[1:])
    return files


class PatternRuleAnalyzer:
    """PresenceDetector, FixGenerator and FixVerifier backed by catalog regexes."""

    name = "pattern"

    def __init__(self, fetch_file: FileFetcher):
        self._fetch_file = fetch_file

    async def detect(self, commit: CommitContext, vulnerability: CatalogEntry) -> DetectionResult:
        if not vulnerability.vulnerable_pattern:
            return DetectionResult(confidence=0.0, evidence=f"No rule for {vulnerability.catalog_id}")

        pattern = _compile(vulnerability.vulnerable_pattern)
        added_hits: List[str] = []
        removed_hits: List[str] = []
        evidence: List[str] = []
        for path, lines in split_diff(commit.diff).items():
            for line in lines["added"]:
                if pattern.search(line):
                    if path not in added_hits:
                        added_hits.append(path)
                    evidence.append(f"{path}: +{line.strip()[:160]}")
            if path not in added_hits and any(pattern.search(l) for l in lines["removed"]):
                removed_hits.append(path)

        if added_hits:
            confidence = BASE_PRESENCE + PER_EXTRA_FILE * (len(added_hits) - 1)
            return DetectionResult(
                confidence=clamp_confidence(min(MAX_PRESENCE, confidence)),
                affected_files=added_hits,
                evidence="\n".join(evidence[:20]),
            )
        if removed_hits:
            return DetectionResult(
                confidence=REMOVED_ONLY_PRESENCE,
                affected_files=removed_hits,
                evidence="Pattern only appears in removed lines",
            )
        return DetectionResult(confidence=0.0, evidence="Pattern not introduced by this commit")

    async def generate_fix(
        self, commit: CommitContext, vulnerability: CatalogEntry, affected_files: List[str]
    ) -> Patch:
        if not vulnerability.vulnerable_pattern or vulnerability.fixed_pattern is None:
            return Patch(summary="No replacement rule available")

        pattern = _compile(vulnerability.vulnerable_pattern)
        patched: Dict[str, str] = {}
        diffs: List[str] = []
        for path in affected_files:
            original = await self._fetch_file(commit.owner, commit.name, path, commit.commit_sha)
            if original is None:
                logger.debug(f"{path} missing at {commit.commit_sha[:8]}, skipped")
                continue
            try:
                rewritten = pattern.sub(vulnerability.fixed_pattern, original)
            except (re.error, IndexError) as e:
                raise AnalysisFailure(f"Replacement for {vulnerability.catalog_id} failed: {e}") from e
            if rewritten == original:
                continue
            patched[path] = rewritten
            diffs.append("".join(difflib.unified_diff(
                original.splitlines(keepends=True),
                rewritten.splitlines(keepends=True),
                fromfile=f"a/{path}",
                tofile=f"b/{path}",
            )))

        return Patch(
            files=patched,
            diff="".join(diffs),
            summary=f"Replace {vulnerability.catalog_id} pattern in {len(patched)} file(s)",
        )

    async def verify_fix(
        self, commit: CommitContext, vulnerability: CatalogEntry, patch: Patch
    ) -> VerificationResult:
        if patch.is_empty:
            return VerificationResult(confidence=0.0, notes="Empty patch")
        if not vulnerability.vulnerable_pattern:
            return VerificationResult(confidence=0.0, notes="No rule to verify against")

        pattern = _compile(vulnerability.vulnerable_pattern)
        still_vulnerable = [path for path, content in patch.files.items() if pattern.search(content)]
        clean = len(patch.files) - len(still_vulnerable)
        confidence = CLEAN_PATCH_CONFIDENCE * clean / len(patch.files)
        notes = "All patched files clean"
        if still_vulnerable:
            notes = f"Pattern still present in: {', '.join(still_vulnerable)}"
        return VerificationResult(confidence=clamp_confidence(confidence), notes=notes)
