from backend.core.analysis.base import (
    CommitContext,
    DetectionResult,
    FixGenerator,
    FixVerifier,
    Patch,
    PresenceDetector,
    VerificationResult,
)
from backend.core.analysis.pattern_rules import PatternRuleAnalyzer
from backend.core.analysis.llm_analyzer import LLMAnalyzer

__all__ = [
    "CommitContext",
    "DetectionResult",
    "FixGenerator",
    "FixVerifier",
    "Patch",
    "PresenceDetector",
    "VerificationResult",
    "PatternRuleAnalyzer",
    "LLMAnalyzer",
]
