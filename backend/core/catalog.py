"""
VulnWatch - Vulnerability catalog snapshot

The correlator reads from an immutable CatalogSnapshot. A refresh builds a new
snapshot and swaps the reference in one assignment, so readers never observe
a half-synced catalog.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

# Lower rank sorts first
SEVERITY_ORDER: Dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}

KNOWN_LANGUAGES = (
    "Java", "Python", "JavaScript", "TypeScript", "Ruby", "PHP",
    "Go", "Rust", "C", "C++", "C#", "Swift", "Kotlin", "Scala",
)

LANGUAGE_ALIASES = {
    "js": "JavaScript",
    "node": "JavaScript",
    "nodejs": "JavaScript",
    "ts": "TypeScript",
    "cpp": "C++",
    "cxx": "C++",
    "csharp": "C#",
    "cs": "C#",
    "golang": "Go",
    "py": "Python",
}

# Product / framework name -> languages it implies
PRODUCT_LANGUAGES: Dict[str, Tuple[str, ...]] = {
    # Java
    "spring": ("Java",),
    "spring framework": ("Java",),
    "spring boot": ("Java",),
    "log4j": ("Java",),
    "apache struts": ("Java",),
    "jackson": ("Java",),
    "hibernate": ("Java",),
    "maven": ("Java",),
    "gradle": ("Java", "Kotlin"),
    "kotlin": ("Kotlin", "Java"),
    # Python
    "django": ("Python",),
    "flask": ("Python",),
    "fastapi": ("Python",),
    "numpy": ("Python",),
    "pandas": ("Python",),
    "requests": ("Python",),
    "pip": ("Python",),
    "pyyaml": ("Python",),
    "jinja2": ("Python",),
    # JavaScript / TypeScript
    "node.js": ("JavaScript", "TypeScript"),
    "express": ("JavaScript", "TypeScript"),
    "react": ("JavaScript", "TypeScript"),
    "vue": ("JavaScript", "TypeScript"),
    "angular": ("TypeScript", "JavaScript"),
    "npm": ("JavaScript", "TypeScript"),
    "yarn": ("JavaScript", "TypeScript"),
    "webpack": ("JavaScript", "TypeScript"),
    "lodash": ("JavaScript", "TypeScript"),
    # .NET
    "asp.net": ("C#",),
    "entity framework": ("C#",),
    "nuget": ("C#",),
    # Go
    "golang": ("Go",),
    "go": ("Go",),
    # Ruby
    "rails": ("Ruby",),
    "ruby on rails": ("Ruby",),
    "bundler": ("Ruby",),
    # PHP
    "laravel": ("PHP",),
    "symfony": ("PHP",),
    "composer": ("PHP",),
    # Rust
    "rust": ("Rust",),
    "cargo": ("Rust",),
    # C / C++
    "openssl": ("C", "C++"),
    "libcurl": ("C", "C++"),
}

_PRODUCT_PATTERNS = {
    product: re.compile(r"(?<![\w.])" + re.escape(product) + r"(?![\w])")
    for product in PRODUCT_LANGUAGES
}


def normalize_language(name: Optional[str]) -> Optional[str]:
    """Map a free-form language name onto a known language tag, or None."""
    if not name or not name.strip():
        return None
    cleaned = name.strip()
    for known in KNOWN_LANGUAGES:
        if known.lower() == cleaned.lower():
            return known
    return LANGUAGE_ALIASES.get(cleaned.lower())


def extract_languages(
    affected_products: Optional[Iterable[str]] = None,
    affected_languages: Optional[Iterable[str]] = None,
) -> Set[str]:
    """Language tags implied by a record's products and explicit languages."""
    languages: Set[str] = set()
    for lang in affected_languages or ():
        normalized = normalize_language(lang)
        if normalized:
            languages.add(normalized)

    for product in affected_products or ():
        lowered = product.lower().strip()
        for key, pattern in _PRODUCT_PATTERNS.items():
            if pattern.search(lowered):
                languages.update(PRODUCT_LANGUAGES[key])
        direct = normalize_language(product)
        if direct:
            languages.add(direct)
    return languages


def severity_from_score(score: Optional[float]) -> str:
    """CVSS v3 qualitative rating (none is folded into low)."""
    if score is None:
        return "medium"
    if score >= 9.0:
        return "critical"
    if score >= 7.0:
        return "high"
    if score >= 4.0:
        return "medium"
    return "low"


def severity_rank(severity: str) -> int:
    return SEVERITY_ORDER.get((severity or "").lower(), len(SEVERITY_ORDER))


@dataclass(frozen=True)
class CatalogEntry:
    """One vulnerability record as seen by the correlator."""
    catalog_id: str
    severity: str
    ecosystems: FrozenSet[str]
    score: Optional[float] = None
    published_at: Optional[datetime] = None
    summary: str = ""
    vulnerable_pattern: Optional[str] = None
    fixed_pattern: Optional[str] = None
    affected_products: Tuple[str, ...] = ()

    def relevance_key(self) -> Tuple[int, float, str]:
        """Severity tier first, then newest first; catalog id breaks ties."""
        published = self.published_at.timestamp() if self.published_at else 0.0
        return (severity_rank(self.severity), -published, self.catalog_id)


@dataclass(frozen=True)
class CatalogSnapshot:
    entries: Tuple[CatalogEntry, ...] = ()
    loaded_at: Optional[datetime] = None
    _by_language: Dict[str, Tuple[CatalogEntry, ...]] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def build(cls, entries: Iterable[CatalogEntry]) -> "CatalogSnapshot":
        ordered = tuple(sorted(entries, key=lambda e: e.relevance_key()))
        index: Dict[str, List[CatalogEntry]] = {}
        for entry in ordered:
            for lang in entry.ecosystems:
                index.setdefault(lang.lower(), []).append(entry)
        return cls(
            entries=ordered,
            loaded_at=datetime.utcnow(),
            _by_language={k: tuple(v) for k, v in index.items()},
        )

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, catalog_id: str) -> Optional[CatalogEntry]:
        for entry in self.entries:
            if entry.catalog_id == catalog_id:
                return entry
        return None

    def shortlist(self, language: Optional[str]) -> List[CatalogEntry]:
        """Records whose ecosystem tags include the language, in relevance order."""
        normalized = normalize_language(language)
        if not normalized:
            return []
        return list(self._by_language.get(normalized.lower(), ()))

    def relevant(self, languages: Iterable[str]) -> List[CatalogEntry]:
        """Records relevant to any of the languages, in relevance order."""
        wanted = {l.lower() for l in (normalize_language(x) for x in languages) if l}
        return [e for e in self.entries if wanted & {x.lower() for x in e.ecosystems}]


class VulnerabilityCatalog:
    """Holder of the current snapshot."""

    def __init__(self, snapshot: Optional[CatalogSnapshot] = None):
        self._snapshot = snapshot or CatalogSnapshot()

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    def swap(self, entries: Iterable[CatalogEntry]) -> CatalogSnapshot:
        snapshot = CatalogSnapshot.build(entries)
        self._snapshot = snapshot
        logger.info(f"Catalog snapshot swapped: {len(snapshot)} records")
        return snapshot
