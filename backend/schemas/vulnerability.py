"""
VulnWatch - Catalog Schemas
"""
from datetime import datetime
from typing import List, Optional

from backend.core.catalog import CatalogEntry
from backend.schemas.base import CamelModel


class VulnerabilityResponse(CamelModel):
    """Catalog record relevant to the watched repositories"""
    cve_id: str
    severity: str
    score: Optional[float] = None
    ecosystems: List[str] = []
    affected_products: List[str] = []
    summary: Optional[str] = None
    published_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: CatalogEntry) -> "VulnerabilityResponse":
        return cls(
            cve_id=entry.catalog_id,
            severity=entry.severity,
            score=entry.score,
            ecosystems=sorted(entry.ecosystems),
            affected_products=list(entry.affected_products),
            summary=entry.summary,
            published_at=entry.published_at,
        )
