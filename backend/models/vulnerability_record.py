"""
VulnWatch - Vulnerability Record Model
"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy import String, Float, DateTime, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from backend.db.database import Base
from backend.core.catalog import CatalogEntry
import uuid


class VulnerabilityRecord(Base):
    """Catalog entry (CVE or advisory). Replaced wholesale on sync."""
    __tablename__ = "vulnerability_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    catalog_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    severity: Mapped[str] = mapped_column(String(20), default="medium")  # critical, high, medium, low
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ecosystems: Mapped[List] = mapped_column(JSON, default=list)
    affected_products: Mapped[List] = mapped_column(JSON, default=list)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Static rule material for the pattern analyzer
    vulnerable_pattern: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fixed_pattern: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    source: Mapped[str] = mapped_column(String(50), default="seed")  # seed, nvd, manual
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def to_entry(self) -> CatalogEntry:
        return CatalogEntry(
            catalog_id=self.catalog_id,
            severity=self.severity,
            ecosystems=frozenset(self.ecosystems or []),
            score=self.score,
            published_at=self.published_at,
            summary=self.summary or "",
            vulnerable_pattern=self.vulnerable_pattern,
            fixed_pattern=self.fixed_pattern,
            affected_products=tuple(self.affected_products or []),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "catalog_id": self.catalog_id,
            "severity": self.severity,
            "score": self.score,
            "ecosystems": self.ecosystems or [],
            "affected_products": self.affected_products or [],
            "summary": self.summary,
            "source": self.source,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }
