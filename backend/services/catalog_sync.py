"""
VulnWatch - Catalog sync

Loads vulnerability records into the database (seed file, NVD) and swaps
the in-memory CatalogSnapshot the correlator reads from.
"""
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.catalog import CatalogSnapshot, VulnerabilityCatalog, extract_languages, severity_from_score
from backend.core.errors import ValidationError
from backend.core.osint.nvd_client import NVDClient
from backend.core.resilience import CATALOG, ResilienceGateway
from backend.core.timestamps import parse_timestamp
from backend.models import VulnerabilityRecord

logger = logging.getLogger(__name__)

_RECORD_FIELDS = (
    "severity", "score", "ecosystems", "affected_products", "summary",
    "vulnerable_pattern", "fixed_pattern", "source", "published_at",
)


def normalize_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and fill in a catalog record dict (seed or NVD)."""
    catalog_id = (raw.get("catalog_id") or raw.get("cve_id") or "").strip()
    if not catalog_id:
        raise ValidationError("Catalog record without an id")

    products = list(raw.get("affected_products") or [])
    ecosystems = sorted(extract_languages(products, raw.get("ecosystems") or raw.get("affected_languages")))

    score = raw.get("score")
    score = float(score) if score is not None else None
    severity = (raw.get("severity") or "").lower()
    if severity not in ("critical", "high", "medium", "low"):
        severity = severity_from_score(score)

    published = raw.get("published_at")
    if isinstance(published, str):
        published = parse_timestamp(published)

    return {
        "catalog_id": catalog_id.upper(),
        "severity": severity,
        "score": score,
        "ecosystems": ecosystems,
        "affected_products": products,
        "summary": raw.get("summary") or raw.get("description"),
        "vulnerable_pattern": raw.get("vulnerable_pattern"),
        "fixed_pattern": raw.get("fixed_pattern"),
        "source": raw.get("source") or "seed",
        "published_at": published,
    }


def load_seed_file(path: Path) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    records = data.get("records", []) if isinstance(data, dict) else data
    return [normalize_record(r) for r in records]


class CatalogSync:
    """Writes records to storage and refreshes the shared snapshot."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        catalog: VulnerabilityCatalog,
        gateway: Optional[ResilienceGateway] = None,
        nvd: Optional[NVDClient] = None,
    ):
        self.session_maker = session_maker
        self.catalog = catalog
        self.gateway = gateway
        self.nvd = nvd

    async def upsert(self, records: Iterable[Dict[str, Any]]) -> int:
        """Insert new records, replace existing ones wholesale. Returns records written."""
        written = 0
        async with self.session_maker() as session:
            for raw in records:
                record = normalize_record(raw)
                result = await session.execute(
                    select(VulnerabilityRecord).where(VulnerabilityRecord.catalog_id == record["catalog_id"])
                )
                existing = result.scalar_one_or_none()
                if existing is None:
                    session.add(VulnerabilityRecord(**record))
                else:
                    # Keep hand-written rule patterns when the feed has none
                    for field_name in _RECORD_FIELDS:
                        value = record[field_name]
                        if field_name in ("vulnerable_pattern", "fixed_pattern") and value is None:
                            continue
                        setattr(existing, field_name, value)
                written += 1
            await session.commit()
        return written

    async def reload(self) -> CatalogSnapshot:
        """Rebuild the snapshot from storage and swap it in."""
        async with self.session_maker() as session:
            result = await session.execute(select(VulnerabilityRecord))
            entries = [r.to_entry() for r in result.scalars().all()]
        return self.catalog.swap(entries)

    async def load_seed(self, path: Optional[Path]) -> int:
        if not path or not Path(path).exists():
            logger.info(f"No catalog seed at {path}, skipping")
            return 0
        count = await self.upsert(load_seed_file(Path(path)))
        logger.info(f"Loaded {count} catalog records from {path}")
        return count

    async def sync_nvd(self, days: int = 30, max_pages: int = 10) -> int:
        """Pull CVEs published in the last `days` from NVD."""
        if not self.nvd or not self.gateway:
            return 0
        start = datetime.utcnow() - timedelta(days=days)
        index: Optional[int] = 0
        total = 0
        pages = 0
        while index is not None and pages < max_pages:
            page = await self.gateway.call_with_retry(
                CATALOG, lambda i=index: self.nvd.fetch_published(start, start_index=i)
            )
            # Records without any ecosystem can never be correlated
            records = [r for r in page["records"] if r["ecosystems"]]
            total += await self.upsert(records)
            index = page["next_index"]
            pages += 1
        logger.info(f"NVD sync wrote {total} records")
        return total

    async def refresh(self, seed_path: Optional[Path] = None, nvd_days: Optional[int] = None) -> CatalogSnapshot:
        if seed_path:
            await self.load_seed(seed_path)
        if nvd_days:
            await self.sync_nvd(nvd_days)
        return await self.reload()
