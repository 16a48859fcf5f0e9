"""
NVD (National Vulnerability Database) client.

Pulls recently published CVEs from NVD API v2.0 and normalizes them into
catalog record dicts (severity tier, score, products, ecosystem tags).
Supports an optional API key for higher rate limits.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp

from backend.core.catalog import extract_languages, severity_from_score
from backend.core.errors import RateLimited, UpstreamError
from backend.core.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

NVD_API_BASE = "https://services.nvd.nist.gov/rest/json/cves/2.0"
SERVICE_KEY = "catalog"
# NVD caps a pubStartDate/pubEndDate window at 120 days
MAX_WINDOW_DAYS = 120


class NVDClient:
    RESULTS_PER_PAGE = 200

    def __init__(self, api_key: Optional[str] = None, base_url: str = NVD_API_BASE):
        self.api_key = api_key
        self.base_url = base_url
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"apiKey": self.api_key} if self.api_key else {}
            self._session = aiohttp.ClientSession(headers=headers)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def fetch_published(self, start: datetime, end: Optional[datetime] = None, start_index: int = 0) -> Dict[str, Any]:
        """One page of CVEs published in [start, end]. Returns {records, total, next_index}."""
        end = end or datetime.utcnow()
        if end - start > timedelta(days=MAX_WINDOW_DAYS):
            start = end - timedelta(days=MAX_WINDOW_DAYS)
        params = {
            "pubStartDate": start.strftime("%Y-%m-%dT%H:%M:%S.000"),
            "pubEndDate": end.strftime("%Y-%m-%dT%H:%M:%S.000"),
            "resultsPerPage": str(self.RESULTS_PER_PAGE),
            "startIndex": str(start_index),
        }
        session = await self._get_session()
        async with session.get(self.base_url, params=params) as resp:
            if resp.status in (403, 429):
                raise RateLimited(SERVICE_KEY, retry_after=30.0)
            if resp.status != 200:
                raise UpstreamError(SERVICE_KEY, f"NVD API returned {resp.status}", status=resp.status)
            data = await resp.json()

        records = self._parse_cves(data)
        total = int(data.get("totalResults", len(records)))
        next_index = start_index + int(data.get("resultsPerPage", len(records)))
        return {"records": records, "total": total, "next_index": next_index if next_index < total else None}

    @staticmethod
    def _products(cve: Dict[str, Any]) -> List[str]:
        """Product names from CPE match criteria (cpe:2.3:a:vendor:product:...)."""
        products: List[str] = []
        for config in cve.get("configurations", []):
            for node in config.get("nodes", []):
                for match in node.get("cpeMatch", []):
                    parts = match.get("criteria", "").split(":")
                    if len(parts) > 4:
                        product = parts[4].replace("_", " ")
                        if product and product not in products:
                            products.append(product)
        return products

    @classmethod
    def _parse_cves(cls, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Extract catalog records from an NVD API v2.0 response."""
        results: List[Dict[str, Any]] = []
        for item in data.get("vulnerabilities", []):
            cve = item.get("cve", {})
            cve_id = cve.get("id", "")
            if not cve_id:
                continue

            # Description (English preferred)
            desc = ""
            for d in cve.get("descriptions", []):
                if d.get("lang") == "en":
                    desc = d.get("value", "")
                    break

            # CVSS: try v3.1 first, then v3.0, then v2
            cvss_score = None
            severity = None
            metrics = cve.get("metrics", {})
            for key in ("cvssMetricV31", "cvssMetricV30", "cvssMetricV2"):
                metric_list = metrics.get(key, [])
                if metric_list:
                    cvss_data = metric_list[0].get("cvssData", {})
                    cvss_score = cvss_data.get("baseScore")
                    severity = (cvss_data.get("baseSeverity") or metric_list[0].get("baseSeverity") or "").lower()
                    break
            if severity not in ("critical", "high", "medium", "low"):
                severity = severity_from_score(cvss_score)

            products = cls._products(cve)
            results.append({
                "catalog_id": cve_id,
                "summary": desc[:2000],
                "score": cvss_score,
                "severity": severity,
                "affected_products": products,
                "ecosystems": sorted(extract_languages(products)),
                "published_at": parse_timestamp(cve.get("published")),
                "source": "nvd",
            })
        return results
