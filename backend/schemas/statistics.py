"""
VulnWatch - Statistics Schema
"""
from typing import Any, Dict

from backend.schemas.base import CamelModel


class StatisticsResponse(CamelModel):
    repos_watched: int
    cves_tracked: int
    commits_processed_today: int
    findings_by_status: Dict[str, int] = {}
    bounties_by_status: Dict[str, int] = {}
    dependencies: Dict[str, Dict[str, Any]] = {}
