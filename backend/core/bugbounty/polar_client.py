"""
Polar API client: open issue bounties and payout status.
"""

import logging
from typing import Any, Dict, List, Optional

from backend.core.bugbounty.base_client import BountyApiClient
from backend.core.bugbounty.provider import BountyListing, PayoutStatus, find_vulnerability_ref
from backend.core.timestamps import parse_timestamp

logger = logging.getLogger(__name__)


class PolarClient(BountyApiClient):
    platform_name = "polar"

    def __init__(self, base_url: str = "https://api.polar.sh", token: Optional[str] = None):
        super().__init__(base_url, token)

    async def fetch_bounties(self) -> List[BountyListing]:
        data = await self._get("/api/v1/bounties", params={"state": "open"})
        items = (data or {}).get("items")
        if not isinstance(items, list):
            logger.warning("Invalid response format from Polar API")
            return []
        return [listing for listing in (self._parse_bounty(item) for item in items) if listing]

    def _parse_bounty(self, node: Dict[str, Any]) -> Optional[BountyListing]:
        issue = node.get("issue")
        reward = node.get("reward")
        if not issue:
            logger.warning("Polar bounty missing issue node")
            return None
        if not reward or "amount" not in reward:
            logger.debug("Skipping Polar bounty without reward amount")
            return None
        repo = issue.get("repository") or {}
        if not repo.get("url"):
            logger.warning("Polar bounty missing repository URL")
            return None
        return BountyListing(
            platform=self.platform_name,
            external_id=str(issue.get("id")),
            repository_url=repo["url"],
            amount=float(reward["amount"]),
            currency=reward.get("currency") or "USD",
            title=issue.get("title") or "",
            description=issue.get("body") or "",
            deadline=parse_timestamp(node.get("expires_at")),
            vulnerability_ref=find_vulnerability_ref(issue.get("title"), issue.get("body")),
        )

    async def get_payout_status(self, external_id: str) -> PayoutStatus:
        data = await self._get(f"/api/v1/bounties/{external_id}") or {}
        state = str(data.get("state", "")).lower()
        if state in ("paid", "completed"):
            return PayoutStatus(external_id=external_id, state="paid")
        if state in ("rejected", "disputed", "canceled"):
            return PayoutStatus(external_id=external_id, state="rejected", reason=data.get("reason") or state)
        return PayoutStatus(external_id=external_id, state="pending")
