"""
Algora API client: open bounties and payout status.
"""

import logging
from typing import Any, Dict, List, Optional

from backend.core.bugbounty.base_client import BountyApiClient
from backend.core.bugbounty.provider import BountyListing, PayoutStatus, find_vulnerability_ref
from backend.core.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

_PAID_STATES = {"paid", "completed", "rewarded"}
_REJECTED_STATES = {"rejected", "cancelled", "canceled"}


class AlgoraClient(BountyApiClient):
    platform_name = "algora"

    def __init__(self, base_url: str = "https://console.algora.io/api", api_key: Optional[str] = None):
        super().__init__(base_url, api_key)

    async def fetch_bounties(self) -> List[BountyListing]:
        data = await self._get("/v1/bounties")
        items = (data or {}).get("bounties")
        if not isinstance(items, list):
            logger.warning("Invalid response format from Algora API")
            return []

        listings = []
        for node in items:
            listing = self._parse_bounty(node)
            if listing:
                listings.append(listing)
        return listings

    def _parse_bounty(self, node: Dict[str, Any]) -> Optional[BountyListing]:
        issue_id = node.get("issueId")
        repo_url = node.get("repositoryUrl")
        if not issue_id or not repo_url:
            logger.debug(f"Skipping Algora bounty without issue/repository: {node.get('id')}")
            return None
        amount = node.get("amount")
        return BountyListing(
            platform=self.platform_name,
            external_id=str(issue_id),
            repository_url=repo_url,
            amount=float(amount) if amount is not None else None,
            currency=node.get("currency") or "USD",
            title=node.get("title") or "",
            description=node.get("description") or "",
            deadline=parse_timestamp(node.get("deadline")),
            vulnerability_ref=node.get("cveId") or find_vulnerability_ref(node.get("title"), node.get("description")),
        )

    async def get_payout_status(self, external_id: str) -> PayoutStatus:
        data = await self._get(f"/v1/bounties/{external_id}") or {}
        raw = str(data.get("status", "")).lower()
        if raw in _PAID_STATES:
            state = "paid"
        elif raw in _REJECTED_STATES:
            state = "rejected"
        else:
            state = "pending"
        return PayoutStatus(external_id=external_id, state=state, reason=data.get("reason") or "")
