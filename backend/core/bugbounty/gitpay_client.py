"""
GitPay API client: open task bounties and payout status.

GitPay deployments differ in envelope and field names, so the parser accepts
the common variants (bounties/items/data envelopes, camelCase or snake_case ids,
flat or nested reward and repository nodes).
"""

import logging
from typing import Any, Dict, List, Optional

from backend.core.bugbounty.base_client import BountyApiClient
from backend.core.bugbounty.provider import BountyListing, PayoutStatus, find_vulnerability_ref
from backend.core.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

_PAID_STATES = {"paid", "completed", "closed_paid"}
_REJECTED_STATES = {"rejected", "cancelled", "canceled", "refunded"}


def _first(node: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = node.get(key)
        if value not in (None, ""):
            return value
    return None


class GitPayClient(BountyApiClient):
    platform_name = "gitpay"

    def __init__(self, base_url: str = "https://gitpay.me", api_key: Optional[str] = None):
        super().__init__(base_url, api_key)

    async def fetch_bounties(self) -> List[BountyListing]:
        data = await self._get("/api/bounties", params={"status": "open"})
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = _first(data, "bounties", "items", "data")
        else:
            items = None
        if not isinstance(items, list):
            logger.warning("Invalid response format from GitPay API")
            return []
        return [listing for listing in (self._parse_bounty(item) for item in items) if listing]

    @staticmethod
    def _repository_url(node: Dict[str, Any]) -> Optional[str]:
        url = _first(node, "repositoryUrl", "repository_url", "repoUrl")
        if url:
            return url
        repo = node.get("repository")
        if isinstance(repo, str):
            return repo or None
        if isinstance(repo, dict):
            return _first(repo, "url", "html_url")
        return None

    @staticmethod
    def _amount(node: Dict[str, Any]) -> Optional[float]:
        raw = node.get("amount")
        if raw is None:
            reward = node.get("reward")
            if isinstance(reward, dict):
                raw = reward.get("amount")
            elif isinstance(reward, (int, float, str)):
                raw = reward
        if raw is None and isinstance(node.get("bounty"), dict):
            raw = node["bounty"].get("amount")
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable GitPay amount {raw!r}")
            return None

    def _parse_bounty(self, node: Dict[str, Any]) -> Optional[BountyListing]:
        if not isinstance(node, dict):
            return None
        external_id = _first(node, "issueId", "issue_id", "taskId", "id")
        if external_id is None:
            logger.warning("GitPay bounty missing issue id")
            return None
        repo_url = self._repository_url(node)
        if not repo_url:
            logger.warning(f"GitPay bounty {external_id} missing repository URL")
            return None

        issue = node.get("issue") if isinstance(node.get("issue"), dict) else {}
        reward = node.get("reward") if isinstance(node.get("reward"), dict) else {}
        title = _first(node, "title", "name") or issue.get("title") or ""
        description = _first(node, "description", "body") or issue.get("body") or ""
        return BountyListing(
            platform=self.platform_name,
            external_id=str(external_id),
            repository_url=repo_url,
            amount=self._amount(node),
            currency=node.get("currency") or reward.get("currency") or "USD",
            title=title,
            description=description,
            deadline=parse_timestamp(_first(node, "deadline", "deadline_at")),
            vulnerability_ref=find_vulnerability_ref(title, description),
        )

    async def get_payout_status(self, external_id: str) -> PayoutStatus:
        data = await self._get(f"/api/bounties/{external_id}") or {}
        raw = str(_first(data, "status", "state") or "").lower()
        if raw in _PAID_STATES:
            return PayoutStatus(external_id=external_id, state="paid")
        if raw in _REJECTED_STATES:
            return PayoutStatus(external_id=external_id, state="rejected", reason=data.get("reason") or raw)
        return PayoutStatus(external_id=external_id, state="pending")
