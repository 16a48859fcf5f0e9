"""Bounty platform abstraction.

Normalized dataclasses and Protocol interface for platform-agnostic bounty
listings and payout status. New platforms implement BountyPlatform and are
registered in PlatformRegistry; the reconciler does not change.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

CVE_RE = re.compile(r"\bCVE-\d{4}-\d{4,}\b", re.IGNORECASE)


@dataclass
class BountyListing:
    """Normalized open bounty from any platform."""
    platform: str
    external_id: str
    repository_url: str
    amount: Optional[float] = None
    currency: str = "USD"
    title: str = ""
    description: str = ""
    deadline: Optional[datetime] = None
    vulnerability_ref: Optional[str] = None  # e.g. CVE id named by the bounty
    finding_ref: Optional[str] = None

    def meets_minimum(self, minimum: float) -> bool:
        return self.amount is not None and self.amount >= minimum


@dataclass
class PayoutStatus:
    """Platform-side outcome for a bounty we have claimed."""
    external_id: str
    state: str  # pending, paid, rejected
    reason: str = ""

    @property
    def is_paid(self) -> bool:
        return self.state == "paid"

    @property
    def is_rejected(self) -> bool:
        return self.state == "rejected"


def find_vulnerability_ref(*texts: Optional[str]) -> Optional[str]:
    """First CVE id mentioned in any of the texts, upper-cased."""
    for text in texts:
        if not text:
            continue
        match = CVE_RE.search(text)
        if match:
            return match.group(0).upper()
    return None


@runtime_checkable
class BountyPlatform(Protocol):
    """Protocol for bounty platforms.

    Implement this to add a new platform. Register via PlatformRegistry.
    """
    platform_name: str

    @property
    def enabled(self) -> bool:
        """Whether the platform has credentials configured."""
        ...

    async def fetch_bounties(self) -> list[BountyListing]:
        """Currently open bounties."""
        ...

    async def get_payout_status(self, external_id: str) -> PayoutStatus:
        """Payout state of a claimed bounty."""
        ...
