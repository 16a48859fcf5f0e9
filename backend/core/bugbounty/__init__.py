"""
VulnWatch - Bounty platform integration

Platform protocol, Algora, GitPay and Polar clients, and the platform registry.
"""

from backend.core.bugbounty.provider import BountyListing, BountyPlatform, PayoutStatus
from backend.core.bugbounty.algora_client import AlgoraClient
from backend.core.bugbounty.gitpay_client import GitPayClient
from backend.core.bugbounty.polar_client import PolarClient
from backend.core.bugbounty.registry import PlatformRegistry, init_platforms

__all__ = [
    "BountyListing",
    "BountyPlatform",
    "PayoutStatus",
    "AlgoraClient",
    "GitPayClient",
    "PolarClient",
    "PlatformRegistry",
    "init_platforms",
]
