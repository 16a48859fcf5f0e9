"""Platform registry for bounty platforms.

New platforms just add a line in init_platforms().
"""

import logging
from typing import Optional

from backend.core.bugbounty.provider import BountyPlatform

logger = logging.getLogger(__name__)


class PlatformRegistry:
    """Registry of bounty platform clients."""

    def __init__(self):
        self._providers: dict[str, BountyPlatform] = {}

    def register(self, name: str, provider: BountyPlatform) -> None:
        """Register a platform by name."""
        self._providers[name] = provider
        logger.info(f"Registered bounty platform: {name}")

    def get(self, name: str) -> Optional[BountyPlatform]:
        """Get a platform by name, or None."""
        return self._providers.get(name)

    def list_platforms(self) -> list[str]:
        return list(self._providers.keys())

    def get_enabled(self) -> dict[str, BountyPlatform]:
        """Return only platforms with credentials configured."""
        return {name: p for name, p in self._providers.items() if p.enabled}

    async def close(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if close:
                await close()


# Module-level singleton
_registry = PlatformRegistry()


def init_platforms(settings) -> PlatformRegistry:
    """Register all platform clients. Called once at application startup."""
    from backend.core.bugbounty.algora_client import AlgoraClient
    from backend.core.bugbounty.gitpay_client import GitPayClient
    from backend.core.bugbounty.polar_client import PolarClient

    _registry.register("algora", AlgoraClient(settings.ALGORA_API_URL, settings.ALGORA_API_KEY))
    _registry.register("polar", PolarClient(settings.POLAR_API_URL, settings.POLAR_API_TOKEN))
    _registry.register("gitpay", GitPayClient(settings.GITPAY_API_URL, settings.GITPAY_API_KEY))
    logger.info(f"Bounty platforms initialized: {_registry.list_platforms()}")
    return _registry
