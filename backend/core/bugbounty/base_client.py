"""Shared aiohttp plumbing for bounty platform clients."""

import logging
from typing import Any, Dict, Optional

import aiohttp

from backend.core.errors import RateLimited, UpstreamError

logger = logging.getLogger(__name__)


class BountyApiClient:
    """Authenticated JSON GET with classified failures."""

    platform_name = "bounty"

    def __init__(self, base_url: str, token: Optional[str] = None):
        self.service_key = f"bounty:{self.platform_name}"
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        async with session.get(f"{self.base_url}{path}", params=params) as resp:
            if resp.status == 429:
                raise RateLimited(self.service_key, retry_after=float(resp.headers.get("Retry-After", "30")))
            if resp.status >= 400:
                logger.warning(f"{self.platform_name} API {resp.status} for {path}")
                raise UpstreamError(
                    self.service_key, f"{self.platform_name} GET {path} returned {resp.status}", status=resp.status
                )
            return await resp.json()
