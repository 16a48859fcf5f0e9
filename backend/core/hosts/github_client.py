"""
GitHub REST client: commits, file contents and pull requests.

Each public coroutine is a single logical operation meant to be wrapped in
ResilienceGateway.invoke(). HTTP failures are raised as classified errors
(RateLimited on 429 / exhausted quota, UpstreamError otherwise) instead of
being swallowed, so the gateway can account for them.
"""

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import aiohttp

from backend.core.errors import RateLimited, UpstreamError
from backend.core.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

SERVICE_KEY = "host"


@dataclass
class CommitSummary:
    sha: str
    committed_at: Optional[datetime]
    message: str = ""


@dataclass
class ChangedFile:
    path: str
    status: str = "modified"  # added, modified, removed, renamed
    patch: str = ""


@dataclass
class CommitDetail:
    sha: str
    committed_at: Optional[datetime]
    message: str = ""
    author: str = ""
    files: List[ChangedFile] = field(default_factory=list)

    @property
    def diff(self) -> str:
        """Unified diff of the whole commit, file headers included."""
        chunks = []
        for f in self.files:
            if not f.patch:
                continue
            chunks.append(f"--- a/{f.path}\n+++ b/{f.path}\n{f.patch}")
        return "\n".join(chunks)


@dataclass
class RepositoryInfo:
    default_branch: str
    language: Optional[str] = None


@dataclass
class PullRequestRef:
    number: str
    url: str
    branch: str


@dataclass
class PullRequestState:
    number: str
    state: str  # open, closed
    merged: bool = False
    merged_at: Optional[datetime] = None


@runtime_checkable
class RepositoryHost(Protocol):
    """What the pipeline needs from a source host."""

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        ...

    async def list_commits(
        self, owner: str, name: str, branch: str, since: Optional[datetime] = None, page: int = 1
    ) -> List[CommitSummary]:
        """One page of commits on a branch, newest first."""
        ...

    async def get_commit(self, owner: str, name: str, sha: str) -> CommitDetail:
        ...

    async def get_file(self, owner: str, name: str, path: str, ref: str) -> Optional[str]:
        """File content at a ref, or None if the file does not exist there."""
        ...

    async def open_pull_request(
        self,
        owner: str,
        name: str,
        base: str,
        branch: str,
        title: str,
        body: str,
        files: Dict[str, str],
    ) -> PullRequestRef:
        ...

    async def get_pull_request(self, owner: str, name: str, number: str) -> PullRequestState:
        ...


class GitHubClient:
    """GitHub REST API v3 client."""

    def __init__(self, api_url: str = "https://api.github.com", token: Optional[str] = None, per_page: int = 30):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.per_page = per_page
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "VulnWatch",
        }
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

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        session = await self._get_session()
        async with session.request(method, f"{self.api_url}{path}", params=params, json=json) as resp:
            if resp.status == 404 and allow_404:
                return None
            if resp.status == 429 or (resp.status == 403 and resp.headers.get("X-RateLimit-Remaining") == "0"):
                retry_after = float(resp.headers.get("Retry-After", "60"))
                raise RateLimited(SERVICE_KEY, retry_after=retry_after)
            if resp.status >= 400:
                text = await resp.text()
                logger.debug(f"GitHub {method} {path} -> {resp.status}: {text[:200]}")
                raise UpstreamError(SERVICE_KEY, f"GitHub {method} {path} returned {resp.status}", status=resp.status)
            if resp.status == 204:
                return None
            return await resp.json()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        data = await self._request("GET", f"/repos/{owner}/{name}")
        return RepositoryInfo(
            default_branch=data.get("default_branch") or "main",
            language=data.get("language"),
        )

    async def list_commits(
        self, owner: str, name: str, branch: str, since: Optional[datetime] = None, page: int = 1
    ) -> List[CommitSummary]:
        params: Dict[str, Any] = {"sha": branch, "per_page": self.per_page, "page": page}
        if since:
            params["since"] = since.strftime("%Y-%m-%dT%H:%M:%SZ")
        data = await self._request("GET", f"/repos/{owner}/{name}/commits", params=params)
        commits = []
        for item in data or []:
            commit = item.get("commit", {})
            commits.append(CommitSummary(
                sha=item.get("sha", ""),
                committed_at=parse_timestamp((commit.get("committer") or {}).get("date")),
                message=commit.get("message", ""),
            ))
        return commits

    async def get_commit(self, owner: str, name: str, sha: str) -> CommitDetail:
        data = await self._request("GET", f"/repos/{owner}/{name}/commits/{sha}")
        commit = data.get("commit", {})
        return CommitDetail(
            sha=data.get("sha", sha),
            committed_at=parse_timestamp((commit.get("committer") or {}).get("date")),
            message=commit.get("message", ""),
            author=(commit.get("author") or {}).get("name", ""),
            files=[
                ChangedFile(
                    path=f.get("filename", ""),
                    status=f.get("status", "modified"),
                    patch=f.get("patch", ""),
                )
                for f in data.get("files", [])
            ],
        )

    async def get_file(self, owner: str, name: str, path: str, ref: str) -> Optional[str]:
        data = await self._request(
            "GET", f"/repos/{owner}/{name}/contents/{path}", params={"ref": ref}, allow_404=True
        )
        if not data or data.get("encoding") != "base64":
            return None
        return base64.b64decode(data.get("content", "")).decode("utf-8", errors="replace")

    async def get_pull_request(self, owner: str, name: str, number: str) -> PullRequestState:
        data = await self._request("GET", f"/repos/{owner}/{name}/pulls/{number}")
        return PullRequestState(
            number=str(data.get("number", number)),
            state=data.get("state", "open"),
            merged=bool(data.get("merged")),
            merged_at=parse_timestamp(data.get("merged_at")),
        )

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def open_pull_request(
        self,
        owner: str,
        name: str,
        base: str,
        branch: str,
        title: str,
        body: str,
        files: Dict[str, str],
    ) -> PullRequestRef:
        """Create branch, commit patched files, open the PR.

        Safe to repeat: an existing branch or PR for the same head is reused.
        """
        repo = f"/repos/{owner}/{name}"

        base_ref = await self._request("GET", f"{repo}/git/ref/heads/{base}")
        base_sha = base_ref["object"]["sha"]
        try:
            await self._request("POST", f"{repo}/git/refs", json={"ref": f"refs/heads/{branch}", "sha": base_sha})
        except UpstreamError as e:
            if e.status != 422:
                raise
            logger.debug(f"Branch {branch} already exists on {owner}/{name}")

        for path, content in files.items():
            existing = await self._request("GET", f"{repo}/contents/{path}", params={"ref": branch}, allow_404=True)
            payload: Dict[str, Any] = {
                "message": title,
                "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                "branch": branch,
            }
            if existing and existing.get("sha"):
                payload["sha"] = existing["sha"]
            await self._request("PUT", f"{repo}/contents/{path}", json=payload)

        try:
            data = await self._request(
                "POST", f"{repo}/pulls", json={"title": title, "head": branch, "base": base, "body": body}
            )
        except UpstreamError as e:
            if e.status != 422:
                raise
            existing_prs = await self._request(
                "GET", f"{repo}/pulls", params={"head": f"{owner}:{branch}", "state": "all"}
            )
            if not existing_prs:
                raise
            data = existing_prs[0]

        return PullRequestRef(number=str(data["number"]), url=data.get("html_url", ""), branch=branch)
