"""
VulnWatch - Repository Registry

Registration, lookup and soft deregistration of monitored repositories.
Only https://<host>/<owner>/<repo> URLs are accepted (an optional .git
suffix or trailing slash is dropped). Owner and name are lower-cased before
storage so one repository can never be registered twice under different
spellings.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.catalog import normalize_language
from backend.core.errors import ConflictError, NotFoundError, ServiceUnavailable, TransientExternal, ValidationError
from backend.core.hosts import RepositoryHost
from backend.core.resilience import HOST, ResilienceGateway
from backend.models import Repository

logger = logging.getLogger(__name__)

_HTTPS_RE = re.compile(
    r"^https://(?P<host>[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+)/(?P<owner>[A-Za-z0-9_.-]+)/(?P<name>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)


@dataclass(frozen=True)
class RepositoryRef:
    host: str
    owner: str
    name: str

    @property
    def url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.name}"


def parse_repository_url(url: Optional[str]) -> RepositoryRef:
    """Parse and canonicalize a repository URL. Raises ValidationError."""
    if not url or not url.strip():
        raise ValidationError("Repository URL is required")
    cleaned = url.strip()
    match = _HTTPS_RE.match(cleaned)
    if not match:
        raise ValidationError(
            f"Invalid repository URL {cleaned!r}. Expected format: https://<host>/<owner>/<repo> "
            "(http and git@ forms are not accepted)"
        )
    owner, name = match.group("owner"), match.group("name")
    if owner in (".", "..") or name in (".", ".."):
        raise ValidationError(f"Invalid repository URL {cleaned!r}")
    # Hosts treat owner/repo case-insensitively
    return RepositoryRef(host=match.group("host").lower(), owner=owner.lower(), name=name.lower())


def canonical_url(url: Optional[str]) -> Optional[str]:
    """Canonical form of a URL, or None when it cannot be parsed."""
    try:
        return parse_repository_url(url).url
    except ValidationError:
        return None


class RepositoryRegistry:
    """Tracks which repositories are monitored."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        gateway: Optional[ResilienceGateway] = None,
        host: Optional[RepositoryHost] = None,
    ):
        self.session_maker = session_maker
        self.gateway = gateway
        self.host = host

    async def _lookup_metadata(self, ref: RepositoryRef):
        """Default branch and language from the host; None when the host is unreachable."""
        if not self.gateway or not self.host:
            return None
        try:
            return await self.gateway.invoke(HOST, lambda: self.host.get_repository(ref.owner, ref.name))
        except (ServiceUnavailable, TransientExternal) as e:
            logger.warning(f"Could not look up {ref.url} on host, registering without metadata: {e}")
            return None

    async def register(
        self,
        url: str,
        language: Optional[str] = None,
        default_branch: Optional[str] = None,
    ) -> Repository:
        """Register a repository. Raises ValidationError or ConflictError."""
        ref = parse_repository_url(url)

        async with self.session_maker() as session:
            existing = await self._by_url(session, ref.url)
            if existing is not None:
                if existing.active:
                    raise ConflictError(f"Repository already registered: {ref.url}", existing_id=existing.id)
                existing.active = True
                await session.commit()
                logger.info(f"Reactivated repository {ref.url} ({existing.id})")
                return existing

        info = None
        if language is None or default_branch is None:
            info = await self._lookup_metadata(ref)

        repository = Repository(
            url=ref.url,
            host=ref.host,
            owner=ref.owner,
            name=ref.name,
            language=normalize_language(language) or language or (info.language if info else None),
            default_branch=default_branch or (info.default_branch if info else "main"),
            active=True,
        )
        async with self.session_maker() as session:
            session.add(repository)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._by_url(session, ref.url)
                raise ConflictError(
                    f"Repository already registered: {ref.url}",
                    existing_id=existing.id if existing else None,
                )
        logger.info(f"Registered repository {ref.url} ({repository.id}, language={repository.language})")
        return repository

    async def deregister(self, url: str) -> Repository:
        """Soft-deregister: ingestion stops, findings and history stay."""
        ref = parse_repository_url(url)
        async with self.session_maker() as session:
            repository = await self._by_url(session, ref.url)
            if repository is None:
                raise NotFoundError(f"Repository not registered: {ref.url}")
            if repository.active:
                repository.active = False
                await session.commit()
                logger.info(f"Deregistered repository {ref.url}")
            return repository

    async def get(self, repository_id: str) -> Optional[Repository]:
        async with self.session_maker() as session:
            return await session.get(Repository, repository_id)

    async def get_by_url(self, url: str) -> Optional[Repository]:
        ref = parse_repository_url(url)
        async with self.session_maker() as session:
            return await self._by_url(session, ref.url)

    async def list(self, active_only: bool = True) -> List[Repository]:
        async with self.session_maker() as session:
            query = select(Repository).order_by(Repository.created_at)
            if active_only:
                query = query.where(Repository.active.is_(True))
            result = await session.execute(query)
            return list(result.scalars().all())

    async def watched_languages(self) -> Set[str]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Repository.language).where(Repository.active.is_(True)).distinct()
            )
            return {lang for lang in result.scalars().all() if lang}

    @staticmethod
    async def _by_url(session: AsyncSession, url: str) -> Optional[Repository]:
        result = await session.execute(select(Repository).where(Repository.url == url))
        return result.scalar_one_or_none()
