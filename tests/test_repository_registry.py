"""
Tests for the Repository Registry and URL parsing.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from backend.core.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from backend.core.hosts import RepositoryInfo
from backend.services.repository_registry import RepositoryRegistry, canonical_url, parse_repository_url


class TestParseRepositoryUrl:
    def test_https_url(self):
        ref = parse_repository_url("https://github.com/acme/widget")
        assert (ref.host, ref.owner, ref.name) == ("github.com", "acme", "widget")

    def test_variants_share_canonical_form(self):
        for url in (
            "https://github.com/Acme/Widget.git",
            "https://github.com/acme/widget/",
            "  https://github.com/acme/widget  ",
        ):
            assert canonical_url(url) == "https://github.com/acme/widget"

    @pytest.mark.parametrize("url", [
        "",
        "not a url",
        "https://github.com/acme",
        "ftp://github.com/acme/widget",
        "http://github.com/acme/widget",
        "git@github.com:acme/widget.git",
    ])
    def test_malformed_urls(self, url):
        with pytest.raises(ValidationError):
            parse_repository_url(url)
        assert canonical_url(url) is None

    def test_rejection_names_expected_form(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_repository_url("git@github.com:acme/widget.git")
        assert "https://<host>/<owner>/<repo>" in str(exc_info.value)


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_uses_host_metadata(self, session_maker, gateway, host):
        host.repos[("acme", "widget")] = RepositoryInfo(default_branch="develop", language="Python")
        registry = RepositoryRegistry(session_maker, gateway, host)

        repo = await registry.register("https://github.com/acme/widget")
        assert repo.url == "https://github.com/acme/widget"
        assert repo.default_branch == "develop"
        assert repo.language == "Python"
        assert repo.active

    @pytest.mark.asyncio
    async def test_second_registration_conflicts(self, session_maker, gateway, host):
        registry = RepositoryRegistry(session_maker, gateway, host)
        first = await registry.register("https://github.com/acme/widget")

        with pytest.raises(ConflictError) as exc_info:
            await registry.register("https://github.com/acme/widget")
        assert exc_info.value.existing_id == first.id
        assert len(await registry.list(active_only=False)) == 1

    @pytest.mark.asyncio
    async def test_alias_url_conflicts(self, session_maker, gateway, host):
        registry = RepositoryRegistry(session_maker, gateway, host)
        await registry.register("https://github.com/acme/widget")
        with pytest.raises(ConflictError):
            await registry.register("https://github.com/ACME/widget.git")

    @pytest.mark.asyncio
    async def test_host_outage_does_not_block_registration(self, session_maker, gateway, host):
        host.get_repository = AsyncMock(side_effect=UpstreamError("host", "down", status=503))
        registry = RepositoryRegistry(session_maker, gateway, host)

        repo = await registry.register("https://github.com/acme/widget", language="py")
        assert repo.language == "Python"
        assert repo.default_branch == "main"

    @pytest.mark.asyncio
    async def test_malformed_url_rejected(self, session_maker, gateway, host):
        registry = RepositoryRegistry(session_maker, gateway, host)
        with pytest.raises(ValidationError):
            await registry.register("widget")
        assert await registry.list() == []


class TestDeregister:
    @pytest.mark.asyncio
    async def test_soft_deregistration_and_reactivation(self, session_maker, gateway, host):
        registry = RepositoryRegistry(session_maker, gateway, host)
        repo = await registry.register("https://github.com/acme/widget")

        await registry.deregister("https://github.com/acme/widget")
        assert await registry.list() == []
        assert len(await registry.list(active_only=False)) == 1

        again = await registry.register("https://github.com/acme/widget")
        assert again.id == repo.id
        assert again.active

    @pytest.mark.asyncio
    async def test_unknown_repository(self, session_maker):
        registry = RepositoryRegistry(session_maker)
        with pytest.raises(NotFoundError):
            await registry.deregister("https://github.com/acme/nothing")

    @pytest.mark.asyncio
    async def test_watched_languages_ignore_inactive(self, session_maker):
        registry = RepositoryRegistry(session_maker)
        await registry.register("https://github.com/acme/widget", language="Python", default_branch="main")
        await registry.register("https://github.com/acme/gadget", language="Java", default_branch="main")
        await registry.deregister("https://github.com/acme/gadget")
        assert await registry.watched_languages() == {"Python"}
