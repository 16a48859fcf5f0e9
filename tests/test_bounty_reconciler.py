"""
Tests for the Bounty Reconciler.

Covers:
  - Listing ingestion: minimum amount, (platform, external id) dedup
  - Platform listings above the maximum amount or for unsupported languages are skipped
  - Linking a submission moves its bounty OPEN -> IN_PROGRESS
  - Concurrent links never hand one bounty to two submissions
  - Merge moves IN_PROGRESS -> CLAIMED, payout CLAIMED -> COMPLETED
  - Several candidates raise MatchAmbiguous and hold for a manual link
  - Platform rejection fails the bounty, passed deadlines expire it
"""

import asyncio
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from conftest import CRITICAL_ENTRY, WIDGET_URL
from backend.config import settings
from backend.core.bugbounty import BountyListing, PayoutStatus
from backend.core.errors import MatchAmbiguous, ValidationError
from backend.models import Bounty, BountyStatus, Finding, FindingStatus, Submission
from backend.services.bounty_reconciler import BountyReconciler
from backend.services.pipeline import Pipeline
from backend.services.repository_registry import RepositoryRegistry


@pytest.fixture
def reconciler(session_maker, gateway, platforms):
    return BountyReconciler(session_maker, gateway, platforms, min_amount=50.0)


@pytest.fixture
async def repository(session_maker):
    return await RepositoryRegistry(session_maker).register(WIDGET_URL, language="Python", default_branch="main")


async def seed_submission(session_maker, repository, sha="c1", status="open", cve=CRITICAL_ENTRY.catalog_id) -> str:
    async with session_maker() as session:
        finding = Finding(
            repository_id=repository.id,
            commit_sha=sha,
            vulnerability_id=cve,
            status=(FindingStatus.PR_MERGED if status == "merged" else FindingStatus.PR_CREATED).value,
        )
        session.add(finding)
        await session.flush()
        submission = Submission(finding_id=finding.id, host_ref=sha, status=status)
        session.add(submission)
        await session.commit()
        return submission.id


def listing(external_id="b-1", amount=100.0, url=WIDGET_URL, **fields) -> BountyListing:
    return BountyListing(platform="algora", external_id=external_id, repository_url=url, amount=amount, **fields)


async def load_bounty(session_maker, bounty_id) -> Bounty:
    async with session_maker() as session:
        return await session.get(Bounty, bounty_id)


async def load_submission(session_maker, submission_id) -> Submission:
    async with session_maker() as session:
        return await session.get(Submission, submission_id)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

class TestListings:
    @pytest.mark.asyncio
    async def test_below_minimum_is_skipped(self, reconciler):
        assert await reconciler.add_listing(listing(amount=49.99)) is None
        assert await reconciler.add_listing(listing(amount=None)) is None

    @pytest.mark.asyncio
    async def test_duplicate_listing_is_skipped(self, reconciler):
        assert await reconciler.add_listing(listing()) is not None
        assert await reconciler.add_listing(listing(amount=500.0)) is None

    @pytest.mark.asyncio
    async def test_listing_resolves_watched_repository(self, reconciler, repository):
        bounty = await reconciler.add_listing(
            listing(url="https://github.com/Acme/Widget.git", vulnerability_ref="cve-2024-0001")
        )
        assert bounty.repository_id == repository.id
        assert bounty.repository_url == WIDGET_URL
        assert bounty.vulnerability_ref == "CVE-2024-0001"
        assert bounty.state == BountyStatus.OPEN

    @pytest.mark.asyncio
    async def test_sync_pulls_from_enabled_platforms(self, reconciler, platform):
        platform.listings = [listing("b-1"), listing("b-2", amount=10.0), listing("b-3")]
        assert await reconciler.sync_platforms() == 2
        assert await reconciler.sync_platforms() == 0


class TestListingTriage:
    @pytest.fixture
    def triaged(self, session_maker, gateway, platforms):
        return BountyReconciler(
            session_maker, gateway, platforms,
            min_amount=50.0, max_amount=200.0, supported_languages=["Java", "ts", "Python"],
        )

    @pytest.mark.asyncio
    async def test_amount_above_maximum_is_skipped(self, triaged):
        assert await triaged.add_listing(listing("b-1", amount=200.01)) is None
        assert await triaged.add_listing(listing("b-2", amount=200.0)) is not None

    @pytest.mark.asyncio
    async def test_unsupported_language_is_skipped(self, session_maker, triaged):
        await RepositoryRegistry(session_maker).register(
            "https://github.com/acme/gadget", language="Go", default_branch="main"
        )
        assert await triaged.add_listing(listing(url="https://github.com/acme/gadget")) is None

    @pytest.mark.asyncio
    async def test_supported_language_and_alias(self, session_maker, triaged, repository):
        await RepositoryRegistry(session_maker).register(
            "https://github.com/acme/gadget", language="TypeScript", default_branch="main"
        )
        assert await triaged.add_listing(listing("b-1")) is not None
        assert await triaged.add_listing(listing("b-2", url="https://github.com/acme/gadget")) is not None

    @pytest.mark.asyncio
    async def test_unknown_language_passes(self, triaged):
        bounty = await triaged.add_listing(listing(url="https://github.com/acme/unwatched"))
        assert bounty is not None
        assert bounty.repository_id is None

    @pytest.mark.asyncio
    async def test_manual_entry_skips_triage(self, session_maker, triaged):
        await RepositoryRegistry(session_maker).register(
            "https://github.com/acme/gadget", language="Go", default_branch="main"
        )
        assert await triaged.add_listing(listing("b-1", amount=500.0), triage=False) is not None
        assert await triaged.add_listing(
            listing("b-2", url="https://github.com/acme/gadget"), triage=False
        ) is not None
        assert await triaged.add_listing(listing("b-3", amount=10.0), triage=False) is None

    @pytest.mark.asyncio
    async def test_sync_applies_triage(self, triaged, platform):
        platform.listings = [listing("b-1"), listing("b-2", amount=950.0)]
        assert await triaged.sync_platforms() == 1

    @pytest.mark.asyncio
    async def test_pipeline_reads_triage_settings(self, session_maker, gateway, host, platforms, monkeypatch):
        monkeypatch.setattr(settings, "MAX_BOUNTY_AMOUNT", 120.0)
        monkeypatch.setattr(settings, "SUPPORTED_LANGUAGES", ["Rust"])
        pipeline = Pipeline(settings, session_maker, host=host, platforms=platforms, gateway=gateway)
        assert pipeline.reconciler.max_amount == 120.0
        assert pipeline.reconciler.supported_languages == {"rust"}
        assert pipeline.reconciler.locks is pipeline.locks


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

class TestLinking:
    @pytest.mark.asyncio
    async def test_link_moves_bounty_in_progress(self, session_maker, reconciler, repository):
        bounty = await reconciler.add_listing(listing())
        submission_id = await seed_submission(session_maker, repository)

        linked = await reconciler.link_submission(submission_id)
        assert linked.id == bounty.id
        assert linked.state == BountyStatus.IN_PROGRESS
        assert linked.started_at is not None
        assert (await load_submission(session_maker, submission_id)).bounty_match == "linked"

    @pytest.mark.asyncio
    async def test_merge_claims_linked_bounty(self, session_maker, reconciler, repository):
        await reconciler.add_listing(listing())
        submission_id = await seed_submission(session_maker, repository)
        await reconciler.link_submission(submission_id)

        claimed = await reconciler.on_submission_merged(submission_id)
        assert claimed.state == BountyStatus.CLAIMED
        assert claimed.claimed_at is not None

    @pytest.mark.asyncio
    async def test_already_merged_submission_claims_on_link(self, session_maker, reconciler, repository):
        await reconciler.add_listing(listing())
        submission_id = await seed_submission(session_maker, repository, status="merged")

        bounty = await reconciler.on_submission_merged(submission_id)
        assert bounty.state == BountyStatus.CLAIMED

    @pytest.mark.asyncio
    async def test_late_bounty_is_picked_up_by_match_pending(self, session_maker, reconciler, repository):
        submission_id = await seed_submission(session_maker, repository)
        assert await reconciler.link_submission(submission_id) is None
        assert (await load_submission(session_maker, submission_id)).bounty_match == "none"

        await reconciler.add_listing(listing())
        assert await reconciler.match_pending() == 1

    @pytest.mark.asyncio
    async def test_closed_submission_is_never_linked(self, session_maker, reconciler, repository):
        bounty = await reconciler.add_listing(listing())
        submission_id = await seed_submission(session_maker, repository, status="closed")

        assert await reconciler.link_submission(submission_id) is None
        assert (await load_bounty(session_maker, bounty.id)).state == BountyStatus.OPEN

    @pytest.mark.asyncio
    async def test_vulnerability_reference_disambiguates(self, session_maker, reconciler, repository):
        await reconciler.add_listing(listing("b-1", vulnerability_ref="CVE-2023-9999"))
        wanted = await reconciler.add_listing(listing("b-2", vulnerability_ref="CVE-2024-0001"))
        submission_id = await seed_submission(session_maker, repository)

        assert (await reconciler.link_submission(submission_id)).id == wanted.id

    @pytest.mark.asyncio
    async def test_bounty_for_other_repository_is_not_a_candidate(self, session_maker, reconciler, repository):
        await reconciler.add_listing(listing(url="https://github.com/acme/gadget"))
        submission_id = await seed_submission(session_maker, repository)
        assert await reconciler.link_submission(submission_id) is None

    @pytest.mark.asyncio
    async def test_concurrent_links_claim_one_bounty(self, session_maker, reconciler, repository):
        bounty = await reconciler.add_listing(listing())
        first = await seed_submission(session_maker, repository, sha="c1")
        second = await seed_submission(session_maker, repository, sha="c2")

        results = await asyncio.gather(reconciler.link_submission(first), reconciler.link_submission(second))
        assert [b.id for b in results if b is not None] == [bounty.id]
        winner, loser = (first, second) if results[0] is not None else (second, first)

        stored = await load_bounty(session_maker, bounty.id)
        assert stored.submission_id == winner
        assert stored.state == BountyStatus.IN_PROGRESS
        assert (await load_submission(session_maker, winner)).bounty_match == "linked"
        assert (await load_submission(session_maker, loser)).bounty_match == "none"
        assert len(reconciler.locks) == 0

        # The losing submission is still eligible for the next bounty
        later = await reconciler.add_listing(listing("b-2"))
        assert await reconciler.match_pending() == 1
        assert (await load_bounty(session_maker, later.id)).submission_id == loser


class TestAmbiguousMatch:
    @pytest.mark.asyncio
    async def test_two_candidates_raise_and_hold(self, session_maker, reconciler, repository):
        first = await reconciler.add_listing(listing("b-1"))
        second = await reconciler.add_listing(listing("b-2"))
        submission_id = await seed_submission(session_maker, repository)

        with pytest.raises(MatchAmbiguous) as exc_info:
            await reconciler.link_submission(submission_id)
        assert set(exc_info.value.candidate_ids) == {first.id, second.id}

        held = await reconciler.ambiguous()
        assert held[0]["submission_id"] == submission_id
        assert set(held[0]["candidate_ids"]) == {first.id, second.id}
        for bounty_id in (first.id, second.id):
            assert (await load_bounty(session_maker, bounty_id)).state == BountyStatus.OPEN

    @pytest.mark.asyncio
    async def test_manual_link_resolves_hold(self, session_maker, reconciler, repository):
        first = await reconciler.add_listing(listing("b-1"))
        second = await reconciler.add_listing(listing("b-2"))
        submission_id = await seed_submission(session_maker, repository)
        with pytest.raises(MatchAmbiguous):
            await reconciler.link_submission(submission_id)

        bounty = await reconciler.link_manually(second.id, submission_id)
        assert bounty.state == BountyStatus.IN_PROGRESS
        assert await reconciler.ambiguous() == []
        assert (await load_bounty(session_maker, first.id)).state == BountyStatus.OPEN
        # Re-delivery of the same link is a no-op
        assert (await reconciler.link_manually(second.id, submission_id)).id == second.id

    @pytest.mark.asyncio
    async def test_manual_link_rejects_taken_bounty(self, session_maker, reconciler, repository):
        bounty = await reconciler.add_listing(listing())
        first = await seed_submission(session_maker, repository, sha="c1")
        other = await seed_submission(session_maker, repository, sha="c2")
        await reconciler.link_submission(first)

        with pytest.raises(ValidationError):
            await reconciler.link_manually(bounty.id, other)


# ---------------------------------------------------------------------------
# Payout and expiry
# ---------------------------------------------------------------------------

class TestPayout:
    async def _claimed(self, session_maker, reconciler, repository):
        bounty = await reconciler.add_listing(listing())
        submission_id = await seed_submission(session_maker, repository, status="merged")
        await reconciler.link_submission(submission_id)
        return bounty

    @pytest.mark.asyncio
    async def test_paid_claim_completes(self, session_maker, reconciler, repository):
        await self._claimed(session_maker, reconciler, repository)
        bounty = await reconciler.apply_payout("algora", PayoutStatus(external_id="b-1", state="paid"))
        assert bounty.state == BountyStatus.COMPLETED
        assert bounty.completed_at is not None

    @pytest.mark.asyncio
    async def test_payout_before_claim_is_ignored(self, session_maker, reconciler, repository):
        await reconciler.add_listing(listing())
        await reconciler.link_submission(await seed_submission(session_maker, repository))
        bounty = await reconciler.apply_payout("algora", PayoutStatus(external_id="b-1", state="paid"))
        assert bounty.state == BountyStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_rejection_fails_bounty(self, session_maker, reconciler, repository):
        await self._claimed(session_maker, reconciler, repository)
        bounty = await reconciler.apply_payout(
            "algora", PayoutStatus(external_id="b-1", state="rejected", reason="duplicate fix")
        )
        assert bounty.state == BountyStatus.FAILED
        assert bounty.failure_reason == "duplicate fix"

        after = await reconciler.apply_payout("algora", PayoutStatus(external_id="b-1", state="paid"))
        assert after.state == BountyStatus.FAILED

    @pytest.mark.asyncio
    async def test_check_payouts_polls_platform(self, session_maker, reconciler, platform, repository):
        await self._claimed(session_maker, reconciler, repository)
        assert await reconciler.check_payouts() == 0
        platform.payouts["b-1"] = PayoutStatus(external_id="b-1", state="paid")
        assert await reconciler.check_payouts() == 1


class TestExpiry:
    @pytest.mark.asyncio
    async def test_overdue_open_bounty_expires(self, session_maker, reconciler):
        now = datetime(2026, 1, 1)
        overdue = await reconciler.add_listing(listing("b-1", deadline=now - timedelta(days=1)))
        current = await reconciler.add_listing(listing("b-2", deadline=now + timedelta(days=1)))

        assert await reconciler.expire_overdue(now) == 1
        assert (await load_bounty(session_maker, overdue.id)).state == BountyStatus.EXPIRED
        assert (await load_bounty(session_maker, current.id)).state == BountyStatus.OPEN

    @pytest.mark.asyncio
    async def test_in_progress_bounty_expires(self, session_maker, reconciler, repository):
        now = datetime.utcnow()
        bounty = await reconciler.add_listing(listing(deadline=now + timedelta(minutes=1)))
        await reconciler.link_submission(await seed_submission(session_maker, repository))

        assert await reconciler.expire_overdue(now + timedelta(days=1)) == 1
        expired = await load_bounty(session_maker, bounty.id)
        assert expired.state == BountyStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_claimed_bounty_does_not_expire(self, session_maker, reconciler, repository):
        now = datetime.utcnow()
        bounty = await reconciler.add_listing(listing(deadline=now + timedelta(minutes=1)))
        await reconciler.link_submission(await seed_submission(session_maker, repository, status="merged"))

        assert await reconciler.expire_overdue(now + timedelta(days=1)) == 0
        assert (await load_bounty(session_maker, bounty.id)).state == BountyStatus.CLAIMED
