"""Tests for the MentorVerificationOrchestrator.

Covers the initiate gate, challenge validation, the concurrent
verifier fan-out with failure degradation, scoring and status
transitions, the status policy, and the exactly-once promotion.
"""

from __future__ import annotations

import asyncio
import gc
import re
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.models.profile import MentorDetails, PendingProfileData
from src.models.verification import (
    MinimumRequirements,
    OwnershipChannel,
    OwnershipProofResult,
    ProfileSignals,
    VerificationStatus,
)
from src.services.verification.challenge_store import InMemoryChallengeStore
from src.services.verification.documents import EXTRACTION_FAILED, DocumentVerifier
from src.services.verification.exceptions import (
    AlreadyVerifiedError,
    ChallengeNotFoundError,
    HandleMismatchError,
    PersistenceError,
)
from src.services.verification.identity import IdentityVerifier, _MockProvider
from src.services.verification.ocr import OCRResult
from src.services.verification.orchestrator import MentorVerificationOrchestrator
from src.services.verification.profile_store import InMemoryProfileStore
from src.services.verification.records import InMemoryRecordStore

SUBJECT = "user-1"
HANDLE = "octocat"

# 400 days, 6 repos, 120 contributions, 3 followers -> quality score 57
SIGNALS = ProfileSignals(
    account_age_days=400,
    public_repo_count=6,
    contribution_count=120,
    follower_count=3,
)

VALID_DEGREE = b"University of Leeds - Bachelor of Science degree awarded 2012"
INVALID_DOC = b"shopping list"


def _proof(*, bio: bool = False, repo_file: bool = False, gist: bool = False) -> OwnershipProofResult:
    return OwnershipProofResult.from_channels(bio=bio, repo_file=repo_file, gist=gist)


class FakeOCR:
    async def extract_text(self, document: bytes) -> OCRResult:
        return OCRResult(text=document.decode(), confidence=0.9)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def challenges() -> InMemoryChallengeStore:
    return InMemoryChallengeStore()


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def profiles() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def ownership() -> AsyncMock:
    verifier = AsyncMock()
    verifier.verify.return_value = _proof(gist=True)
    return verifier


@pytest.fixture
def signals() -> AsyncMock:
    fetcher = AsyncMock()
    fetcher.fetch.return_value = SIGNALS
    return fetcher


@pytest.fixture
def make_orchestrator(challenges, records, profiles, ownership, signals):
    def _make(**overrides) -> MentorVerificationOrchestrator:
        kwargs = {
            "challenges": challenges,
            "records": records,
            "ownership": ownership,
            "signals": signals,
            "profiles": profiles,
            "documents": DocumentVerifier(FakeOCR()),
            "identity": IdentityVerifier(_MockProvider()),
            "verifier_timeout": 2.0,
        }
        kwargs.update(overrides)
        return MentorVerificationOrchestrator(**kwargs)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> MentorVerificationOrchestrator:
    return make_orchestrator()


# ---------------------------------------------------------------------------
# Initiate
# ---------------------------------------------------------------------------


class TestInitiate:
    async def test_issues_code_when_requirements_pass(
        self, orchestrator: MentorVerificationOrchestrator, challenges: InMemoryChallengeStore
    ) -> None:
        result = await orchestrator.initiate(SUBJECT, HANDLE)

        assert result.requirements_passed is True
        assert re.fullmatch(r"[0-9a-f]{8}", result.code)
        assert "verification-repo" in result.instructions
        assert result.code in result.instructions
        assert result.failing_requirements == []
        session = await challenges.get(SUBJECT)
        assert session.code == result.code
        assert session.claimed_handle == HANDLE

    async def test_gate_failure_issues_nothing(
        self,
        make_orchestrator,
        challenges: InMemoryChallengeStore,
        records: InMemoryRecordStore,
    ) -> None:
        orchestrator = make_orchestrator(requirements=MinimumRequirements(min_repos=10, min_followers=5))

        result = await orchestrator.initiate(SUBJECT, HANDLE)

        assert result.requirements_passed is False
        assert result.code is None
        assert [f.requirement for f in result.failing_requirements] == ["Public Repositories", "Followers"]
        assert await challenges.get(SUBJECT) is None
        assert await records.get(SUBJECT) is None

    async def test_unreachable_profile_fails_gate(
        self, orchestrator: MentorVerificationOrchestrator, signals: AsyncMock
    ) -> None:
        signals.fetch.side_effect = RuntimeError("github down")

        result = await orchestrator.initiate(SUBJECT, HANDLE)

        assert result.requirements_passed is False
        assert result.failing_requirements[0].requirement == "GitHub Profile"


# ---------------------------------------------------------------------------
# Challenge validation
# ---------------------------------------------------------------------------


class TestChallengeValidation:
    async def test_complete_without_session(self, orchestrator: MentorVerificationOrchestrator) -> None:
        with pytest.raises(ChallengeNotFoundError, match="code expired or not found"):
            await orchestrator.complete(SUBJECT, HANDLE)

    async def test_expired_session_fails_regardless_of_proof(
        self,
        orchestrator: MentorVerificationOrchestrator,
        challenges: InMemoryChallengeStore,
        ownership: AsyncMock,
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        session = await challenges.get(SUBJECT)
        challenges._sessions[SUBJECT] = session.model_copy(
            update={"expires_at": datetime.now(UTC) - timedelta(seconds=1)}
        )

        with pytest.raises(ChallengeNotFoundError):
            await orchestrator.complete(SUBJECT, HANDLE)
        ownership.verify.assert_not_awaited()

    async def test_handle_mismatch(self, orchestrator: MentorVerificationOrchestrator) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        with pytest.raises(HandleMismatchError, match="handle does not match session"):
            await orchestrator.complete(SUBJECT, "someone-else")

    async def test_handle_comparison_ignores_case(self, orchestrator: MentorVerificationOrchestrator) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        result = await orchestrator.complete(SUBJECT, "OctoCat")
        assert result.verified is True

    async def test_reissue_invalidates_first_code(
        self, orchestrator: MentorVerificationOrchestrator, ownership: AsyncMock
    ) -> None:
        first = await orchestrator.initiate(SUBJECT, HANDLE)
        second = await orchestrator.initiate(SUBJECT, HANDLE)

        # Only the first code is published anywhere.
        async def verify(handle: str, code: str) -> OwnershipProofResult:
            return _proof(gist=code == first.code)

        ownership.verify.side_effect = verify

        result = await orchestrator.complete(SUBJECT, HANDLE)

        assert result.verified is False
        ownership.verify.assert_awaited_once_with(HANDLE, second.code)

    async def test_reissue_with_new_handle_rejects_old_handle(
        self, orchestrator: MentorVerificationOrchestrator
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        await orchestrator.initiate(SUBJECT, "hubot")
        with pytest.raises(HandleMismatchError):
            await orchestrator.complete(SUBJECT, HANDLE)

    async def test_session_consumed_on_success(self, orchestrator: MentorVerificationOrchestrator) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        await orchestrator.complete(SUBJECT, HANDLE)
        with pytest.raises(ChallengeNotFoundError):
            await orchestrator.complete(SUBJECT, HANDLE)

    async def test_unproven_attempt_keeps_session_and_records_zero_github(
        self,
        orchestrator: MentorVerificationOrchestrator,
        ownership: AsyncMock,
        records: InMemoryRecordStore,
        challenges: InMemoryChallengeStore,
    ) -> None:
        ownership.verify.return_value = _proof()
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(SUBJECT, HANDLE)

        assert result.verified is False
        assert result.requirements_met is False
        assert result.details["ownership"]["channels_checked"] == {
            "bio": False,
            "repo_file": False,
            "gist": False,
        }
        assert result.score == 0
        assert result.status == VerificationStatus.PENDING
        record = await records.get(SUBJECT)
        assert record.github_verified is False
        assert record.github_data.proof.verified is False
        assert record.overall_score == 0
        assert await challenges.get(SUBJECT) is not None

    async def test_unproven_attempt_keeps_document_and_identity_verdicts(
        self,
        orchestrator: MentorVerificationOrchestrator,
        ownership: AsyncMock,
        records: InMemoryRecordStore,
        challenges: InMemoryChallengeStore,
    ) -> None:
        ownership.verify.return_value = _proof()
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(
            SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")], email="ada@example.com"
        )

        assert result.verified is False
        # documents 40 + identity 20
        assert result.score == 60
        assert result.status == VerificationStatus.IN_REVIEW
        record = await records.get(SUBJECT)
        assert record.documents_verified is True
        assert record.identity_verified is True
        assert record.github_verified is False
        assert await challenges.get(SUBJECT) is not None

        # Retry with the same session once the code is published.
        ownership.verify.return_value = _proof(bio=True)
        retry = await orchestrator.complete(SUBJECT, HANDLE)

        # github 22.8 + documents 40 + identity 20
        assert retry.score == 83
        assert retry.status == VerificationStatus.VERIFIED

    async def test_unproven_retry_keeps_earlier_github_proof(
        self,
        make_orchestrator,
        ownership: AsyncMock,
        records: InMemoryRecordStore,
    ) -> None:
        orchestrator = make_orchestrator(status_policy="reevaluate")
        await orchestrator.initiate(SUBJECT, HANDLE)
        await orchestrator.complete(SUBJECT, HANDLE)

        ownership.verify.return_value = _proof()
        await orchestrator.initiate(SUBJECT, HANDLE)
        result = await orchestrator.complete(SUBJECT, HANDLE, email="ada@example.com")

        assert result.verified is False
        assert result.score == 43
        record = await records.get(SUBJECT)
        assert record.github_verified is True
        assert record.github_data.proof.verified is True


# ---------------------------------------------------------------------------
# End-to-end scoring
# ---------------------------------------------------------------------------


class TestEndToEnd:
    async def test_documents_without_identity_is_in_review(
        self,
        orchestrator: MentorVerificationOrchestrator,
        profiles: InMemoryProfileStore,
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")])

        assert result.verified is True
        assert result.requirements_met is True
        assert result.details["github_score"] == 57
        assert result.score == 63
        assert result.status == VerificationStatus.IN_REVIEW
        assert profiles.promotions == []

        status = await orchestrator.get_status(SUBJECT)
        assert status.github_verified is True
        assert status.documents_verified is True
        assert status.identity_verified is False
        assert status.overall_status == VerificationStatus.IN_REVIEW
        assert status.score == 63

    async def test_identity_completes_verification_and_promotes_once(
        self,
        orchestrator: MentorVerificationOrchestrator,
        profiles: InMemoryProfileStore,
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        await orchestrator.complete(SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")])

        verdict = await orchestrator.verify_identity(SUBJECT, email="ada@example.com")

        assert verdict.verified is True
        status = await orchestrator.get_status(SUBJECT)
        assert status.score == 83
        assert status.overall_status == VerificationStatus.VERIFIED
        assert profiles.promotions == [SUBJECT]
        assert profiles.is_mentor(SUBJECT)
        assert profiles.profiles[SUBJECT].available_for_mentorship is True

    async def test_single_complete_with_every_signal(
        self,
        orchestrator: MentorVerificationOrchestrator,
        profiles: InMemoryProfileStore,
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(
            SUBJECT,
            HANDLE,
            documents=[(INVALID_DOC, "certificate"), (VALID_DEGREE, "degree")],
            phone="+44 20 7946 0958",
        )

        assert result.score == 83
        assert result.status == VerificationStatus.VERIFIED
        assert result.details["documents"]["verified"] is True
        assert len(result.details["documents"]["results"]) == 2
        assert result.details["identity"]["channels"] == {"phone": True}
        assert profiles.promotions == [SUBJECT]

    async def test_github_only_is_pending(self, orchestrator: MentorVerificationOrchestrator) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        result = await orchestrator.complete(SUBJECT, HANDLE)

        # 57 * 0.4 = 22.8
        assert result.score == 23
        assert result.status == VerificationStatus.PENDING

    async def test_documents_before_github(
        self, orchestrator: MentorVerificationOrchestrator, records: InMemoryRecordStore
    ) -> None:
        batch = await orchestrator.submit_documents(SUBJECT, [(VALID_DEGREE, "degree")])

        assert batch.verified is True
        record = await records.get(SUBJECT)
        assert record.overall_score == 40
        assert record.status == VerificationStatus.PENDING
        assert record.github_verified is False

        await orchestrator.initiate(SUBJECT, HANDLE)
        result = await orchestrator.complete(SUBJECT, HANDLE)

        # Earlier document verdict is reused.
        assert result.score == 63

    async def test_record_keeps_channel_details(
        self, orchestrator: MentorVerificationOrchestrator
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        await orchestrator.complete(SUBJECT, HANDLE)

        record = await orchestrator.get_record(SUBJECT)

        assert record.github_username == HANDLE
        assert record.github_data.proof.channels_checked == {
            OwnershipChannel.BIO: False,
            OwnershipChannel.REPO_FILE: False,
            OwnershipChannel.GIST: True,
        }
        assert record.github_data.signals == SIGNALS
        assert record.verification_date is not None
        assert record.version == 1

    async def test_status_defaults_without_record(self, orchestrator: MentorVerificationOrchestrator) -> None:
        status = await orchestrator.get_status("unknown")
        assert status.overall_status == VerificationStatus.PENDING
        assert status.score == 0
        assert status.github_verified is False
        assert await orchestrator.get_record("unknown") is None


# ---------------------------------------------------------------------------
# Requirements drift and pending profiles
# ---------------------------------------------------------------------------


class TestRequirementsAfterProof:
    async def test_drift_after_proof_records_zero_github(
        self,
        make_orchestrator,
        signals: AsyncMock,
        records: InMemoryRecordStore,
        challenges: InMemoryChallengeStore,
    ) -> None:
        orchestrator = make_orchestrator(requirements=MinimumRequirements(min_repos=3))
        dropped = SIGNALS.model_copy(update={"public_repo_count": 1})
        signals.fetch.side_effect = [SIGNALS, dropped]

        await orchestrator.initiate(SUBJECT, HANDLE)
        result = await orchestrator.complete(SUBJECT, HANDLE)

        assert result.verified is True
        assert result.requirements_met is False
        assert result.score == 0
        assert result.failing_requirements[0].requirement == "Public Repositories"
        record = await records.get(SUBJECT)
        assert record.github_verified is False
        assert record.github_data.signals.public_repo_count == 1
        assert await challenges.get(SUBJECT) is None

    async def test_pending_profile_is_normalised_and_stored(
        self, orchestrator: MentorVerificationOrchestrator, profiles: InMemoryProfileStore
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)
        pending = PendingProfileData(
            name="Ada",
            skills="python, sql",
            mentor_details=MentorDetails(expertise="data", years_of_experience="7"),
        )

        await orchestrator.complete(SUBJECT, HANDLE, pending_profile_data=pending)

        profile = profiles.profiles[SUBJECT]
        assert profile.type == "mentor"
        assert profile.skills == ["python", "sql"]
        assert profile.years_of_experience == 7
        assert profile.available_for_mentorship is True

    async def test_pending_profile_ignored_when_unproven(
        self,
        orchestrator: MentorVerificationOrchestrator,
        ownership: AsyncMock,
        profiles: InMemoryProfileStore,
    ) -> None:
        ownership.verify.return_value = _proof()
        await orchestrator.initiate(SUBJECT, HANDLE)

        await orchestrator.complete(SUBJECT, HANDLE, pending_profile_data=PendingProfileData(name="Ada"))

        assert profiles.profiles == {}


# ---------------------------------------------------------------------------
# Failure degradation
# ---------------------------------------------------------------------------


class TestFailureDegradation:
    async def test_document_verifier_crash_degrades(
        self, make_orchestrator, records: InMemoryRecordStore
    ) -> None:
        broken = AsyncMock()
        broken.validate_multiple.side_effect = RuntimeError("ocr crashed")
        orchestrator = make_orchestrator(documents=broken)
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(
            SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")], email="ada@example.com"
        )

        # github 22.8 + identity 20
        assert result.score == 43
        assert result.details["documents"]["results"][0]["failure_reasons"] == [EXTRACTION_FAILED]
        record = await records.get(SUBJECT)
        assert record.documents_verified is False
        assert record.identity_verified is True

    async def test_slow_identity_times_out(self, make_orchestrator) -> None:
        slow = AsyncMock()

        async def never_answers(email=None, phone=None):
            await asyncio.sleep(5)

        slow.verify.side_effect = never_answers
        orchestrator = make_orchestrator(identity=slow, verifier_timeout=0.05)
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(
            SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")], email="ada@example.com"
        )

        assert result.score == 63
        assert result.details["identity"]["verified"] is False

    async def test_ownership_crash_is_unproven(
        self, orchestrator: MentorVerificationOrchestrator, ownership: AsyncMock
    ) -> None:
        ownership.verify.side_effect = RuntimeError("boom")
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(SUBJECT, HANDLE)

        assert result.verified is False

    async def test_signals_failure_after_proof_keeps_session(
        self,
        orchestrator: MentorVerificationOrchestrator,
        signals: AsyncMock,
        records: InMemoryRecordStore,
        challenges: InMemoryChallengeStore,
    ) -> None:
        signals.fetch.side_effect = [SIGNALS, RuntimeError("github down"), SIGNALS]
        await orchestrator.initiate(SUBJECT, HANDLE)

        result = await orchestrator.complete(SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")])

        assert result.verified is True
        assert result.requirements_met is False
        assert result.failing_requirements[0].requirement == "GitHub Profile"
        assert result.score == 40
        record = await records.get(SUBJECT)
        assert record.github_verified is False
        assert record.documents_verified is True
        assert await challenges.get(SUBJECT) is not None

        # The same code still completes once GitHub answers again.
        retry = await orchestrator.complete(SUBJECT, HANDLE)

        assert retry.requirements_met is True
        assert retry.score == 63
        assert await challenges.get(SUBJECT) is None

    async def test_slow_signals_do_not_discard_proof(
        self, make_orchestrator, signals: AsyncMock, ownership: AsyncMock
    ) -> None:
        async def stalls(handle: str) -> ProfileSignals:
            await asyncio.sleep(5)
            return SIGNALS

        orchestrator = make_orchestrator(verifier_timeout=0.05)
        await orchestrator.initiate(SUBJECT, HANDLE)
        signals.fetch.side_effect = stalls

        result = await orchestrator.complete(SUBJECT, HANDLE)

        assert result.verified is True
        assert result.details["ownership"]["channels_checked"]["gist"] is True
        assert result.details["signals"] is None

    async def test_no_ocr_engine_configured(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator(documents=None)
        batch = await orchestrator.submit_documents(SUBJECT, [(VALID_DEGREE, "degree")])
        assert batch.verified is False
        assert batch.results[0].failure_reasons == [EXTRACTION_FAILED]

    async def test_persistence_failure_propagates(self, make_orchestrator) -> None:
        failing = AsyncMock()
        failing.get.return_value = None
        failing.upsert.side_effect = PersistenceError("redis unavailable")
        orchestrator = make_orchestrator(records=failing)
        await orchestrator.initiate(SUBJECT, HANDLE)

        with pytest.raises(PersistenceError):
            await orchestrator.complete(SUBJECT, HANDLE)


# ---------------------------------------------------------------------------
# Status policy and concurrency
# ---------------------------------------------------------------------------


async def _reach_verified(orchestrator: MentorVerificationOrchestrator) -> None:
    await orchestrator.initiate(SUBJECT, HANDLE)
    await orchestrator.complete(
        SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")], email="ada@example.com"
    )


class TestStatusPolicy:
    async def test_monotonic_freezes_verified_record(
        self, orchestrator: MentorVerificationOrchestrator, profiles: InMemoryProfileStore
    ) -> None:
        await _reach_verified(orchestrator)

        with pytest.raises(AlreadyVerifiedError, match="Profile already verified"):
            await orchestrator.initiate(SUBJECT, HANDLE)
        with pytest.raises(AlreadyVerifiedError):
            await orchestrator.submit_documents(SUBJECT, [(INVALID_DOC, "degree")])
        with pytest.raises(AlreadyVerifiedError):
            await orchestrator.verify_identity(SUBJECT, email="ada@example.com")

        assert (await orchestrator.get_status(SUBJECT)).overall_status == VerificationStatus.VERIFIED
        assert profiles.promotions == [SUBJECT]

    async def test_reevaluate_allows_regression(
        self, make_orchestrator, profiles: InMemoryProfileStore
    ) -> None:
        orchestrator = make_orchestrator(status_policy="reevaluate")
        await _reach_verified(orchestrator)

        batch = await orchestrator.submit_documents(SUBJECT, [(INVALID_DOC, "degree")])

        assert batch.verified is False
        status = await orchestrator.get_status(SUBJECT)
        assert status.score == 43
        assert status.overall_status == VerificationStatus.PENDING
        # The role flag is never revoked here.
        assert profiles.promotions == [SUBJECT]

    async def test_reevaluate_rescore_stays_verified_without_second_promotion(
        self, make_orchestrator, profiles: InMemoryProfileStore
    ) -> None:
        orchestrator = make_orchestrator(status_policy="reevaluate")
        await _reach_verified(orchestrator)

        await orchestrator.verify_identity(SUBJECT, phone="+15550109999")

        assert (await orchestrator.get_status(SUBJECT)).overall_status == VerificationStatus.VERIFIED
        assert profiles.promotions == [SUBJECT]


class FlakyProfileStore(InMemoryProfileStore):
    """Rejects the first ``failures`` promotions."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def promote_to_mentor(self, subject_id: str) -> None:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("profile store unavailable")
        await super().promote_to_mentor(subject_id)


class TestPromotionRecovery:
    async def test_failed_promotion_raises_and_leaves_marker_unset(
        self, make_orchestrator, records: InMemoryRecordStore
    ) -> None:
        profiles = FlakyProfileStore()
        orchestrator = make_orchestrator(profiles=profiles)

        with pytest.raises(PersistenceError, match="mentor promotion failed"):
            await _reach_verified(orchestrator)

        record = await records.get(SUBJECT)
        assert record.status == VerificationStatus.VERIFIED
        assert record.promoted is False
        assert profiles.promotions == []

    async def test_next_touch_resumes_promotion(
        self, make_orchestrator, records: InMemoryRecordStore
    ) -> None:
        profiles = FlakyProfileStore()
        orchestrator = make_orchestrator(profiles=profiles)
        with pytest.raises(PersistenceError):
            await _reach_verified(orchestrator)

        with pytest.raises(AlreadyVerifiedError):
            await orchestrator.initiate(SUBJECT, HANDLE)

        assert profiles.promotions == [SUBJECT]
        assert profiles.is_mentor(SUBJECT)
        assert (await records.get(SUBJECT)).promoted is True

        # Later touches never promote again.
        with pytest.raises(AlreadyVerifiedError):
            await orchestrator.verify_identity(SUBJECT, email="ada@example.com")
        assert profiles.promotions == [SUBJECT]

    async def test_resumed_promotion_under_reevaluate(
        self, make_orchestrator, records: InMemoryRecordStore
    ) -> None:
        profiles = FlakyProfileStore()
        orchestrator = make_orchestrator(profiles=profiles, status_policy="reevaluate")
        with pytest.raises(PersistenceError):
            await _reach_verified(orchestrator)

        await orchestrator.verify_identity(SUBJECT, phone="+15550109999")

        record = await records.get(SUBJECT)
        assert record.status == VerificationStatus.VERIFIED
        assert record.promoted is True
        assert profiles.promotions == [SUBJECT]

    async def test_regression_then_reverification_promotes_once(
        self, make_orchestrator, profiles: InMemoryProfileStore
    ) -> None:
        orchestrator = make_orchestrator(status_policy="reevaluate")
        await _reach_verified(orchestrator)

        await orchestrator.submit_documents(SUBJECT, [(INVALID_DOC, "degree")])
        await orchestrator.submit_documents(SUBJECT, [(VALID_DEGREE, "degree")])

        assert (await orchestrator.get_status(SUBJECT)).overall_status == VerificationStatus.VERIFIED
        assert profiles.promotions == [SUBJECT]


class TestConcurrency:
    async def test_concurrent_completes_write_once(
        self,
        orchestrator: MentorVerificationOrchestrator,
        records: InMemoryRecordStore,
        profiles: InMemoryProfileStore,
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)

        results = await asyncio.gather(
            orchestrator.complete(SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")]),
            orchestrator.complete(SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")]),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ChallengeNotFoundError) for r in results) == 1
        assert (await records.get(SUBJECT)).version == 1
        assert profiles.promotions == []

    async def test_concurrent_completes_promote_once(
        self,
        orchestrator: MentorVerificationOrchestrator,
        profiles: InMemoryProfileStore,
    ) -> None:
        await orchestrator.initiate(SUBJECT, HANDLE)

        results = await asyncio.gather(
            orchestrator.complete(SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")], email="a@b.io"),
            orchestrator.complete(SUBJECT, HANDLE, documents=[(VALID_DEGREE, "degree")], email="a@b.io"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadyVerifiedError) for r in results) == 1
        assert profiles.promotions == [SUBJECT]

    async def test_subjects_do_not_block_each_other(self, orchestrator: MentorVerificationOrchestrator) -> None:
        await orchestrator.initiate("a", HANDLE)
        await orchestrator.initiate("b", HANDLE)

        first, second = await asyncio.gather(
            orchestrator.complete("a", HANDLE),
            orchestrator.complete("b", HANDLE),
        )

        assert first.verified and second.verified

    async def test_subject_locks_are_released(self, orchestrator: MentorVerificationOrchestrator) -> None:
        for n in range(50):
            await orchestrator.submit_documents(f"user-{n}", [(VALID_DEGREE, "degree")])

        gc.collect()

        assert len(orchestrator._locks) == 0
