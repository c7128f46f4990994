"""Mentor verification orchestrator.

Drives a subject from claim to verdict:

1. **Initiate** -- fetch reputation signals, apply the minimum
   requirements gate, and issue a challenge code.
2. **Complete** -- validate the outstanding challenge, then fan out the
   ownership proof, signal fetch, document and identity verifiers
   concurrently, join, score, and persist the record.
3. **Submit documents / verify identity** -- update one sub-verdict on
   the existing record and recompute the score.

Status State Machine
--------------------
``pending -> in_review -> verified`` from the overall score
(``>= 80 verified``, ``>= 60 in_review``).  Under the ``monotonic``
policy a verified record is frozen and further attempts raise
:class:`AlreadyVerifiedError`; under ``reevaluate`` the record is
recomputed from scratch and may regress.

Promotion
---------
The profile store receives one promotion per subject, after the record
is first written as ``verified``.  The record carries a ``promoted``
marker that is set only once the profile store acknowledged the call.
A verified record without the marker is promoted again the next time
the subject is touched, so a failed promotion never strands a subject.

Failure Semantics
-----------------
Every verifier branch runs under its own timeout.  A branch that raises
or times out contributes its "not verified" value; it never cancels its
siblings or aborts the attempt.  Persistence and promotion failures
propagate as :class:`PersistenceError`.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

import structlog

from src.models.profile import MentorProfile, PendingProfileData
from src.models.verification import (
    CompleteResult,
    DocumentBatchVerdict,
    DocumentType,
    DocumentVerdict,
    GithubVerification,
    IdentityVerdict,
    InitiateResult,
    MinimumRequirements,
    OwnershipProofResult,
    RequirementsCheck,
    RequirementShortfall,
    VerificationRecord,
    VerificationStatus,
    VerificationStatusView,
)
from src.services.verification.documents import EXTRACTION_FAILED
from src.services.verification.exceptions import (
    AlreadyVerifiedError,
    ChallengeNotFoundError,
    HandleMismatchError,
    PersistenceError,
)
from src.services.verification.ownership import DEFAULT_REPO_NAME
from src.services.verification.scoring import (
    check_minimum_requirements,
    determine_status,
    overall_score,
    profile_quality_score,
)

if TYPE_CHECKING:
    from src.services.verification.challenge_store import ChallengeStore
    from src.services.verification.documents import DocumentVerifier
    from src.services.verification.identity import IdentityVerifier
    from src.services.verification.ownership import OwnershipProofVerifier
    from src.services.verification.profile_store import ProfileStore
    from src.services.verification.records import VerificationRecordStore
    from src.services.verification.signals import ProfileSignalFetcher

logger = structlog.get_logger(__name__)

StatusPolicy = Literal["monotonic", "reevaluate"]

_DocumentInput = tuple[bytes, DocumentType | str]


def challenge_instructions(code: str, repo_name: str = DEFAULT_REPO_NAME) -> str:
    return (
        "Please verify your GitHub account ownership by doing ONE of the following:\n"
        f"  1. Create a public repository named '{repo_name}' with a file containing the code {code}\n"
        f"  2. Create a public gist containing the code {code}\n"
        f"  3. Add the code {code} to your GitHub bio temporarily"
    )


def _no_channels() -> OwnershipProofResult:
    return OwnershipProofResult.from_channels(bio=False, repo_file=False, gist=False)


def _signals_unavailable() -> RequirementsCheck:
    return RequirementsCheck(
        passed=False,
        failing=[
            RequirementShortfall(
                requirement="GitHub Profile",
                current="unavailable",
                minimum="public profile",
            )
        ],
    )


def _failed_documents(documents: list[_DocumentInput]) -> DocumentBatchVerdict:
    return DocumentBatchVerdict.from_results(
        [
            DocumentVerdict(
                document_type=str(declared),
                verified=False,
                failure_reasons=[EXTRACTION_FAILED],
            )
            for _, declared in documents
        ]
    )


class MentorVerificationOrchestrator:
    """Coordinates challenge, verifiers, scoring and persistence.

    Parameters
    ----------
    challenges:
        Challenge session store.
    records:
        Versioned verification record store.
    ownership:
        Ownership proof verifier.  Its per-channel timeout must be lower
        than *verifier_timeout* or a slow channel discards the others.
    signals:
        Profile signal fetcher.
    profiles:
        External profile store receiving promotions and pending profiles.
    documents:
        Document verifier; *None* when no OCR engine is configured, in
        which case every submitted document fails extraction.
    identity:
        Identity verifier; *None* disables the identity channel.
    requirements:
        Minimum requirements gate thresholds.
    status_policy:
        ``"monotonic"`` freezes verified records, ``"reevaluate"``
        recomputes them.
    verifier_timeout:
        Upper bound in seconds for each verifier branch.
    repo_name:
        Repository name quoted in the challenge instructions.
    """

    def __init__(
        self,
        *,
        challenges: ChallengeStore,
        records: VerificationRecordStore,
        ownership: OwnershipProofVerifier,
        signals: ProfileSignalFetcher,
        profiles: ProfileStore,
        documents: DocumentVerifier | None = None,
        identity: IdentityVerifier | None = None,
        requirements: MinimumRequirements | None = None,
        status_policy: StatusPolicy = "monotonic",
        verifier_timeout: float = 45.0,
        repo_name: str = DEFAULT_REPO_NAME,
    ) -> None:
        self._challenges = challenges
        self._records = records
        self._ownership = ownership
        self._signals = signals
        self._profiles = profiles
        self._documents = documents
        self._identity = identity
        self._requirements = requirements or MinimumRequirements()
        self._status_policy = status_policy
        self._verifier_timeout = verifier_timeout
        self._repo_name = repo_name
        # Entries vanish once no coroutine holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def requirements(self) -> MinimumRequirements:
        return self._requirements

    def _lock_for(self, subject_id: str) -> asyncio.Lock:
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subject_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    async def initiate(self, subject_id: str, claimed_handle: str) -> InitiateResult:
        """Gate the claim on current signals and issue a challenge.

        On gate failure no challenge is issued and nothing is recorded.
        """
        logger.info("verification.initiate_start", subject_id=subject_id, handle=claimed_handle)

        async with self._lock_for(subject_id):
            await self._ensure_not_frozen(await self._records.get(subject_id))

        check = await self._gate(claimed_handle)
        if not check.passed:
            logger.info(
                "verification.requirements_failed",
                subject_id=subject_id,
                handle=claimed_handle,
                failing=[f.requirement for f in check.failing],
            )
            return InitiateResult(requirements_passed=False, failing_requirements=check.failing)

        session = await self._challenges.issue(subject_id, claimed_handle)
        return InitiateResult(
            requirements_passed=True,
            code=session.code,
            instructions=challenge_instructions(session.code, self._repo_name),
            expires_at=session.expires_at,
        )

    async def _gate(self, handle: str) -> RequirementsCheck:
        try:
            signals = await asyncio.wait_for(
                self._signals.fetch(handle), timeout=self._verifier_timeout
            )
        except Exception as exc:
            logger.warning("verification.signals_unavailable", handle=handle, error=str(exc))
            return _signals_unavailable()
        return check_minimum_requirements(signals, self._requirements)

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    async def complete(
        self,
        subject_id: str,
        claimed_handle: str,
        pending_profile_data: PendingProfileData | None = None,
        documents: list[_DocumentInput] | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> CompleteResult:
        """Validate the challenge, run every verifier, score and persist.

        The record is written on every attempt that gets past challenge
        validation.  When the GitHub proof does not qualify (unproven,
        signals unavailable, or requirements no longer met) the fresh
        document and identity verdicts are still stored, with GitHub
        contributing nothing new.

        The challenge session is kept while ownership is unproven or the
        profile signals are unavailable, so the claimant can retry
        before it expires.  Otherwise it is consumed.

        Raises
        ------
        ChallengeNotFoundError
            No live session for *subject_id* (never issued, expired, or
            replaced and already consumed).
        HandleMismatchError
            *claimed_handle* differs from the handle the code was issued for.
        AlreadyVerifiedError
            The record is verified and the status policy is monotonic.
        PersistenceError
            The record could not be written or the promotion failed.
        """
        async with self._lock_for(subject_id):
            existing = await self._ensure_not_frozen(await self._records.get(subject_id))

            session = await self._challenges.get(subject_id)
            if session is None:
                logger.info("verification.challenge_missing", subject_id=subject_id)
                raise ChallengeNotFoundError()
            if session.claimed_handle.lower() != claimed_handle.lower():
                logger.info(
                    "verification.handle_mismatch",
                    subject_id=subject_id,
                    session_handle=session.claimed_handle,
                    presented_handle=claimed_handle,
                )
                raise HandleMismatchError()

            proof, signals, documents_result, identity_result = await asyncio.gather(
                self._guarded(
                    "ownership",
                    subject_id,
                    self._ownership.verify(claimed_handle, session.code),
                    _no_channels(),
                ),
                self._guarded("signals", subject_id, self._signals.fetch(claimed_handle), None),
                self._guarded(
                    "documents",
                    subject_id,
                    self._verify_documents(documents),
                    _failed_documents(documents) if documents else None,
                ),
                self._guarded(
                    "identity",
                    subject_id,
                    self._verify_identity(email, phone),
                    IdentityVerdict(verified=False) if (email or phone) else None,
                ),
            )

            details: dict[str, Any] = {
                "ownership": proof.model_dump(mode="json"),
                "signals": signals.model_dump() if signals else None,
            }
            if documents_result is not None:
                details["documents"] = documents_result.model_dump(mode="json")
            if identity_result is not None:
                details["identity"] = identity_result.model_dump(mode="json")

            github = GithubVerification(handle=claimed_handle, proof=proof, signals=signals)

            if not proof.verified:
                logger.info("verification.ownership_unproven", subject_id=subject_id, handle=claimed_handle)
                stored = await self._persist_unqualified(
                    subject_id, existing, github, documents_result, identity_result
                )
                return CompleteResult(
                    verified=False,
                    requirements_met=False,
                    score=stored.overall_score,
                    status=stored.status,
                    details=details,
                )

            if signals is None:
                check = _signals_unavailable()
            else:
                await self._challenges.invalidate(subject_id)
                check = check_minimum_requirements(signals, self._requirements)

            if not check.passed:
                logger.info(
                    "verification.requirements_not_met",
                    subject_id=subject_id,
                    handle=claimed_handle,
                    failing=[f.requirement for f in check.failing],
                    session_kept=signals is None,
                )
                stored = await self._persist_unqualified(
                    subject_id, existing, github, documents_result, identity_result
                )
                return CompleteResult(
                    verified=True,
                    requirements_met=False,
                    score=stored.overall_score,
                    status=stored.status,
                    details=details,
                    failing_requirements=check.failing,
                )

            github = github.model_copy(
                update={"score": profile_quality_score(signals), "requirements_met": True}
            )
            record = self._build_record(
                subject_id,
                existing,
                github=github,
                documents=documents_result,
                identity=identity_result,
            )
            stored = await self._persist(existing, record)

            if pending_profile_data is not None:
                await self._upsert_pending_profile(subject_id, pending_profile_data)

        details["github_score"] = github.score
        return CompleteResult(
            verified=True,
            requirements_met=True,
            score=stored.overall_score,
            status=stored.status,
            details=details,
        )

    async def _persist_unqualified(
        self,
        subject_id: str,
        existing: VerificationRecord | None,
        github: GithubVerification,
        documents: DocumentBatchVerdict | None,
        identity: IdentityVerdict | None,
    ) -> VerificationRecord:
        # A failed retry never erases an earlier qualifying proof.
        keep_github = existing is not None and existing.github_verified
        record = self._build_record(
            subject_id,
            existing,
            github=None if keep_github else github,
            documents=documents,
            identity=identity,
        )
        return await self._persist(existing, record)

    async def _verify_documents(
        self,
        documents: list[_DocumentInput] | None,
    ) -> DocumentBatchVerdict | None:
        if not documents:
            return None
        if self._documents is None:
            logger.warning("verification.documents_unconfigured", count=len(documents))
            return _failed_documents(documents)
        return await self._documents.validate_multiple(documents)

    async def _verify_identity(self, email: str | None, phone: str | None) -> IdentityVerdict | None:
        if not (email or phone):
            return None
        if self._identity is None:
            logger.warning("verification.identity_unconfigured")
            return IdentityVerdict(verified=False)
        return await self._identity.verify(email=email, phone=phone)

    async def _upsert_pending_profile(self, subject_id: str, data: PendingProfileData) -> None:
        profile = MentorProfile.from_pending(subject_id, data)
        try:
            await self._profiles.upsert_profile(profile)
        except Exception:
            logger.warning("verification.profile_upsert_failed", subject_id=subject_id, exc_info=True)

    # ------------------------------------------------------------------
    # Documents / identity updates
    # ------------------------------------------------------------------

    async def submit_documents(
        self,
        subject_id: str,
        documents: list[_DocumentInput],
    ) -> DocumentBatchVerdict:
        """Verify *documents*, store the verdict and recompute the score."""
        async with self._lock_for(subject_id):
            existing = await self._ensure_not_frozen(await self._records.get(subject_id))

            batch = await self._guarded(
                "documents",
                subject_id,
                self._verify_documents(documents),
                _failed_documents(documents),
            )
            if batch is None:
                batch = DocumentBatchVerdict(verified=False, results=[])

            record = self._build_record(subject_id, existing, documents=batch)
            await self._persist(existing, record)
        return batch

    async def verify_identity(
        self,
        subject_id: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> IdentityVerdict:
        """Dispatch identity checks, store the verdict and recompute the score."""
        async with self._lock_for(subject_id):
            existing = await self._ensure_not_frozen(await self._records.get(subject_id))

            verdict = await self._guarded(
                "identity",
                subject_id,
                self._verify_identity(email, phone),
                IdentityVerdict(verified=False),
            )
            if verdict is None:
                verdict = IdentityVerdict(verified=False)

            record = self._build_record(subject_id, existing, identity=verdict)
            await self._persist(existing, record)
        return verdict

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, subject_id: str) -> VerificationStatusView:
        record = await self._records.get(subject_id)
        if record is None:
            return VerificationStatusView()
        return VerificationStatusView(
            github_verified=record.github_verified,
            documents_verified=record.documents_verified,
            identity_verified=record.identity_verified,
            overall_status=record.status,
            score=record.overall_score,
        )

    async def get_record(self, subject_id: str) -> VerificationRecord | None:
        return await self._records.get(subject_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_not_frozen(self, record: VerificationRecord | None) -> VerificationRecord | None:
        """Finish any outstanding promotion, then apply the status policy.

        Returns the record as now stored; callers must use it as the base
        for their next write.  Must run under the subject lock.
        """
        if record is None or record.status != VerificationStatus.VERIFIED:
            return record
        if not record.promoted:
            logger.info("verification.promotion_resumed", subject_id=record.subject_id)
            record = await self._promote(record)
        if self._status_policy == "monotonic":
            logger.info("verification.already_verified", subject_id=record.subject_id)
            raise AlreadyVerifiedError()
        return record

    async def _guarded(self, branch: str, subject_id: str, awaitable: Any, fallback: Any) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._verifier_timeout)
        except TimeoutError:
            logger.warning(
                "verification.branch_timeout",
                subject_id=subject_id,
                branch=branch,
                timeout_s=self._verifier_timeout,
            )
        except Exception as exc:
            logger.error(
                "verification.branch_failed",
                subject_id=subject_id,
                branch=branch,
                error=str(exc),
            )
        return fallback

    def _build_record(
        self,
        subject_id: str,
        existing: VerificationRecord | None,
        *,
        github: GithubVerification | None = None,
        documents: DocumentBatchVerdict | None = None,
        identity: IdentityVerdict | None = None,
    ) -> VerificationRecord:
        """Merge fresh sub-verdicts over the persisted ones and rescore."""
        base = existing or VerificationRecord(subject_id=subject_id)

        github_data = github if github is not None else base.github_data
        github_verified = github.verified if github is not None else base.github_verified
        github_username = github.handle if github is not None else base.github_username

        documents_verified = documents.verified if documents is not None else base.documents_verified
        document_results = documents.results if documents is not None else base.documents

        identity_data = identity if identity is not None else base.identity_data
        identity_verified = identity.verified if identity is not None else base.identity_verified

        score = overall_score(
            github_verified=github_verified,
            github_score=github_data.score if github_data is not None else 0,
            documents_verified=documents_verified,
            identity_verified=identity_verified,
        )
        return VerificationRecord(
            subject_id=subject_id,
            status=determine_status(score),
            github_username=github_username,
            github_verified=github_verified,
            github_data=github_data,
            documents_verified=documents_verified,
            documents=document_results,
            identity_verified=identity_verified,
            identity_data=identity_data,
            overall_score=score,
            verification_date=datetime.now(UTC),
            promoted=base.promoted,
        )

    async def _persist(
        self,
        existing: VerificationRecord | None,
        record: VerificationRecord,
    ) -> VerificationRecord:
        previous = existing.status if existing is not None else None
        stored = await self._records.upsert(
            record,
            expected_version=existing.version if existing is not None else 0,
        )

        if previous == VerificationStatus.VERIFIED and stored.status != VerificationStatus.VERIFIED:
            logger.warning(
                "verification.status_regressed",
                subject_id=stored.subject_id,
                previous=previous,
                current=stored.status,
                score=stored.overall_score,
            )

        logger.info(
            "verification.record_saved",
            subject_id=stored.subject_id,
            status=stored.status,
            score=stored.overall_score,
            github_verified=stored.github_verified,
            documents_verified=stored.documents_verified,
            identity_verified=stored.identity_verified,
        )

        if stored.status == VerificationStatus.VERIFIED and not stored.promoted:
            stored = await self._promote(stored)

        return stored

    async def _promote(self, record: VerificationRecord) -> VerificationRecord:
        """Promote the subject and mark *record* as promoted.

        Raises
        ------
        PersistenceError
            The profile store rejected the promotion.  The record stays
            verified without the marker and is promoted on the next touch.
        """
        try:
            await self._profiles.promote_to_mentor(record.subject_id)
        except Exception as exc:
            logger.error(
                "verification.promotion_failed",
                subject_id=record.subject_id,
                error=str(exc),
            )
            raise PersistenceError(f"mentor promotion failed for {record.subject_id}") from exc

        stored = await self._records.upsert(
            record.model_copy(update={"promoted": True}),
            expected_version=record.version,
        )
        logger.info("verification.promoted", subject_id=stored.subject_id, score=stored.overall_score)
        return stored
