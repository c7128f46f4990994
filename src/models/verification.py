"""Verification data models for MentorGate.

Defines the data structures of the mentor trust-verification pipeline:
challenge sessions, per-verifier verdicts, reputation signals, and the
persisted per-subject verification record.

Trust Signals
-------------
1. **GitHub ownership proof** -- challenge code found in the bio, the
   ``verification-repo`` repository, or a public gist (weight 0.4,
   graded by profile quality).
2. **Credential documents** -- OCR-validated degree / certificate /
   professional licence (weight 0.4, binary).
3. **Identity** -- an out-of-band email or phone channel (weight 0.2,
   binary).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class VerificationStatus(StrEnum):
    """Lifecycle state of a subject's verification record."""

    __slots__ = ()

    PENDING = "pending"
    IN_REVIEW = "in_review"
    VERIFIED = "verified"


class OwnershipChannel(StrEnum):
    """Public GitHub surfaces checked for the challenge code."""

    __slots__ = ()

    BIO = "bio"
    REPO_FILE = "repo_file"
    GIST = "gist"


class DocumentType(StrEnum):
    """Credential document types with a validation rule set."""

    __slots__ = ()

    DEGREE = "degree"
    CERTIFICATE = "certificate"
    PROFESSIONAL_LICENSE = "professional_license"


# ---------------------------------------------------------------------------
# Challenge sessions
# ---------------------------------------------------------------------------


class ChallengeSession(BaseModel):
    """An outstanding ownership challenge for one subject."""

    subject_id: str
    claimed_handle: str
    code: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) > self.expires_at


# ---------------------------------------------------------------------------
# Verifier outputs
# ---------------------------------------------------------------------------


class OwnershipProofResult(BaseModel):
    """Outcome of checking the three ownership channels."""

    model_config = ConfigDict(frozen=True)

    verified: bool
    channels_checked: dict[OwnershipChannel, bool]

    @classmethod
    def from_channels(cls, *, bio: bool, repo_file: bool, gist: bool) -> OwnershipProofResult:
        return cls(
            verified=bio or repo_file or gist,
            channels_checked={
                OwnershipChannel.BIO: bio,
                OwnershipChannel.REPO_FILE: repo_file,
                OwnershipChannel.GIST: gist,
            },
        )


class ProfileSignals(BaseModel):
    """Quantitative reputation signals for a GitHub handle."""

    account_age_days: int = Field(default=0, ge=0)
    public_repo_count: int = Field(default=0, ge=0)
    contribution_count: int = Field(default=0, ge=0)
    follower_count: int = Field(default=0, ge=0)


class MinimumRequirements(BaseModel):
    """Thresholds for the zero-secret pre-check.  All may be zero."""

    account_age_in_days: int = Field(default=0, ge=0)
    min_repos: int = Field(default=0, ge=0)
    min_contributions: int = Field(default=0, ge=0)
    min_followers: int = Field(default=0, ge=0)


class RequirementShortfall(BaseModel):
    """A single requirement the signals do not meet."""

    requirement: str
    current: int | str
    minimum: int | str


class RequirementsCheck(BaseModel):
    passed: bool
    failing: list[RequirementShortfall] = Field(default_factory=list)


class GithubVerification(BaseModel):
    """GitHub sub-verdict, persisted as ``github_data`` on the record."""

    handle: str
    proof: OwnershipProofResult
    signals: ProfileSignals | None = None
    score: int = Field(default=0, ge=0, le=100)
    requirements_met: bool = False
    error: str | None = None

    @property
    def verified(self) -> bool:
        return self.proof.verified and self.requirements_met


class DocumentMetadata(BaseModel):
    """Best-effort fields extracted from the original-case OCR text."""

    issue_date: str | None = None
    institution: str | None = None
    credential: str | None = None


class DocumentVerdict(BaseModel):
    """Validation result for a single uploaded document."""

    document_type: str
    verified: bool
    failure_reasons: list[str] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="OCR confidence reported by the text extraction engine.",
    )


class DocumentBatchVerdict(BaseModel):
    """Batch outcome: verified iff at least one document verified."""

    verified: bool
    results: list[DocumentVerdict] = Field(default_factory=list)

    @classmethod
    def from_results(cls, results: list[DocumentVerdict]) -> DocumentBatchVerdict:
        return cls(verified=any(r.verified for r in results), results=results)


class IdentityVerdict(BaseModel):
    """Out-of-band identity outcome; verified iff any channel confirmed."""

    verified: bool = False
    channels: dict[str, bool] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persisted record
# ---------------------------------------------------------------------------


class VerificationRecord(BaseModel):
    """Per-subject verification record, upserted on every attempt.

    ``version`` is an optimistic concurrency counter maintained by the
    record store; callers never set it directly.  ``promoted`` is set once
    the profile store has acknowledged the mentor promotion.
    """

    subject_id: str
    status: VerificationStatus = VerificationStatus.PENDING
    github_username: str | None = None
    github_verified: bool = False
    github_data: GithubVerification | None = None
    documents_verified: bool = False
    documents: list[DocumentVerdict] = Field(default_factory=list)
    identity_verified: bool = False
    identity_data: IdentityVerdict | None = None
    overall_score: int = Field(default=0, ge=0, le=100)
    verification_date: datetime | None = None
    promoted: bool = False
    version: int = 0


class VerificationStatusView(BaseModel):
    """Projection returned by the status query."""

    github_verified: bool = False
    documents_verified: bool = False
    identity_verified: bool = False
    overall_status: VerificationStatus = VerificationStatus.PENDING
    score: int = 0


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------


class InitiateResult(BaseModel):
    requirements_passed: bool
    code: str | None = None
    failing_requirements: list[RequirementShortfall] = Field(default_factory=list)
    instructions: str | None = None
    expires_at: datetime | None = None


class CompleteResult(BaseModel):
    verified: bool
    requirements_met: bool
    score: int | None = None
    status: VerificationStatus | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    failing_requirements: list[RequirementShortfall] = Field(default_factory=list)
