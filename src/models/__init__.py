from src.models.profile import MentorDetails, MentorProfile, PendingProfileData
from src.models.verification import (
    ChallengeSession,
    CompleteResult,
    DocumentBatchVerdict,
    DocumentMetadata,
    DocumentType,
    DocumentVerdict,
    GithubVerification,
    IdentityVerdict,
    InitiateResult,
    MinimumRequirements,
    OwnershipChannel,
    OwnershipProofResult,
    ProfileSignals,
    RequirementsCheck,
    RequirementShortfall,
    VerificationRecord,
    VerificationStatus,
    VerificationStatusView,
)

__all__ = [
    "ChallengeSession",
    "CompleteResult",
    "DocumentBatchVerdict",
    "DocumentMetadata",
    "DocumentType",
    "DocumentVerdict",
    "GithubVerification",
    "IdentityVerdict",
    "InitiateResult",
    "MentorDetails",
    "MentorProfile",
    "MinimumRequirements",
    "OwnershipChannel",
    "OwnershipProofResult",
    "PendingProfileData",
    "ProfileSignals",
    "RequirementShortfall",
    "RequirementsCheck",
    "VerificationRecord",
    "VerificationStatus",
    "VerificationStatusView",
]
