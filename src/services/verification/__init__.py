"""Mentor trust-verification services for MentorGate.

Admits a claimant into the mentor role by combining three trust signals:

  - GitHub ownership proof (challenge code in bio, repository or gist),
    graded by profile quality
  - OCR-validated credential documents
  - an out-of-band identity channel (email or phone)

Public API::

    from src.services.verification import (
        MentorVerificationOrchestrator,
        OwnershipProofVerifier,
        DocumentVerifier,
        IdentityVerifier,
    )
"""

from __future__ import annotations

from src.services.verification.challenge_store import (
    ChallengeStore,
    InMemoryChallengeStore,
    RedisChallengeStore,
)
from src.services.verification.documents import DocumentVerifier
from src.services.verification.exceptions import (
    AlreadyVerifiedError,
    ChallengeError,
    ChallengeNotFoundError,
    HandleMismatchError,
    PersistenceError,
    RecordConflictError,
    VerificationError,
)
from src.services.verification.github_client import GitHubClient
from src.services.verification.identity import IdentityVerifier
from src.services.verification.orchestrator import MentorVerificationOrchestrator
from src.services.verification.ownership import OwnershipProofVerifier
from src.services.verification.profile_store import InMemoryProfileStore, ProfileStore
from src.services.verification.records import (
    InMemoryRecordStore,
    RedisRecordStore,
    VerificationRecordStore,
)
from src.services.verification.signals import ProfileSignalFetcher

__all__ = [
    "AlreadyVerifiedError",
    "ChallengeError",
    "ChallengeNotFoundError",
    "ChallengeStore",
    "DocumentVerifier",
    "GitHubClient",
    "HandleMismatchError",
    "IdentityVerifier",
    "InMemoryChallengeStore",
    "InMemoryProfileStore",
    "InMemoryRecordStore",
    "MentorVerificationOrchestrator",
    "OwnershipProofVerifier",
    "PersistenceError",
    "ProfileSignalFetcher",
    "ProfileStore",
    "RecordConflictError",
    "RedisChallengeStore",
    "RedisRecordStore",
    "VerificationError",
    "VerificationRecordStore",
]
