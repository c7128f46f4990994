"""Collaborator interface to the external mentor profile store.

MentorGate never owns profiles.  It emits two signals to whatever
service does: a normalised profile upsert when a claimant submits
profile data with a successful ownership proof, and a one-time
promotion when a subject's record transitions into ``verified``.
"""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

import structlog

from src.models.profile import MentorProfile

logger = structlog.get_logger(__name__)


@runtime_checkable
class ProfileStore(Protocol):
    async def promote_to_mentor(self, subject_id: str) -> None: ...

    async def upsert_profile(self, profile: MentorProfile) -> None: ...


class InMemoryProfileStore:
    """Process-local profile store used in development and tests.

    Keeps every promotion call in :attr:`promotions` (in call order) so
    the exactly-once promotion guarantee can be observed.
    """

    def __init__(self) -> None:
        self.profiles: dict[str, MentorProfile] = {}
        self.promotions: list[str] = []
        self._lock = asyncio.Lock()

    async def promote_to_mentor(self, subject_id: str) -> None:
        async with self._lock:
            self.promotions.append(subject_id)
            profile = self.profiles.get(subject_id)
            if profile is None:
                profile = MentorProfile(subject_id=subject_id)
            self.profiles[subject_id] = profile.model_copy(
                update={"type": "mentor", "available_for_mentorship": True}
            )
        logger.info("profiles.promoted", subject_id=subject_id)

    async def upsert_profile(self, profile: MentorProfile) -> None:
        async with self._lock:
            self.profiles[profile.subject_id] = profile
        logger.info(
            "profiles.upserted",
            subject_id=profile.subject_id,
            skills=len(profile.skills),
            certifications=len(profile.certifications),
        )

    def is_mentor(self, subject_id: str) -> bool:
        profile = self.profiles.get(subject_id)
        return profile is not None and profile.type == "mentor" and subject_id in self.promotions
