"""Mentor profile payloads exchanged with the external profile store.

Profile CRUD lives outside MentorGate.  The verification pipeline only
produces two things for the profile store: a normalised mentor profile
when a claimant submits profile data alongside a successful ownership
proof, and a promotion signal when a subject reaches ``verified``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


def _split_csv(value: Any) -> list[str]:
    """Accept a list or a comma-separated string; drop blank items."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]


class MentorDetails(BaseModel):
    expertise: str | list[str] | None = None
    years_of_experience: str | int | None = None
    certifications: str | list[str] | None = None


class PendingProfileData(BaseModel):
    """Raw profile form data submitted while completing verification.

    List-like fields arrive either as lists or as comma-separated text
    depending on the client form.
    """

    name: str | None = None
    email: str | None = None
    skills: str | list[str] | None = None
    achievements: str | list[str] | None = None
    ongoing_projects: list[Any] = Field(default_factory=list)
    mentor_details: MentorDetails | None = None


class MentorProfile(BaseModel):
    """Normalised mentor profile written to the profile store."""

    subject_id: str
    type: str = "mentor"
    name: str | None = None
    email: str | None = None
    skills: list[str] = Field(default_factory=list)
    achievements: list[str] = Field(default_factory=list)
    ongoing_projects: list[Any] = Field(default_factory=list)
    mentor_expertise: list[str] = Field(default_factory=list)
    years_of_experience: int = 0
    certifications: list[str] = Field(default_factory=list)
    available_for_mentorship: bool = True

    @field_validator("skills", "achievements", "mentor_expertise", "certifications", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> list[str]:
        return _split_csv(v)

    @field_validator("years_of_experience", mode="before")
    @classmethod
    def _coerce_years(cls, v: Any) -> int:
        try:
            return int(str(v).strip())
        except (TypeError, ValueError):
            return 0

    @classmethod
    def from_pending(cls, subject_id: str, data: PendingProfileData) -> MentorProfile:
        details = data.mentor_details or MentorDetails()
        return cls(
            subject_id=subject_id,
            name=data.name,
            email=data.email,
            skills=data.skills,
            achievements=data.achievements,
            ongoing_projects=data.ongoing_projects,
            mentor_expertise=details.expertise,
            years_of_experience=details.years_of_experience,
            certifications=details.certifications,
        )
