"""Score primitives and the minimum-requirements gate.

Pure functions only; no I/O.

Profile Quality Score (0-100)
-----------------------------
+----------------+--------------------------------------+-----+
| Component      | Formula                              | Max |
+----------------+--------------------------------------+-----+
| Account age    | ``min(age_days / 365, 20)``          |  20 |
| Repositories   | ``min(repo_count * 5, 25)``          |  25 |
| Contributions  | step function, see below             |  35 |
| Followers      | ``min(follower_count * 2, 20)``      |  20 |
+----------------+--------------------------------------+-----+

Contribution steps: ``>500 -> 35``, ``>200 -> 30``, ``>100 -> 25``,
``>50 -> 20``, ``>20 -> 15``, otherwise ``min(contributions, 10)``.

Overall Score
-------------
``github * 0.4 + documents * 0.4 + identity * 0.2`` where ``github`` is
the profile quality score (0 unless ownership was proven), and
``documents`` / ``identity`` are 100 when verified, else 0.

Status mapping: ``>= 80 verified``, ``>= 60 in_review``, else ``pending``.
"""

from __future__ import annotations

import math
from typing import Final

from src.models.verification import (
    MinimumRequirements,
    ProfileSignals,
    RequirementsCheck,
    RequirementShortfall,
    VerificationStatus,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_AGE_CAP: Final[float] = 20.0
_REPO_POINTS: Final[int] = 5
_REPO_CAP: Final[int] = 25
_FOLLOWER_POINTS: Final[int] = 2
_FOLLOWER_CAP: Final[int] = 20

# (exclusive lower bound, points), checked top-down
_CONTRIBUTION_STEPS: Final[tuple[tuple[int, int], ...]] = (
    (500, 35),
    (200, 30),
    (100, 25),
    (50, 20),
    (20, 15),
)
_CONTRIBUTION_FLOOR_CAP: Final[int] = 10

GITHUB_WEIGHT: Final[float] = 0.4
DOCUMENTS_WEIGHT: Final[float] = 0.4
IDENTITY_WEIGHT: Final[float] = 0.2

VERIFIED_THRESHOLD: Final[int] = 80
IN_REVIEW_THRESHOLD: Final[int] = 60


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Sub-scores
# ---------------------------------------------------------------------------


def age_score(account_age_days: int) -> float:
    return min(max(account_age_days, 0) / 365, _AGE_CAP)


def repo_score(public_repo_count: int) -> int:
    return min(max(public_repo_count, 0) * _REPO_POINTS, _REPO_CAP)


def contribution_score(contribution_count: int) -> int:
    for bound, points in _CONTRIBUTION_STEPS:
        if contribution_count > bound:
            return points
    return min(max(contribution_count, 0), _CONTRIBUTION_FLOOR_CAP)


def follower_score(follower_count: int) -> int:
    return min(max(follower_count, 0) * _FOLLOWER_POINTS, _FOLLOWER_CAP)


def profile_quality_score(signals: ProfileSignals) -> int:
    """Sum the capped sub-scores and round to an integer in ``[0, 100]``."""
    total = (
        age_score(signals.account_age_days)
        + repo_score(signals.public_repo_count)
        + contribution_score(signals.contribution_count)
        + follower_score(signals.follower_count)
    )
    return max(0, min(100, _round_half_up(total)))


# ---------------------------------------------------------------------------
# Aggregate score and status
# ---------------------------------------------------------------------------


def overall_score(
    *,
    github_verified: bool,
    github_score: int,
    documents_verified: bool,
    identity_verified: bool,
) -> int:
    github = github_score if github_verified else 0
    documents = 100 if documents_verified else 0
    identity = 100 if identity_verified else 0
    total = github * GITHUB_WEIGHT + documents * DOCUMENTS_WEIGHT + identity * IDENTITY_WEIGHT
    return max(0, min(100, _round_half_up(total)))


def determine_status(score: int) -> VerificationStatus:
    if score >= VERIFIED_THRESHOLD:
        return VerificationStatus.VERIFIED
    if score >= IN_REVIEW_THRESHOLD:
        return VerificationStatus.IN_REVIEW
    return VerificationStatus.PENDING


# ---------------------------------------------------------------------------
# Minimum requirements gate
# ---------------------------------------------------------------------------


def check_minimum_requirements(
    signals: ProfileSignals,
    requirements: MinimumRequirements,
) -> RequirementsCheck:
    """Compare reputation signals against the configured minimums.

    Every dimension is checked independently so the caller receives the
    full list of shortfalls, not just the first one.
    """
    failing: list[RequirementShortfall] = []

    if signals.account_age_days < requirements.account_age_in_days:
        failing.append(
            RequirementShortfall(
                requirement="Account Age",
                current=f"{signals.account_age_days} days",
                minimum=f"{requirements.account_age_in_days} days",
            )
        )

    if signals.public_repo_count < requirements.min_repos:
        failing.append(
            RequirementShortfall(
                requirement="Public Repositories",
                current=signals.public_repo_count,
                minimum=requirements.min_repos,
            )
        )

    if signals.contribution_count < requirements.min_contributions:
        failing.append(
            RequirementShortfall(
                requirement="Contributions",
                current=signals.contribution_count,
                minimum=requirements.min_contributions,
            )
        )

    if signals.follower_count < requirements.min_followers:
        failing.append(
            RequirementShortfall(
                requirement="Followers",
                current=signals.follower_count,
                minimum=requirements.min_followers,
            )
        )

    return RequirementsCheck(passed=not failing, failing=failing)
