"""Fetch quantitative reputation signals for a GitHub handle.

Signals are read fresh for every attempt and never cached: the gate
and the quality score must reflect the account as it is now.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from src.models.verification import ProfileSignals

if TYPE_CHECKING:
    from src.services.verification.github_client import GitHubClient

logger = structlog.get_logger(__name__)


def account_age_days(created_at: str | None, now: datetime | None = None) -> int:
    """Whole days elapsed since an ISO-8601 ``created_at`` timestamp."""
    if not created_at:
        return 0
    created = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    delta = (now or datetime.now(UTC)) - created
    return max(delta.days, 0)


class ProfileSignalFetcher:
    """Reads account age, repo count, followers (REST) and contributions (GraphQL)."""

    def __init__(self, github: GitHubClient) -> None:
        self._github = github

    async def fetch(self, handle: str) -> ProfileSignals:
        """Return current signals for *handle*.

        A failed profile fetch propagates, since there is nothing to
        score without it.  A failed contribution query degrades to zero
        contributions.
        """
        user, contributions = await asyncio.gather(
            self._github.get_user(handle),
            self._contributions(handle),
        )
        signals = ProfileSignals(
            account_age_days=account_age_days(user.get("created_at")),
            public_repo_count=int(user.get("public_repos") or 0),
            contribution_count=contributions,
            follower_count=int(user.get("followers") or 0),
        )
        logger.info("signals.fetched", handle=handle, **signals.model_dump())
        return signals

    async def _contributions(self, handle: str) -> int:
        try:
            return await self._github.get_contribution_count(handle)
        except Exception as exc:
            logger.warning("signals.contributions_failed", handle=handle, error=str(exc))
            return 0
