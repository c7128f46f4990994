"""Challenge-response proof of GitHub handle ownership.

A claimant proves control of a handle by publishing the challenge code
on ONE of three public surfaces the claimant alone can write to:

1. **Bio** -- the free-text biography of the GitHub profile.
2. **Repository file** -- any root-level file of a public repository
   named ``verification-repo`` owned by the handle.
3. **Gist** -- any file of a public gist owned by the handle.

All three channels are checked concurrently and every result is
reported, even after one matches, so the claimant can see which proof
was found.  A channel that errors or times out counts as "not found";
zero matching channels is a normal "not yet proven" outcome.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TYPE_CHECKING

import structlog

from src.models.verification import OwnershipChannel, OwnershipProofResult

if TYPE_CHECKING:
    from src.services.verification.github_client import GitHubClient

logger = structlog.get_logger(__name__)

DEFAULT_REPO_NAME = "verification-repo"


def _same_login(login: str | None, handle: str) -> bool:
    return login is not None and login.lower() == handle.lower()


class OwnershipProofVerifier:
    """Checks bio, repository and gist channels for a challenge code.

    Parameters
    ----------
    github:
        Client used for all GitHub reads.
    repo_name:
        Well-known repository name checked by the repository channel.
    channel_timeout:
        Upper bound in seconds for each channel check as a whole.
    """

    def __init__(
        self,
        github: GitHubClient,
        *,
        repo_name: str = DEFAULT_REPO_NAME,
        channel_timeout: float = 20.0,
    ) -> None:
        self._github = github
        self._repo_name = repo_name
        self._channel_timeout = channel_timeout

    async def verify(self, handle: str, code: str) -> OwnershipProofResult:
        """Return which channels contain *code* for *handle*."""
        if not code:
            return OwnershipProofResult.from_channels(bio=False, repo_file=False, gist=False)

        bio, repo_file, gist = await asyncio.gather(
            self._run_channel(OwnershipChannel.BIO, handle, self.check_bio(handle, code)),
            self._run_channel(OwnershipChannel.REPO_FILE, handle, self.check_repo(handle, code)),
            self._run_channel(OwnershipChannel.GIST, handle, self.check_gist(handle, code)),
        )
        result = OwnershipProofResult.from_channels(bio=bio, repo_file=repo_file, gist=gist)

        logger.info(
            "ownership.checked",
            handle=handle,
            verified=result.verified,
            bio=bio,
            repo_file=repo_file,
            gist=gist,
        )
        return result

    async def _run_channel(
        self,
        channel: OwnershipChannel,
        handle: str,
        check: Awaitable[bool],
    ) -> bool:
        try:
            return await asyncio.wait_for(check, timeout=self._channel_timeout)
        except TimeoutError:
            logger.warning("ownership.channel_timeout", channel=channel, handle=handle)
            return False
        except Exception as exc:
            logger.info(
                "ownership.channel_failed",
                channel=channel,
                handle=handle,
                error=str(exc),
            )
            return False

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def check_bio(self, handle: str, code: str) -> bool:
        user = await self._github.get_user(handle)
        return code in (user.get("bio") or "")

    async def check_repo(self, handle: str, code: str) -> bool:
        repo = await self._github.get_repo(handle, self._repo_name)

        # A fork or transferred repo must not prove ownership.
        owner = (repo.get("owner") or {}).get("login")
        if not _same_login(owner, handle):
            logger.info("ownership.repo_owner_mismatch", handle=handle, owner=owner)
            return False

        entries = await self._github.list_root_contents(handle, self._repo_name)
        for entry in entries:
            if entry.get("type") != "file":
                continue
            content = await self._github.get_file_content(handle, self._repo_name, entry["path"])
            if code in content:
                return True
        return False

    async def check_gist(self, handle: str, code: str) -> bool:
        gists = await self._github.list_gists(handle)
        for summary in gists:
            owner = (summary.get("owner") or {}).get("login")
            if not _same_login(owner, handle):
                continue

            gist = await self._github.get_gist(summary["id"])
            for gist_file in (gist.get("files") or {}).values():
                if not gist_file:
                    continue
                content = gist_file.get("content") or ""
                if gist_file.get("truncated") and gist_file.get("raw_url"):
                    content = await self._github.get_raw(gist_file["raw_url"])
                if code in content:
                    return True
        return False
