"""Async client for the GitHub REST and GraphQL APIs.

Covers exactly the calls the verification pipeline needs:

  1. Public user profile (bio, creation date, follower / repo counts).
  2. A named repository, its root listing, and individual file contents.
  3. Public gists for a user and the files of a single gist.
  4. The yearly contribution total (GraphQL ``contributionsCollection``).

Every call is a single request with a bounded timeout.  Nothing is
retried or cached here: reputation signals must reflect current state,
and ownership proofs must see what is published *now*.  Non-2xx
responses raise :class:`GitHubAPIError` (404 raises
:class:`GitHubNotFoundError`) so callers can decide how to degrade.
"""

from __future__ import annotations

import base64
from typing import Any, Final

import httpx
import structlog

from src.services.verification.exceptions import GitHubAPIError, GitHubNotFoundError

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_URL: Final[str] = "https://api.github.com"
API_VERSION: Final[str] = "2022-11-28"

_CONTRIBUTIONS_QUERY: Final[str] = """
query($username: String!) {
  user(login: $username) {
    contributionsCollection {
      totalContributions
    }
  }
}
"""


# ---------------------------------------------------------------------------
# GitHubClient
# ---------------------------------------------------------------------------


class GitHubClient:
    """Thin async wrapper over the GitHub API.

    Parameters
    ----------
    token:
        Personal access / app token.  Empty string issues anonymous
        requests (60 req/h rate limit; the GraphQL API requires a token).
    base_url:
        API root, overridable for GitHub Enterprise.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional custom transport (used by tests).
    """

    def __init__(
        self,
        token: str = "",
        *,
        base_url: str = BASE_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
            "User-Agent": "MentorGate/1.0 (mentor verification)",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            follow_redirects=True,
            limits=httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
            ),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, **params: Any) -> Any:
        response = await self._client.get(path, params=params or None)
        if response.status_code == 404:
            raise GitHubNotFoundError(404, path)
        if response.status_code != 200:
            logger.warning(
                "github.http_error",
                status=response.status_code,
                path=path,
            )
            raise GitHubAPIError(response.status_code, path)
        return response.json()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, username: str) -> dict[str, Any]:
        """Fetch the public profile of *username*.

        Returns the raw API payload; relevant keys are ``login``,
        ``bio``, ``created_at``, ``followers`` and ``public_repos``.
        """
        return await self._get_json(f"/users/{username}")

    async def get_contribution_count(self, username: str) -> int:
        """Return the contribution total for the last year via GraphQL."""
        response = await self._client.post(
            "/graphql",
            json={"query": _CONTRIBUTIONS_QUERY, "variables": {"username": username}},
        )
        if response.status_code != 200:
            raise GitHubAPIError(response.status_code, "/graphql")

        payload = response.json()
        if payload.get("errors"):
            logger.warning(
                "github.graphql_errors",
                username=username,
                errors=[e.get("message") for e in payload["errors"]],
            )
        user = (payload.get("data") or {}).get("user") or {}
        collection = user.get("contributionsCollection") or {}
        return int(collection.get("totalContributions") or 0)

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def get_repo(self, owner: str, repo: str) -> dict[str, Any]:
        return await self._get_json(f"/repos/{owner}/{repo}")

    async def list_root_contents(self, owner: str, repo: str) -> list[dict[str, Any]]:
        """List root-level entries of a repository's default branch."""
        contents = await self._get_json(f"/repos/{owner}/{repo}/contents/")
        return contents if isinstance(contents, list) else [contents]

    async def get_file_content(self, owner: str, repo: str, path: str) -> str:
        """Fetch and decode a single file's content."""
        data = await self._get_json(f"/repos/{owner}/{repo}/contents/{path}")
        if not isinstance(data, dict) or "content" not in data:
            return ""
        if data.get("encoding", "base64") != "base64":
            return str(data["content"])
        return base64.b64decode(data["content"]).decode("utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Gists
    # ------------------------------------------------------------------

    async def list_gists(self, username: str) -> list[dict[str, Any]]:
        return await self._get_json(f"/users/{username}/gists", per_page=100)

    async def get_gist(self, gist_id: str) -> dict[str, Any]:
        return await self._get_json(f"/gists/{gist_id}")

    async def get_raw(self, url: str) -> str:
        """Fetch a raw file URL (used for truncated gist files)."""
        response = await self._client.get(url)
        if response.status_code != 200:
            raise GitHubAPIError(response.status_code, url)
        return response.text
