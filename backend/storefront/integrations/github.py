"""
GitHub repository invites.

PUT /repos/{owner}/{repo}/collaborators/{username} creates (or re-sends) an
invitation (201); 204 means the user is already a collaborator.
"""
from __future__ import annotations

import logging

import httpx

from storefront.api.errors import IdempotencyNoOp, TerminalRejection, TransientDependencyError
from storefront.core.config import settings

logger = logging.getLogger(__name__)

_COLLABORATOR_PATH = "/repos/{repo}/collaborators/{username}"


class GitHubClient:
    def __init__(self) -> None:
        self._base_url = settings.GITHUB_API_BASE_URL.rstrip("/")
        self._token = settings.GITHUB_TOKEN

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise TerminalRejection("GITHUB_TOKEN not configured")
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def invite_collaborator(self, *, repo: str, username: str, permission: str | None = None) -> None:
        """
        Invite ``username`` to ``repo`` ("owner/name").

        Raises:
            IdempotencyNoOp: the user already has access
            TerminalRejection: unknown user or repository, invalid request
            TransientDependencyError: network failure, 5xx, rate limited
        """
        url = self._base_url + _COLLABORATOR_PATH.format(repo=repo, username=username)
        payload = {"permission": permission or settings.GITHUB_INVITE_PERMISSION}
        try:
            with httpx.Client(timeout=20) as client:
                r = client.put(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransientDependencyError(f"GitHub unreachable: {e}")

        if r.status_code == 201:
            logger.info(f"Invited {username} to {repo}")
            return
        if r.status_code == 204:
            raise IdempotencyNoOp(f"{username} is already a collaborator on {repo}")
        if r.status_code >= 500 or r.status_code == 429:
            raise TransientDependencyError(f"GitHub error {r.status_code}")
        if r.status_code == 403 and r.headers.get("x-ratelimit-remaining") == "0":
            raise TransientDependencyError("GitHub rate limit exhausted")
        raise TerminalRejection(f"GitHub refused invite of {username} to {repo} ({r.status_code})")


def get_github_client() -> GitHubClient:
    return GitHubClient()
