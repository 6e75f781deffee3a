"""Repository discovery across GitHub affiliation scopes.

A user's accessible repositories are the union of what they own, what they
collaborate on, and what their organizations expose. Each scope is queried
separately (plus a combined query that catches anything the individual
scopes miss) and the results are merged by provider ID so every repository
appears once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from repomirror.errors import ProviderError

from .api_client import GitHubAPIClient
from .models import RemoteRepository
from .payloads import RepositoryPayload
from .retry import RetryPolicy, call_with_retry
from .store import MirrorStore

logger = logging.getLogger(__name__)

AFFILIATIONS = (
    "owner",
    "collaborator",
    "organization_member",
    "owner,collaborator,organization_member",
)


@dataclass
class DiscoveryResult:
    """Outcome of one discovery run.

    ``repositories`` holds fresh provider payloads keyed out by ID. When the
    token could not be validated it is empty and ``cached`` carries the
    records already stored for the user.
    """

    repositories: List[RepositoryPayload] = field(default_factory=list)
    cached: List[RemoteRepository] = field(default_factory=list)
    token_valid: bool = True
    failed_affiliations: List[str] = field(default_factory=list)


@dataclass
class RepositoryDiscovery:
    """Enumerates every repository a token can reach."""

    client: GitHubAPIClient
    store: MirrorStore
    retry_policy: Optional[RetryPolicy] = None
    page_size: int = 100

    def discover_accessible_repositories(self, user_id: str, token: Optional[str]) -> DiscoveryResult:
        """Discover repositories for ``user_id``.

        Never raises for provider failures: an invalid token degrades to the
        local cache, a failed affiliation query is skipped.

        Args:
            user_id: Local user whose token is used
            token: GitHub access token

        Returns:
            DiscoveryResult with de-duplicated repositories
        """
        try:
            account = call_with_retry(
                self.client.get_authenticated_user, token, policy=self.retry_policy
            )
        except ProviderError as exc:
            logger.warning(
                f"Token validation failed for user {user_id}, returning cached repositories: {exc.code}",
                extra={"user_id": user_id, "error_code": exc.code},
            )
            return DiscoveryResult(
                cached=self.store.list_repositories(owner_id=user_id),
                token_valid=False,
            )

        merged: Dict[int, RepositoryPayload] = {}
        failed: List[str] = []
        for affiliation in AFFILIATIONS:
            try:
                found = call_with_retry(
                    self.client.list_user_repositories,
                    token,
                    affiliation,
                    per_page=self.page_size,
                    policy=self.retry_policy,
                )
            except ProviderError as exc:
                logger.warning(
                    f"Affiliation query '{affiliation}' failed for user {user_id}: {exc}",
                    extra={"user_id": user_id, "affiliation": affiliation, "error_code": exc.code},
                )
                failed.append(affiliation)
                continue
            for repository in found:
                merged.setdefault(repository.id, repository)
            logger.debug(
                f"Affiliation '{affiliation}' returned {len(found)} repositories",
                extra={"user_id": user_id, "affiliation": affiliation},
            )

        logger.info(
            f"Discovered {len(merged)} repositories for {account.login}",
            extra={"user_id": user_id, "count": len(merged)},
        )
        return DiscoveryResult(
            repositories=list(merged.values()),
            failed_affiliations=failed,
        )


def repository_from_payload(payload: RepositoryPayload, owner_id: str) -> RemoteRepository:
    """Map a provider payload onto a local record owned by ``owner_id``."""
    return RemoteRepository(
        github_id=payload.id,
        full_name=payload.full_name,
        name=payload.name,
        owner_login=payload.owner.login,
        owner_id=owner_id,
        description=payload.description,
        is_private=payload.private,
        visibility=payload.visibility,
        default_branch=payload.default_branch,
        html_url=payload.html_url,
        clone_url=payload.clone_url,
        language=payload.language,
        stargazers_count=payload.stargazers_count,
        forks_count=payload.forks_count,
        watchers_count=payload.watchers_count,
        open_issues_count=payload.open_issues_count,
        size=payload.size,
        archived=payload.archived,
        disabled=payload.disabled,
        fork=payload.fork,
        has_issues=payload.has_issues,
        has_projects=payload.has_projects,
        has_wiki=payload.has_wiki,
        has_pages=payload.has_pages,
        has_downloads=payload.has_downloads,
        license_name=payload.license.name if payload.license else None,
        topics=list(payload.topics),
        created_at=payload.created_at,
        updated_at=payload.updated_at,
        pushed_at=payload.pushed_at,
    )


__all__ = [
    "AFFILIATIONS",
    "DiscoveryResult",
    "RepositoryDiscovery",
    "repository_from_payload",
]
