"""GitHub REST client used by discovery, sync, and webhook management.

This module wraps :mod:`requests` with bearer authentication, explicit
timeouts, and a single place where non-2xx responses are classified into the
typed errors of :mod:`repomirror.errors`. It deliberately performs no
retries; callers decide via :func:`repomirror.github.retry.call_with_retry`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests

from repomirror.errors import (
    AuthError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ProviderHTTPError,
    RateLimitedError,
    TransientNetworkError,
)

from .payloads import (
    BranchPayload,
    CollaboratorPayload,
    CommitPayload,
    ContentEntryPayload,
    HookPayload,
    RefPayload,
    RepositoryPayload,
    UserPayload,
)

if TYPE_CHECKING:
    from repomirror.configuration.settings import ProviderSettings

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.github.com"
DEFAULT_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# GitHub API Client
# ---------------------------------------------------------------------------


@dataclass
class GitHubAPIClient:
    """Thin, typed GitHub REST client.

    The token is passed per call because one process serves many users.
    """

    api_base_url: str = DEFAULT_API_BASE_URL
    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    user_agent: str = "repomirror"
    session: requests.Session = field(default_factory=requests.Session)

    def __post_init__(self) -> None:
        self.api_base_url = self.api_base_url.rstrip("/")
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": self.user_agent,
            }
        )

    # -- generic -----------------------------------------------------------

    def call(
        self,
        method: str,
        path: str,
        token: Optional[str],
        body: Optional[Dict[str, Any]] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute one authenticated request.

        Args:
            method: HTTP method
            path: API path relative to the base URL (e.g. ``repos/o/r``)
            token: User access token
            body: Optional JSON body
            params: Optional query parameters

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            AuthError: 401 or missing token
            NotFoundError: 404
            RateLimitedError: 429, or 403 with an exhausted rate limit
            ForbiddenError: other 403
            TransientNetworkError: connection failure or timeout
            ProviderHTTPError: any other non-2xx status
        """
        if not token:
            raise AuthError("No GitHub token available", path=path)

        url = f"{self.api_base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except requests.Timeout as exc:
            raise TransientNetworkError(
                f"GitHub request timed out: {method} {path}", path=path
            ) from exc
        except requests.RequestException as exc:
            raise TransientNetworkError(
                f"GitHub request failed: {method} {path}: {exc}", path=path
            ) from exc

        if response.status_code >= 400:
            logger.debug(
                f"GitHub {method} {path} returned {response.status_code}",
                extra={"path": path, "status_code": response.status_code},
            )
            raise self._classify(response, path)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderHTTPError(
                f"GitHub returned invalid JSON for {path}",
                status_code=response.status_code,
                path=path,
            ) from exc

    def paginate(
        self,
        path: str,
        token: Optional[str],
        *,
        params: Optional[Dict[str, Any]] = None,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> Iterator[Dict[str, Any]]:
        """Yield list items page by page until a short page ends the listing."""
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per_page": per_page, "page": page})
            items = self.call("GET", path, token, params=query) or []
            yield from items
            if len(items) < per_page:
                return
            page += 1

    # -- typed endpoints -----------------------------------------------------

    def get_authenticated_user(self, token: str) -> UserPayload:
        return UserPayload.model_validate(self.call("GET", "user", token))

    def list_user_repositories(
        self, token: str, affiliation: str, *, per_page: int = DEFAULT_PAGE_SIZE
    ) -> List[RepositoryPayload]:
        """List repositories visible to the token for one affiliation query."""
        params = {"affiliation": affiliation, "visibility": "all", "sort": "updated"}
        return [
            RepositoryPayload.model_validate(item)
            for item in self.paginate("user/repos", token, params=params, per_page=per_page)
        ]

    def get_repository(self, token: str, full_name: str) -> RepositoryPayload:
        return RepositoryPayload.model_validate(
            self.call("GET", f"repos/{full_name}", token)
        )

    def get_languages(self, token: str, full_name: str) -> Dict[str, int]:
        return dict(self.call("GET", f"repos/{full_name}/languages", token) or {})

    def list_branches(self, token: str, full_name: str) -> List[BranchPayload]:
        return [
            BranchPayload.model_validate(item)
            for item in self.paginate(f"repos/{full_name}/branches", token)
        ]

    def list_commits(
        self,
        token: str,
        full_name: str,
        *,
        sha: Optional[str] = None,
        path: Optional[str] = None,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> List[CommitPayload]:
        """Fetch a single bounded page of commits, newest first."""
        params: Dict[str, Any] = {"per_page": per_page}
        if sha:
            params["sha"] = sha
        if path:
            params["path"] = path
        data = self.call("GET", f"repos/{full_name}/commits", token, params=params) or []
        return [CommitPayload.model_validate(item) for item in data]

    def get_commit(self, token: str, full_name: str, sha: str) -> CommitPayload:
        return CommitPayload.model_validate(
            self.call("GET", f"repos/{full_name}/commits/{sha}", token)
        )

    def get_contents(
        self, token: str, full_name: str, path: str, ref: str
    ) -> List[ContentEntryPayload]:
        """List a directory (or wrap a single file) at ``path`` on ``ref``."""
        data = self.call(
            "GET",
            f"repos/{full_name}/contents/{quote(path, safe='/')}",
            token,
            params={"ref": ref},
        )
        if isinstance(data, dict):
            data = [data]
        return [ContentEntryPayload.model_validate(item) for item in data or []]

    def get_file(
        self, token: str, full_name: str, path: str, ref: str
    ) -> ContentEntryPayload:
        """Fetch a single file including its base64 ``content``."""
        data = self.call(
            "GET",
            f"repos/{full_name}/contents/{quote(path, safe='/')}",
            token,
            params={"ref": ref},
        )
        return ContentEntryPayload.model_validate(data)

    def list_collaborators(self, token: str, full_name: str) -> List[CollaboratorPayload]:
        return [
            CollaboratorPayload.model_validate(item)
            for item in self.paginate(f"repos/{full_name}/collaborators", token)
        ]

    def create_hook(
        self,
        token: str,
        full_name: str,
        *,
        url: str,
        secret: str,
        events: List[str],
    ) -> HookPayload:
        body = {
            "name": "web",
            "active": True,
            "events": list(events),
            "config": {
                "url": url,
                "content_type": "json",
                "secret": secret,
                "insecure_ssl": "0",
            },
        }
        return HookPayload.model_validate(
            self.call("POST", f"repos/{full_name}/hooks", token, body)
        )

    def delete_hook(self, token: str, full_name: str, hook_id: str) -> None:
        self.call("DELETE", f"repos/{full_name}/hooks/{hook_id}", token)

    def get_tag_ref(self, token: str, full_name: str, tag: str) -> RefPayload:
        return RefPayload.model_validate(
            self.call("GET", f"repos/{full_name}/git/refs/tags/{quote(tag, safe='')}", token)
        )

    # -- helpers -------------------------------------------------------------

    def _classify(self, response: requests.Response, path: str) -> ProviderError:
        status = response.status_code
        message = _error_message(response) or f"GitHub API error {status}"

        if status == 401:
            return AuthError(message, status_code=status, path=path)
        if status == 404:
            return NotFoundError(message, status_code=status, path=path)
        if status == 429 or (status == 403 and _is_rate_limited(response, message)):
            return RateLimitedError(
                message,
                retry_after=_retry_after(response),
                status_code=status,
                path=path,
            )
        if status == 403:
            return ForbiddenError(message, status_code=status, path=path)
        return ProviderHTTPError(message, status_code=status, path=path)


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _error_message(response: requests.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        return data.get("message")
    return None


def _is_rate_limited(response: requests.Response, message: str) -> bool:
    if response.headers.get("X-RateLimit-Remaining") == "0":
        return True
    if "Retry-After" in response.headers:
        return True
    return "rate limit" in message.lower()


def _retry_after(response: requests.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if header is not None:
        try:
            return float(header)
        except ValueError:
            pass
    reset = response.headers.get("X-RateLimit-Reset")
    if reset is not None:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Convenience functions
# ---------------------------------------------------------------------------


def create_api_client(settings: "ProviderSettings") -> GitHubAPIClient:
    """Create a client from provider settings."""
    return GitHubAPIClient(
        api_base_url=settings.api_base_url,
        connect_timeout=settings.connect_timeout,
        read_timeout=settings.read_timeout,
        user_agent=settings.user_agent,
    )


__all__ = [
    "DEFAULT_API_BASE_URL",
    "DEFAULT_PAGE_SIZE",
    "GitHubAPIClient",
    "create_api_client",
]
