"""Pull request gateway for git hosting providers.

The engine talks to providers only through PullRequestProvider:
list open pull requests, fetch one, create one and edit its title.
Every call is a synchronous remote call; nothing is cached beyond the
reconcile attempt that made it.

Providers are selected by name through the PROVIDERS registry. An unknown
or missing provider name fails fast instead of producing a client that
cannot do anything.

Implementations:
- GitHubProvider: GitHub and GitHub Enterprise REST API (httpx)
- MockPullRequestProvider: In-memory provider for tests and local runs
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

GITHUB_API_BASE = "https://api.github.com"
GITHUB_PUBLIC_HOST = "github.com"

# Page size for list calls (GitHub maximum)
LIST_PAGE_SIZE = 100
# Stop paginating after this many pages
MAX_LIST_PAGES = 10

_HTTPS_REPO_PATTERN = re.compile(
    r"^(?:https?|ssh)://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/(?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$"
)
_SCP_REPO_PATTERN = re.compile(
    r"^(?:[^@/]+@)?(?P<host>[^/:]+):(?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$"
)
# Local remotes: the last two path segments name owner and repository
_FILE_REPO_PATTERN = re.compile(
    r"^(?:file://(?P<host>[^/]*))?/(?:.*/)?(?P<owner>[^/]+)/(?P<name>[^/]+?)(?:\.git)?/?$"
)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class RepositoryRef:
    """An organization/user repository on a git hosting provider."""

    host: str
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_url(cls, url: str) -> RepositoryRef:
        """Parse a repository reference from an HTTPS, SSH or local file URL.

        Raises:
            ProviderError: If the URL does not identify an owner/name repository.
        """
        match = (
            _HTTPS_REPO_PATTERN.match(url)
            or _SCP_REPO_PATTERN.match(url)
            or _FILE_REPO_PATTERN.match(url)
        )
        if match is None:
            raise ProviderError(f"Cannot parse organization repository from URL: {url}")
        return cls(
            host=match.group("host") or "localhost",
            owner=match.group("owner"),
            name=match.group("name"),
        )


@dataclass
class PullRequest:
    """Cached view of a provider-owned pull request."""

    number: int
    url: str
    source_branch: str
    target_branch: str
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/API."""
        return {
            "number": self.number,
            "url": self.url,
            "source_branch": self.source_branch,
            "target_branch": self.target_branch,
            "title": self.title,
        }


# =============================================================================
# Provider Interface
# =============================================================================


class PullRequestProvider:
    """Abstract interface for pull request operations on one provider."""

    name = "abstract"

    def list(self, repo: RepositoryRef) -> list[PullRequest]:
        """List open pull requests of a repository."""
        raise NotImplementedError

    def get(self, repo: RepositoryRef, number: int) -> PullRequest:
        """Fetch one pull request by number."""
        raise NotImplementedError

    def create(
        self,
        repo: RepositoryRef,
        title: str,
        head: str,
        base: str,
        body: str = "",
    ) -> PullRequest:
        """Open a pull request from head into base."""
        raise NotImplementedError

    def edit(self, repo: RepositoryRef, number: int, title: str) -> PullRequest:
        """Change the title of an existing pull request."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any connections held by the provider."""


# =============================================================================
# GitHub
# =============================================================================


def github_api_base(host: str, override: str | None = None) -> str:
    """API base URL for github.com or a GitHub Enterprise host."""
    if override:
        return override.rstrip("/")
    if host in (GITHUB_PUBLIC_HOST, f"www.{GITHUB_PUBLIC_HOST}"):
        return GITHUB_API_BASE
    return f"https://{host}/api/v3"


def _auth_headers(token: str) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class GitHubProvider(PullRequestProvider):
    """GitHub REST API implementation of PullRequestProvider."""

    name = "github"

    def __init__(
        self,
        token: str,
        *,
        api_url: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_url = api_url
        self._client = httpx.Client(
            headers=_auth_headers(token),
            timeout=timeout_seconds,
            transport=transport,
        )

    def _url(self, repo: RepositoryRef, suffix: str = "") -> str:
        base = github_api_base(repo.host, self._api_url)
        return f"{base}/repos/{repo.owner}/{repo.name}/pulls{suffix}"

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"GitHub request {method} {url} failed: {e}") from e

        if response.is_error:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise ProviderError(
                f"GitHub API {method} {url} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _to_pull_request(data: dict[str, Any]) -> PullRequest:
        try:
            return PullRequest(
                number=int(data["number"]),
                url=data.get("html_url", ""),
                source_branch=data["head"]["ref"],
                target_branch=data["base"]["ref"],
                title=data.get("title", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Unexpected pull request payload from GitHub: {e}") from e

    def list(self, repo: RepositoryRef) -> list[PullRequest]:
        pulls: list[PullRequest] = []
        for page in range(1, MAX_LIST_PAGES + 1):
            response = self._request(
                "GET",
                self._url(repo),
                params={"state": "open", "per_page": LIST_PAGE_SIZE, "page": page},
            )
            data = response.json()
            if not isinstance(data, list):
                raise ProviderError(f"Unexpected pull request list payload for {repo.full_name}")
            pulls.extend(self._to_pull_request(item) for item in data)
            if len(data) < LIST_PAGE_SIZE:
                break
        return pulls

    def get(self, repo: RepositoryRef, number: int) -> PullRequest:
        response = self._request("GET", self._url(repo, f"/{number}"))
        return self._to_pull_request(response.json())

    def create(
        self,
        repo: RepositoryRef,
        title: str,
        head: str,
        base: str,
        body: str = "",
    ) -> PullRequest:
        response = self._request(
            "POST",
            self._url(repo),
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return self._to_pull_request(response.json())

    def edit(self, repo: RepositoryRef, number: int, title: str) -> PullRequest:
        response = self._request("PATCH", self._url(repo, f"/{number}"), json={"title": title})
        return self._to_pull_request(response.json())

    def close(self) -> None:
        self._client.close()


# =============================================================================
# In-memory provider
# =============================================================================


@dataclass
class _MockRepository:
    pulls: dict[int, PullRequest] = field(default_factory=dict)
    open_numbers: set[int] = field(default_factory=set)


class MockPullRequestProvider(PullRequestProvider):
    """In-memory provider for testing and local dry runs."""

    name = "mock"

    def __init__(self, *, base_url: str = "https://git.example.com") -> None:
        self._base_url = base_url
        self._repos: dict[str, _MockRepository] = {}
        self._next_number = 1
        self.calls: list[tuple[str, int | None]] = []

    def _repo(self, repo: RepositoryRef) -> _MockRepository:
        return self._repos.setdefault(repo.full_name, _MockRepository())

    def list(self, repo: RepositoryRef) -> list[PullRequest]:
        self.calls.append(("list", None))
        state = self._repo(repo)
        return [state.pulls[n] for n in sorted(state.open_numbers)]

    def get(self, repo: RepositoryRef, number: int) -> PullRequest:
        self.calls.append(("get", number))
        state = self._repo(repo)
        if number not in state.pulls:
            raise ProviderError(f"Pull request #{number} not found", status_code=404)
        return state.pulls[number]

    def create(
        self,
        repo: RepositoryRef,
        title: str,
        head: str,
        base: str,
        body: str = "",
    ) -> PullRequest:
        state = self._repo(repo)
        number = self._next_number
        self._next_number += 1
        self.calls.append(("create", number))
        pull = PullRequest(
            number=number,
            url=f"{self._base_url}/{repo.full_name}/pull/{number}",
            source_branch=head,
            target_branch=base,
            title=title,
        )
        state.pulls[number] = pull
        state.open_numbers.add(number)
        return pull

    def edit(self, repo: RepositoryRef, number: int, title: str) -> PullRequest:
        self.calls.append(("edit", number))
        pull = self.get(repo, number)
        pull.title = title
        return pull

    def close_pull_request(self, repo: RepositoryRef, number: int) -> None:
        """Simulate a pull request being closed or merged out of band."""
        self._repo(repo).open_numbers.discard(number)

    def pull_requests(self, repo: RepositoryRef) -> list[PullRequest]:
        """All pull requests ever created in a repository, open or not."""
        state = self._repo(repo)
        return [state.pulls[n] for n in sorted(state.pulls)]

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


# =============================================================================
# Registry
# =============================================================================

PROVIDERS: dict[str, type[PullRequestProvider]] = {
    GitHubProvider.name: GitHubProvider,
}


def create_provider(
    name: str | None,
    token: str,
    *,
    api_url: str | None = None,
    timeout_seconds: float = 30.0,
) -> PullRequestProvider:
    """Create a provider client by registry name.

    Raises:
        ProviderError: If the name is empty or not registered.
    """
    if not name:
        raise ProviderError("No git provider configured for target environment")
    provider_class = PROVIDERS.get(name.lower())
    if provider_class is None:
        raise ProviderError(f"Unknown git provider '{name}'. Supported: {sorted(PROVIDERS)}")
    return provider_class(token, api_url=api_url, timeout_seconds=timeout_seconds)
