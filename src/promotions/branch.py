"""Promotion branch acquisition.

The branch a promotion commits to is derived from remote truth on every
run. If the pull request recorded in status is still open, its head
branch is fetched and force-checked-out, discarding anything local. If
not, a fresh timestamped branch is created from the target's configured
branch. The recorded number alone is never trusted: requests can be
merged, closed or retargeted out of band between reconciles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from git import GitCommandError

from .config import DEFAULT_BRANCH_PREFIX
from .errors import CheckoutError, CloneError
from .gateway import PullRequest, PullRequestProvider, RepositoryRef
from .workspace import REMOTE_NAME, Workspace

logger = logging.getLogger(__name__)

BRANCH_TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"

# Remote branches land in remote-tracking refs so the checked-out branch is
# never the destination of the fetch.
FETCH_REFSPECS = (
    f"+refs/heads/*:refs/remotes/{REMOTE_NAME}/*",
    "+refs/tags/*:refs/tags/*",
)


@dataclass(frozen=True)
class AcquiredBranch:
    """The branch the current attempt commits to."""

    name: str
    pull_request: PullRequest | None = None

    @property
    def resumed(self) -> bool:
        """True when an open pull request's branch is being resumed."""
        return self.pull_request is not None


def is_request_open(recorded_number: int, open_requests: list[PullRequest]) -> bool:
    """True when a recorded pull request number is still in the live open list."""
    if recorded_number == 0:
        return False
    return any(pr.number == recorded_number for pr in open_requests)


def new_branch_name(
    promotion_name: str,
    now: datetime | None = None,
    prefix: str = DEFAULT_BRANCH_PREFIX,
) -> str:
    """Branch name for a fresh promotion, sortable to the second (UTC)."""
    moment = (now or datetime.now(UTC)).astimezone(UTC)
    return f"{prefix}/{promotion_name}-{moment.strftime(BRANCH_TIMESTAMP_FORMAT)}"


def fetch_all(workspace: Workspace) -> None:
    """Fetch every remote branch and tag into the workspace.

    Raises:
        CloneError: If the fetch fails.
    """
    try:
        workspace.repo.git.fetch(REMOTE_NAME, *FETCH_REFSPECS, "--prune")
    except GitCommandError as e:
        raise CloneError(
            f"Failed to fetch {workspace.credentials.clone_url}: {e.stderr.strip() or e}"
        ) from e


def checkout_remote_branch(workspace: Workspace, branch: str) -> None:
    """Force the local branch to the remote branch's head and check it out.

    Raises:
        CheckoutError: If the remote branch does not exist or checkout fails.
    """
    try:
        workspace.repo.git.checkout("--force", "-B", branch, f"{REMOTE_NAME}/{branch}")
    except GitCommandError as e:
        raise CheckoutError(f"Failed to check out branch {branch}: {e.stderr.strip() or e}") from e


def create_branch(workspace: Workspace, branch: str) -> None:
    """Create and check out a new branch at the current HEAD.

    Raises:
        CheckoutError: If the branch cannot be created.
    """
    try:
        workspace.repo.git.checkout("-b", branch)
    except GitCommandError as e:
        raise CheckoutError(f"Failed to create branch {branch}: {e.stderr.strip() or e}") from e


def acquire_branch(
    workspace: Workspace,
    promotion_name: str,
    recorded_number: int,
    provider: PullRequestProvider,
    repo: RepositoryRef,
    open_requests: list[PullRequest],
    *,
    now: datetime | None = None,
    prefix: str = DEFAULT_BRANCH_PREFIX,
) -> AcquiredBranch:
    """Resume the open pull request's branch or start a new one.

    Args:
        workspace: Target environment workspace.
        promotion_name: Name of the promotion, used for fresh branch names.
        recorded_number: lastPullRequestNumber from the promotion's status.
        provider: Provider used to fetch the open pull request.
        repo: Target repository on the provider.
        open_requests: Live list of open pull requests.
        now: Clock override for branch names.
        prefix: Prefix for fresh branch names.

    Raises:
        ProviderError: If the open pull request cannot be fetched.
        CloneError: If fetching remote refs fails.
        CheckoutError: If the branch cannot be checked out or created.
    """
    if is_request_open(recorded_number, open_requests):
        pull_request = provider.get(repo, recorded_number)
        branch = pull_request.source_branch

        fetch_all(workspace)
        checkout_remote_branch(workspace, branch)

        logger.info(
            "Resuming open pull request branch",
            extra={"promotion": promotion_name, "branch": branch, "pr_number": recorded_number},
        )
        return AcquiredBranch(name=branch, pull_request=pull_request)

    branch = new_branch_name(promotion_name, now=now, prefix=prefix)
    create_branch(workspace, branch)

    logger.info(
        "Created promotion branch",
        extra={
            "promotion": promotion_name,
            "branch": branch,
            "recorded_pr_number": recorded_number,
        },
    )
    return AcquiredBranch(name=branch)
