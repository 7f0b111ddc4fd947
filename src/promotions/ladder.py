"""Per-operation commit and push for promotions.

After each copy operation the target working tree is inspected. A clean
tree means the operation is already converged and nothing is recorded.
A dirty tree is staged, committed as the bot identity and pushed at once,
so the work of every completed operation is durable on the remote branch
even if a later operation fails. The next attempt resumes that branch and
finds those paths clean.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from git import GitCommandError

from .config import DEFAULT_COMMIT_MESSAGE_TEMPLATE, CommitIdentity
from .errors import CommitError, PushError
from .models import CopyOperation
from .workspace import REMOTE_NAME, Workspace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitContext:
    """Fields available to the commit message template."""

    promotion: str
    source_env: str
    target_env: str
    source_sha: str

    def render(self, template: str, operation: CopyOperation) -> str:
        return template.format(
            promotion=self.promotion,
            operation=operation.name,
            source_env=self.source_env,
            target_env=self.target_env,
            source_sha=self.source_sha,
        )


@dataclass
class ChangeLadder:
    """Commits and pushes the target workspace after each dirty copy operation."""

    workspace: Workspace
    branch: str
    context: CommitContext
    identity: CommitIdentity = field(default_factory=CommitIdentity)
    template: str = DEFAULT_COMMIT_MESSAGE_TEMPLATE
    push: bool = True
    promoted: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    head_before: str = ""
    head_after: str = ""

    def step(self, operation: CopyOperation) -> bool:
        """Commit and push the changes produced by one operation.

        Returns:
            True if the operation produced a commit, False if the tree was clean.

        Raises:
            CommitError: If staging or committing fails.
            PushError: If pushing the branch fails.
        """
        if not self.workspace.is_dirty():
            logger.info(
                "Copy operation produced no changes",
                extra={"operation": operation.name, "branch": self.branch},
            )
            return False

        message = self.context.render(self.template, operation)
        sha = self._commit(message)
        if self.push:
            self._push()

        self.promoted.append(operation.name)
        self.commits.append(sha)

        logger.info(
            "Committed copy operation",
            extra={
                "operation": operation.name,
                "branch": self.branch,
                "commit": sha[:7],
                "pushed": self.push,
            },
        )
        return True

    def _commit(self, message: str) -> str:
        repo = self.workspace.repo
        identity_env = {
            "GIT_AUTHOR_NAME": self.identity.name,
            "GIT_AUTHOR_EMAIL": self.identity.email,
            "GIT_COMMITTER_NAME": self.identity.name,
            "GIT_COMMITTER_EMAIL": self.identity.email,
        }
        try:
            repo.git.add("--all")
            with repo.git.custom_environment(**identity_env):
                repo.git.commit("--no-verify", "--no-gpg-sign", "-m", message)
        except GitCommandError as e:
            raise CommitError(f"Failed to commit on {self.branch}: {e.stderr.strip() or e}") from e
        return repo.head.commit.hexsha

    def _push(self) -> None:
        try:
            self.workspace.repo.git.push(REMOTE_NAME, f"HEAD:refs/heads/{self.branch}")
        except GitCommandError as e:
            raise PushError(
                f"Failed to push {self.branch} to {self.workspace.credentials.clone_url}: "
                f"{e.stderr.strip() or e}"
            ) from e
