"""Ephemeral git workspaces for environments.

Each reconcile attempt clones every environment it touches into its own
temporary directory. The directory is owned by that attempt alone and is
removed on every exit path, so no local state ever survives into the
next attempt.

Layout of one workspace:
    <tmp>/repo/         the clone
    <tmp>/ssh/id_key    SSH private key (0600), when SSH is used
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import git
from git import GitCommandError, Repo

from .copier import secure_join
from .credentials import GitCredentials
from .errors import CloneError
from .models import Environment, Resource

logger = logging.getLogger(__name__)

REMOTE_NAME = "origin"
SHORT_SHA_LENGTH = 7


@dataclass
class Workspace:
    """A cloned environment repository scoped to one reconcile attempt."""

    environment: Environment
    root: Path
    repo_path: Path
    repo: Repo
    credentials: GitCredentials
    env: dict[str, str]

    @property
    def environment_root(self) -> Path:
        """The environment's configured path inside the clone.

        Raises:
            PathEscapeError: If the path resolves outside the clone.
        """
        return secure_join(self.repo_path, self.environment.spec.path)

    @property
    def head_sha(self) -> str:
        return self.repo.head.commit.hexsha

    @property
    def short_sha(self) -> str:
        return self.head_sha[:SHORT_SHA_LENGTH]

    def is_dirty(self) -> bool:
        """True when the working tree has staged, unstaged or untracked changes."""
        return self.repo.is_dirty(index=True, working_tree=True, untracked_files=True)


def workspace_prefix(owner: Resource) -> str:
    """Temp directory prefix derived from the owning object's identity."""
    return f"{owner.kind.lower()}-{owner.namespace}-{owner.name}-"


def _materialize_key(root: Path, credentials: GitCredentials) -> Path | None:
    if credentials.private_key is None:
        return None

    ssh_dir = root / "ssh"
    ssh_dir.mkdir(mode=0o700)
    key_path = ssh_dir / "id_key"
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        key = credentials.private_key
        f.write(key if key.endswith(b"\n") else key + b"\n")
    return key_path


@contextmanager
def provision(
    owner: Resource,
    environment: Environment,
    credentials: GitCredentials,
    workspace_root: Path | None = None,
) -> Iterator[Workspace]:
    """Clone an environment into a fresh temporary workspace.

    The workspace directory is removed when the context exits, whether
    the body returned normally, returned early or raised.

    Args:
        owner: Object the workspace belongs to; names the temp directory.
        environment: Environment whose repository is cloned.
        credentials: Resolved clone URL and authentication.
        workspace_root: Parent directory for the workspace (default: system temp).

    Raises:
        CloneError: If the clone fails (network, auth or missing branch).
    """
    root = Path(tempfile.mkdtemp(prefix=workspace_prefix(owner), dir=workspace_root))
    try:
        key_path = _materialize_key(root, credentials)
        env = credentials.git_env(key_path)
        repo_path = root / "repo"

        logger.info(
            "Cloning environment",
            extra={
                "environment": environment.name,
                "namespace": environment.namespace,
                "branch": environment.branch,
                "clone_url": credentials.clone_url,
            },
        )
        try:
            with git.Git().custom_environment(**env):
                repo = Repo.clone_from(
                    credentials.clone_url,
                    repo_path,
                    branch=environment.branch,
                    env=env,
                )
        except GitCommandError as e:
            raise CloneError(
                f"Failed to clone environment {environment.namespace}/{environment.name} "
                f"from {credentials.clone_url} at branch {environment.branch}: {e.stderr.strip() or e}"
            ) from e

        # Later fetches and pushes in this workspace reuse the same transport
        repo.git.update_environment(**env)

        yield Workspace(
            environment=environment,
            root=root,
            repo_path=repo_path,
            repo=repo,
            credentials=credentials,
            env=env,
        )
    finally:
        shutil.rmtree(root, ignore_errors=True)
        logger.debug("Removed workspace", extra={"path": str(root)})
