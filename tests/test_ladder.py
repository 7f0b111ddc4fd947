"""Tests for per-operation commit and push."""

from collections.abc import Iterator

import pytest
from git_mock import GitRemote, MockCluster

from promotions.config import CommitIdentity
from promotions.credentials import GitCredentials
from promotions.errors import PushError
from promotions.ladder import ChangeLadder, CommitContext
from promotions.models import CopyOperation
from promotions.workspace import Workspace, provision

CONTEXT = CommitContext(
    promotion="app-to-prod",
    source_env="staging",
    target_env="production",
    source_sha="abc1234",
)


@pytest.fixture
def workspace(cluster: MockCluster, target_remote: GitRemote) -> Iterator[Workspace]:
    cluster.add_environment("production", target_remote, path="envs/prod")
    environment = cluster.environment("production")
    with provision(environment, environment, GitCredentials(clone_url=target_remote.url)) as ws:
        ws.repo.git.checkout("-b", "promotion/test")
        yield ws


def operation(name: str) -> CopyOperation:
    return CopyOperation(name=name, source=name, target=name)


class TestCommitContext:
    """Tests for commit message rendering."""

    def test_default_template(self) -> None:
        """Test the default commit message."""
        ladder_message = CONTEXT.render(
            "chore: promote {operation} from {source_env} to {target_env}\n\n"
            "SHA in source environment: {source_sha}\n",
            operation("app"),
        )

        assert ladder_message == (
            "chore: promote app from staging to production\n\nSHA in source environment: abc1234\n"
        )


class TestChangeLadder:
    """Tests for ChangeLadder.step."""

    def test_clean_tree_is_skipped(self, workspace: Workspace, target_remote: GitRemote) -> None:
        """Test that a clean tree records nothing and pushes nothing."""
        ladder = ChangeLadder(workspace=workspace, branch="promotion/test", context=CONTEXT)

        assert ladder.step(operation("app")) is False
        assert ladder.promoted == []
        assert "promotion/test" not in target_remote.branches()

    def test_dirty_tree_is_committed_and_pushed(self, workspace: Workspace, target_remote: GitRemote) -> None:
        """Test that changes are committed as the bot and pushed at once."""
        (workspace.environment_root / "app" / "deployment.yaml").write_text("image: app:2.0\n")
        ladder = ChangeLadder(workspace=workspace, branch="promotion/test", context=CONTEXT)

        assert ladder.step(operation("app")) is True

        assert ladder.promoted == ["app"]
        assert ladder.commits == [target_remote.head("promotion/test")]
        commit = workspace.repo.head.commit
        assert commit.author.name == "Promotion Bot"
        assert commit.committer.email == "bot@promotions.gitopsprom.io"
        assert commit.message.startswith("chore: promote app from staging to production")
        assert workspace.is_dirty() is False

    def test_untracked_files_are_staged(self, workspace: Workspace, target_remote: GitRemote) -> None:
        """Test that untracked files are included in the commit."""
        (workspace.environment_root / "config").mkdir()
        (workspace.environment_root / "config" / "settings.yaml").write_text("feature_x: true\n")
        ladder = ChangeLadder(workspace=workspace, branch="promotion/test", context=CONTEXT)

        ladder.step(operation("config"))

        assert target_remote.read_file("promotion/test", "envs/prod/config/settings.yaml") == "feature_x: true\n"

    def test_one_commit_per_operation(self, workspace: Workspace, target_remote: GitRemote) -> None:
        """Test that consecutive operations produce ordered commits."""
        ladder = ChangeLadder(
            workspace=workspace,
            branch="promotion/test",
            context=CONTEXT,
            identity=CommitIdentity(name="Release Bot", email="release@example.com"),
            template="{operation}",
        )

        (workspace.environment_root / "a.yaml").write_text("a\n")
        ladder.step(operation("first"))
        (workspace.environment_root / "b.yaml").write_text("b\n")
        ladder.step(operation("second"))

        assert ladder.promoted == ["first", "second"]
        messages = [c.message.strip() for c in target_remote.commits_since("promotion/test", "master")]
        assert messages == ["first", "second"]

    def test_no_push_keeps_remote_untouched(self, workspace: Workspace, target_remote: GitRemote) -> None:
        """Test that push=False commits locally only."""
        (workspace.environment_root / "a.yaml").write_text("a\n")
        ladder = ChangeLadder(workspace=workspace, branch="promotion/test", context=CONTEXT, push=False)

        assert ladder.step(operation("a")) is True
        assert target_remote.branches() == ["master"]

    def test_push_failure(self, workspace: Workspace, tmp_path) -> None:
        """Test that a rejected push raises PushError."""
        workspace.repo.git.remote("set-url", "origin", f"file://{tmp_path}/gone.git")
        (workspace.environment_root / "a.yaml").write_text("a\n")
        ladder = ChangeLadder(workspace=workspace, branch="promotion/test", context=CONTEXT)

        with pytest.raises(PushError):
            ladder.step(operation("a"))
