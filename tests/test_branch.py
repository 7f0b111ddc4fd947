"""Tests for promotion branch acquisition."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from git_mock import GitRemote, MockCluster

from promotions.branch import acquire_branch, is_request_open, new_branch_name
from promotions.credentials import GitCredentials
from promotions.errors import ProviderError
from promotions.gateway import MockPullRequestProvider, PullRequest, RepositoryRef
from promotions.workspace import provision

NOW = datetime(2024, 5, 1, 12, 30, 45, tzinfo=UTC)


def open_request(number: int) -> PullRequest:
    return PullRequest(number=number, url="", source_branch="b", target_branch="master")


class TestIsRequestOpen:
    """Tests for is_request_open."""

    def test_zero_is_never_open(self) -> None:
        """Test that a zero number means no request was ever opened."""
        assert is_request_open(0, [open_request(1)]) is False

    def test_recorded_number_in_open_list(self) -> None:
        """Test that a recorded number must appear in the live list."""
        assert is_request_open(2, [open_request(1), open_request(2)]) is True
        assert is_request_open(3, [open_request(1), open_request(2)]) is False


class TestNewBranchName:
    """Tests for new_branch_name."""

    def test_format(self) -> None:
        """Test the branch name layout."""
        assert new_branch_name("app-to-prod", NOW) == "promotion/app-to-prod-2024-05-01-12-30-45"

    def test_converts_to_utc(self) -> None:
        """Test that local times are rendered in UTC."""
        local = NOW.astimezone(timezone(timedelta(hours=2)))

        assert new_branch_name("app", local).endswith("2024-05-01-12-30-45")

    def test_custom_prefix(self) -> None:
        """Test a configured branch prefix."""
        assert new_branch_name("app", NOW, prefix="gitops").startswith("gitops/app-")


class TestAcquireBranch:
    """Tests for acquire_branch against a real remote."""

    def test_fresh_branch_from_target_head(
        self, cluster: MockCluster, provider: MockPullRequestProvider, target_remote: GitRemote
    ) -> None:
        """Test that without an open request a new branch starts at the target head."""
        cluster.add_environment("production", target_remote, path="envs/prod")
        environment = cluster.environment("production")
        repo = RepositoryRef.from_url(target_remote.url)

        with provision(environment, environment, GitCredentials(clone_url=target_remote.url)) as ws:
            acquired = acquire_branch(ws, "app", 0, provider, repo, [], now=NOW)

            assert acquired.resumed is False
            assert acquired.name == "promotion/app-2024-05-01-12-30-45"
            assert ws.repo.active_branch.name == acquired.name
            assert ws.head_sha == target_remote.head()

        assert provider.count("get") == 0

    def test_resumes_open_request_branch(
        self, cluster: MockCluster, provider: MockPullRequestProvider, target_remote: GitRemote
    ) -> None:
        """Test that an open request's branch is fetched and checked out."""
        branch_head = target_remote.commit_files(
            {"envs/prod/app/deployment.yaml": "image: app:2.0\n"}, branch="promotion/app-old"
        )
        cluster.add_environment("production", target_remote, path="envs/prod")
        environment = cluster.environment("production")
        repo = RepositoryRef.from_url(target_remote.url)
        pull = provider.create(repo, "title", "promotion/app-old", "master")

        with provision(environment, environment, GitCredentials(clone_url=target_remote.url)) as ws:
            acquired = acquire_branch(ws, "app", pull.number, provider, repo, provider.list(repo), now=NOW)

            assert acquired.resumed is True
            assert acquired.name == "promotion/app-old"
            assert acquired.pull_request.number == pull.number
            assert ws.head_sha == branch_head
            assert (ws.environment_root / "app" / "deployment.yaml").read_text() == "image: app:2.0\n"

    def test_closed_request_starts_fresh(
        self, cluster: MockCluster, provider: MockPullRequestProvider, target_remote: GitRemote
    ) -> None:
        """Test that a recorded but closed request is not resumed."""
        cluster.add_environment("production", target_remote, path="envs/prod")
        environment = cluster.environment("production")
        repo = RepositoryRef.from_url(target_remote.url)
        pull = provider.create(repo, "title", "promotion/app-old", "master")
        provider.close_pull_request(repo, pull.number)

        with provision(environment, environment, GitCredentials(clone_url=target_remote.url)) as ws:
            acquired = acquire_branch(ws, "app", pull.number, provider, repo, provider.list(repo), now=NOW)

        assert acquired.resumed is False
        assert acquired.name.startswith("promotion/app-")

    def test_provider_failure_propagates(
        self, cluster: MockCluster, provider: MockPullRequestProvider, target_remote: GitRemote
    ) -> None:
        """Test that a failed fetch of the open request aborts acquisition."""
        cluster.add_environment("production", target_remote, path="envs/prod")
        environment = cluster.environment("production")
        repo = RepositoryRef.from_url(target_remote.url)

        with provision(environment, environment, GitCredentials(clone_url=target_remote.url)) as ws:
            with pytest.raises(ProviderError):
                acquire_branch(ws, "app", 5, provider, repo, [open_request(5)], now=NOW)
