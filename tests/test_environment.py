"""Tests for the Environment readiness reconciler."""

from pathlib import Path

import pytest
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from git_mock import GitRemote, MockCluster, generate_ssh_private_key

from promotions.environment import MESSAGE_ENVIRONMENT_READY
from promotions.errors import AuthConfigurationError, CloneError
from promotions.models import CONDITION_FALSE, CONDITION_TRUE, ENVIRONMENT_FAILED_REASON, SUCCEEDED_REASON


class TestEnvironmentReconciler:
    """Tests for EnvironmentReconciler.reconcile."""

    def test_clone_marks_ready(self, cluster: MockCluster, target_remote: GitRemote) -> None:
        """Test that a successful clone sets Ready and records the head commit."""
        cluster.add_environment("production", target_remote, path="envs/prod", ready=False)

        result = cluster.environment_reconciler().reconcile("default", "production")

        assert result.success
        assert result.ready is True
        assert result.commit == target_remote.head()
        assert result.requeue_after == 300

        environment = cluster.environment("production")
        assert environment.is_ready()
        assert environment.status.observed_commit_hash == target_remote.head()
        assert environment.status.observed_generation == 1
        condition = environment.status.conditions[0]
        assert condition.status == CONDITION_TRUE
        assert condition.reason == SUCCEEDED_REASON
        assert condition.message == MESSAGE_ENVIRONMENT_READY
        assert cluster.workspaces_left() == []

    def test_unreachable_repository(self, cluster: MockCluster, target_remote: GitRemote, tmp_path: Path) -> None:
        """Test that a failed clone sets Ready=False with the error."""
        cluster.add_environment(
            "production",
            target_remote,
            url=f"file://{tmp_path}/missing/acme/production.git",
            ready=False,
        )

        result = cluster.environment_reconciler().reconcile("default", "production")

        assert isinstance(result.error, CloneError)
        condition = cluster.environment("production").status.conditions[0]
        assert condition.status == CONDITION_FALSE
        assert condition.reason == ENVIRONMENT_FAILED_REASON

    def test_ready_environment_becomes_unready(
        self, cluster: MockCluster, target_remote: GitRemote
    ) -> None:
        """Test that a previously ready environment loses readiness on failure."""
        cluster.add_environment("production", target_remote, secret="deploy-key")

        result = cluster.environment_reconciler().reconcile("default", "production")

        assert isinstance(result.error, AuthConfigurationError)
        assert cluster.environment("production").is_ready() is False

    def test_unsupported_key_type_marks_unready(
        self, cluster: MockCluster, target_remote: GitRemote, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a key the backend cannot load still records a failed status."""

        def unsupported(data: bytes, password: bytes | None) -> None:
            raise UnsupportedAlgorithm("Unsupported key type")

        monkeypatch.setattr(serialization, "load_ssh_private_key", unsupported)
        cluster.add_secret("deploy-key", {"private": generate_ssh_private_key()})
        cluster.add_environment("production", target_remote, secret="deploy-key")

        result = cluster.environment_reconciler().reconcile("default", "production")

        assert isinstance(result.error, AuthConfigurationError)
        condition = cluster.environment("production").status.conditions[0]
        assert condition.status == CONDITION_FALSE
        assert condition.reason == ENVIRONMENT_FAILED_REASON
        assert "Unsupported key type" in condition.message

    def test_missing_environment(self, cluster: MockCluster) -> None:
        """Test that an unknown environment is ignored."""
        result = cluster.environment_reconciler().reconcile("default", "unknown")

        assert result.found is False
        assert not (cluster.status_dir / "environment").exists()
