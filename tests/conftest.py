"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for git_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from git_mock import GitRemote, MockCluster  # noqa: E402

from promotions.gateway import MockPullRequestProvider  # noqa: E402


@pytest.fixture
def cluster(tmp_path: Path) -> MockCluster:
    """Manifests, status and secrets directories for one test."""
    return MockCluster(tmp_path / "cluster")


@pytest.fixture
def provider() -> MockPullRequestProvider:
    return MockPullRequestProvider()


@pytest.fixture
def source_remote(tmp_path: Path) -> GitRemote:
    """Source environment remote with a staging tree."""
    remote = GitRemote(tmp_path, "acme", "staging")
    remote.commit_files(
        {
            "envs/staging/app/deployment.yaml": "image: app:2.0\nreplicas: 3\n",
            "envs/staging/app/service.yaml": "port: 8080\n",
            "envs/staging/config/settings.yaml": "feature_x: true\n",
            "envs/staging/README.md": "staging\n",
        },
        message="seed staging",
    )
    return remote


@pytest.fixture
def target_remote(tmp_path: Path) -> GitRemote:
    """Target environment remote with an older production tree."""
    remote = GitRemote(tmp_path, "acme", "production")
    remote.commit_files(
        {
            "envs/prod/app/deployment.yaml": "image: app:1.0\nreplicas: 3\n",
            "envs/prod/app/service.yaml": "port: 8080\n",
            "envs/prod/README.md": "production\n",
        },
        message="seed production",
    )
    return remote
