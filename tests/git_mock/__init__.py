"""Local git fixtures for integration testing.

This package replaces a real git host with bare repositories on disk and
the operator's Kubernetes inputs with plain files, so the promotion engine
runs end to end without network access.

Key Features:
- Bare remotes reachable by file:// URL, seeded from tests
- Manifest, status and secret directories laid out as in production
- Engines wired to MockPullRequestProvider
- SSH key generation for credential tests

Usage:
    from git_mock import GitRemote, MockCluster

    cluster = MockCluster(tmp_path)
    source = GitRemote(tmp_path, "acme", "staging")
    source.commit_files({"app.yaml": "replicas: 2\\n"})
"""

from .cluster import MockCluster, generate_ssh_private_key, ticking_clock
from .remote import GitRemote

__all__ = [
    "GitRemote",
    "MockCluster",
    "generate_ssh_private_key",
    "ticking_clock",
]
