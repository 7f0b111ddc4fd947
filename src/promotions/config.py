"""Configuration management with validation.

Configuration is loaded from environment variables once at startup and
validated eagerly, so a misconfigured operator fails before it touches
any repository.
"""

from __future__ import annotations

import os
import string
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class HostKeyMode(str, Enum):
    """How the SSH transport verifies the remote host key."""

    INSECURE = "insecure"
    KNOWN_HOSTS = "known_hosts"
    ACCEPT_NEW = "accept_new"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_READINESS_REQUEUE_SECONDS = 10
DEFAULT_ENVIRONMENT_INTERVAL_SECONDS = 300

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES_LIMIT = 32

RETRY_BACKOFF_BASE_SECONDS = 5
MAX_RETRY_BACKOFF_SECONDS = 600

DEFAULT_HTTP_TIMEOUT_SECONDS = 30

# Resource manifests larger than this are rejected at load time
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

# Commit authorship and message shapes
DEFAULT_COMMIT_AUTHOR_NAME = "Promotion Bot"
DEFAULT_COMMIT_AUTHOR_EMAIL = "bot@promotions.gitopsprom.io"
DEFAULT_BRANCH_PREFIX = "promotion"
DEFAULT_COMMIT_MESSAGE_TEMPLATE = (
    "chore: promote {operation} from {source_env} to {target_env}\n"
    "\n"
    "SHA in source environment: {source_sha}\n"
)
DEFAULT_PR_TITLE_TEMPLATE = "chore: promote {operations} from {source_env} to {target_env}"

# Fields each template may reference
COMMIT_TEMPLATE_FIELDS: frozenset[str] = frozenset(
    {"promotion", "operation", "source_env", "target_env", "source_sha"}
)
PR_TITLE_TEMPLATE_FIELDS: frozenset[str] = frozenset(
    {"promotion", "operations", "source_env", "target_env", "source_sha"}
)

VALID_BRANCH_PREFIX_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._/-]{0,62}$"


def template_fields(template: str) -> set[str]:
    """Return the replacement field names referenced by a format template.

    Raises:
        ValueError: If the template is not a valid format string.
    """
    names: set[str] = set()
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name is not None:
            names.add(field_name)
    return names


@dataclass(frozen=True)
class CommitIdentity:
    """Author and committer used for promotion commits."""

    name: str = DEFAULT_COMMIT_AUTHOR_NAME
    email: str = DEFAULT_COMMIT_AUTHOR_EMAIL


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))
    status_dir: Path = field(default_factory=lambda: Path("/var/lib/gitops-promotions/status"))
    secrets_dir: Path = field(default_factory=lambda: Path("/secrets"))
    workspace_root: Path | None = None

    # Restrict reconciliation to one namespace (None = all)
    namespace: str | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    readiness_requeue_seconds: int = DEFAULT_READINESS_REQUEUE_SECONDS
    environment_interval_seconds: int = DEFAULT_ENVIRONMENT_INTERVAL_SECONDS
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # SSH transport
    host_key_mode: HostKeyMode = HostKeyMode.INSECURE
    known_hosts_file: Path | None = None

    # Commit and pull request shapes
    commit_identity: CommitIdentity = field(default_factory=CommitIdentity)
    commit_message_template: str = DEFAULT_COMMIT_MESSAGE_TEMPLATE
    pr_title_template: str = DEFAULT_PR_TITLE_TEMPLATE
    branch_prefix: str = DEFAULT_BRANCH_PREFIX

    # Provider
    github_api_url: str | None = None
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False
    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not self.manifests_dir.exists():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if self.workspace_root is not None and not self.workspace_root.is_dir():
            errors.append(f"WORKSPACE_ROOT is not a directory: {self.workspace_root}")

        # Timing validation
        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.readiness_requeue_seconds < 1:
            errors.append("READINESS_REQUEUE must be at least 1 second")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.environment_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"ENVIRONMENT_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES_LIMIT}"
            )

        if self.http_timeout_seconds < 1:
            errors.append("HTTP_TIMEOUT must be at least 1 second")

        # Host key verification
        if self.host_key_mode != HostKeyMode.INSECURE and self.known_hosts_file is None:
            errors.append(
                f"KNOWN_HOSTS_FILE is required when HOST_KEY_POLICY is {self.host_key_mode.value}"
            )
        if (
            self.host_key_mode == HostKeyMode.KNOWN_HOSTS
            and self.known_hosts_file is not None
            and not self.known_hosts_file.is_file()
        ):
            errors.append(f"Known hosts file does not exist: {self.known_hosts_file}")

        # Identity and templates
        if not self.commit_identity.name:
            errors.append("COMMIT_AUTHOR_NAME must not be empty")
        if "@" not in self.commit_identity.email:
            errors.append(f"COMMIT_AUTHOR_EMAIL is not an email address: {self.commit_identity.email}")

        errors.extend(
            _validate_template(
                "COMMIT_MESSAGE_TEMPLATE", self.commit_message_template, COMMIT_TEMPLATE_FIELDS
            )
        )
        errors.extend(
            _validate_template("PR_TITLE_TEMPLATE", self.pr_title_template, PR_TITLE_TEMPLATE_FIELDS)
        )

        if not re.match(VALID_BRANCH_PREFIX_PATTERN, self.branch_prefix):
            errors.append(
                f"BRANCH_PREFIX must match pattern {VALID_BRANCH_PREFIX_PATTERN}: {self.branch_prefix}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            MANIFESTS_DIR: Directory of Environment/Promotion YAML manifests
            STATUS_DIR: Directory where resource status is persisted
            SECRETS_DIR: Mounted secrets, laid out as <namespace>/<name>/<key>
            WORKSPACE_ROOT: Parent directory for ephemeral clones (default: system temp)
            NAMESPACE: Only reconcile resources in this namespace (default: all)
            RECONCILE_INTERVAL: Seconds between successful promotion reconciles (default: 300)
            READINESS_REQUEUE: Seconds to wait for environments to become ready (default: 10)
            ENVIRONMENT_INTERVAL: Seconds between environment readiness checks (default: 300)
            MAX_CONCURRENT_RECONCILES: Parallel reconciles across objects (default: 4)
            HOST_KEY_POLICY: insecure, known_hosts or accept_new (default: insecure)
            KNOWN_HOSTS_FILE: Known hosts file for known_hosts/accept_new policies
            COMMIT_AUTHOR_NAME: Promotion commit author (default: Promotion Bot)
            COMMIT_AUTHOR_EMAIL: Promotion commit email
            COMMIT_MESSAGE_TEMPLATE: Format template for commit messages
            PR_TITLE_TEMPLATE: Format template for pull request titles
            BRANCH_PREFIX: Prefix for fresh promotion branches (default: promotion)
            GITHUB_API_URL: Override the GitHub API base URL
            HTTP_TIMEOUT: Provider API timeout in seconds (default: 30)
            DRY_RUN: If "true", commit locally but never push or open PRs
            ENABLE_JSON_LOGGING: Emit JSON logs to stdout (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        def get_host_key_mode(value: str | None) -> HostKeyMode:
            if not value:
                return HostKeyMode.INSECURE
            try:
                return HostKeyMode(value.lower())
            except ValueError as e:
                valid = [m.value for m in HostKeyMode]
                raise ConfigurationError(f"HOST_KEY_POLICY must be one of {valid}: {value}") from e

        return cls(
            manifests_dir=Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            status_dir=Path(os.environ.get("STATUS_DIR", "/var/lib/gitops-promotions/status")),
            secrets_dir=Path(os.environ.get("SECRETS_DIR", "/secrets")),
            workspace_root=get_path("WORKSPACE_ROOT"),
            namespace=os.environ.get("NAMESPACE") or None,
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            readiness_requeue_seconds=get_int(
                "READINESS_REQUEUE", DEFAULT_READINESS_REQUEUE_SECONDS
            ),
            environment_interval_seconds=get_int(
                "ENVIRONMENT_INTERVAL", DEFAULT_ENVIRONMENT_INTERVAL_SECONDS
            ),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            host_key_mode=get_host_key_mode(os.environ.get("HOST_KEY_POLICY")),
            known_hosts_file=get_path("KNOWN_HOSTS_FILE"),
            commit_identity=CommitIdentity(
                name=os.environ.get("COMMIT_AUTHOR_NAME", DEFAULT_COMMIT_AUTHOR_NAME),
                email=os.environ.get("COMMIT_AUTHOR_EMAIL", DEFAULT_COMMIT_AUTHOR_EMAIL),
            ),
            commit_message_template=os.environ.get(
                "COMMIT_MESSAGE_TEMPLATE", DEFAULT_COMMIT_MESSAGE_TEMPLATE
            ),
            pr_title_template=os.environ.get("PR_TITLE_TEMPLATE", DEFAULT_PR_TITLE_TEMPLATE),
            branch_prefix=os.environ.get("BRANCH_PREFIX", DEFAULT_BRANCH_PREFIX),
            github_api_url=os.environ.get("GITHUB_API_URL") or None,
            http_timeout_seconds=get_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            dry_run=get_bool("DRY_RUN", False),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )


def _validate_template(key: str, template: str, allowed: frozenset[str]) -> list[str]:
    if not template:
        return [f"{key} must not be empty"]
    try:
        used = template_fields(template)
    except ValueError as e:
        return [f"{key} is not a valid format template: {e}"]
    unknown = sorted(used - allowed)
    if unknown:
        return [f"{key} references unknown fields {unknown}; allowed: {sorted(allowed)}"]
    return []
