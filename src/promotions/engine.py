"""Promotion reconciliation engine.

One call to PromotionEngine.reconcile() is one complete, sequential
attempt to converge a Promotion's target environment toward its source:

1. AwaitingEnvironments: both environments must report Ready
2. Provisioning: clone source and target into ephemeral workspaces
3. ResolvingRequest: list open pull requests, re-verify the recorded one
4. Copying: acquire the branch, then copy + commit + push per operation
5. SyncingRequest: create or retitle the pull request, or declare sync
6. Ready: status written, next reconcile scheduled

Attempts are level-triggered and may be repeated at any time, including
after a failure half way through. Nothing local survives an attempt;
only lastPullRequestNumber/lastPullRequestUrl carry state forward, and
the recorded number is re-verified against the provider every run.
Re-running with no source change yields no commit and no new request.

Any failure aborts the attempt, marks the Promotion not Ready and is
reported to the controller, which retries the whole attempt with backoff.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .branch import AcquiredBranch, acquire_branch, is_request_open
from .config import Config
from .copier import ResolvedCopy, copy_operation, resolve_copy_paths
from .credentials import CredentialResolver
from .errors import PromotionError
from .gateway import PullRequest, PullRequestProvider, RepositoryRef, create_provider
from .ladder import ChangeLadder, CommitContext
from .models import (
    PROMOTION_FAILED_REASON,
    SUCCEEDED_REASON,
    Environment,
    Promotion,
)
from .store import FileResourceStore
from .workspace import Workspace, provision

logger = logging.getLogger(__name__)

MESSAGE_REQUEST_OPEN = "A pull request is open for review."
MESSAGE_IN_SYNC = "Source and target environments are in sync, nothing to promote."
MESSAGE_REQUEST_CREATED = "New Pull request created successfully"
MESSAGE_REQUEST_UPDATED = "Pushed new commits to PR branch"

ProviderFactory = Callable[[Environment, str], PullRequestProvider]


class ReconcileState(str, Enum):
    """Stages of one reconcile attempt."""

    AWAITING_ENVIRONMENTS = "AwaitingEnvironments"
    PROVISIONING = "Provisioning"
    RESOLVING_REQUEST = "ResolvingRequest"
    COPYING = "Copying"
    SYNCING_REQUEST = "SyncingRequest"
    READY = "Ready"


class ReadinessWait(Exception):
    """Internal signal: an environment is not ready yet.

    This is an expected transient state, not an error. The attempt ends
    early and is requeued after a short delay without touching the
    Promotion's Ready condition.
    """

    pass


@dataclass
class ReconcileResult:
    """Result of a single promotion reconcile attempt."""

    namespace: str
    name: str
    state: ReconcileState = ReconcileState.AWAITING_ENVIRONMENTS
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    found: bool = True
    waiting: bool = False
    requeue_after: float | None = None
    message: str = ""
    branch: str | None = None
    promoted: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    pull_request: PullRequest | None = None
    pull_request_created: bool = False
    pull_request_edited: bool = False
    dry_run: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the attempt succeeded."""
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        return {
            "namespace": self.namespace,
            "name": self.name,
            "state": self.state.value,
            "found": self.found,
            "waiting": self.waiting,
            "requeue_after": self.requeue_after,
            "message": self.message,
            "branch": self.branch,
            "promoted": list(self.promoted),
            "commits": list(self.commits),
            "pull_request": self.pull_request.to_dict() if self.pull_request else None,
            "pull_request_created": self.pull_request_created,
            "pull_request_edited": self.pull_request_edited,
            "dry_run": self.dry_run,
            "duration_seconds": self.duration_seconds,
            "error": str(self.error) if self.error else None,
        }


class TargetLeases:
    """In-process named locks serializing writers to one target branch.

    Promotions that share a target repository and branch inside one
    controller process take turns between branch acquisition and pull
    request sync. Writers in other processes are not covered.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, key: tuple[str, str]) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            logger.info("Waiting for target lease", extra={"repository": key[0], "branch": key[1]})
            lock.acquire()
        try:
            yield
        finally:
            lock.release()


def default_provider_factory(config: Config) -> ProviderFactory:
    """Provider factory selecting the implementation by the environment's gitProvider."""

    def factory(environment: Environment, token: str) -> PullRequestProvider:
        return create_provider(
            environment.spec.git_provider,
            token,
            api_url=config.github_api_url,
            timeout_seconds=config.http_timeout_seconds,
        )

    return factory


def render_pull_request_title(
    template: str,
    promotion: Promotion,
    promoted: list[str],
    source: Environment,
    target: Environment,
    source_sha: str,
) -> str:
    return template.format(
        promotion=promotion.name,
        operations=", ".join(promoted),
        source_env=source.name,
        target_env=target.name,
        source_sha=source_sha,
    )


def render_pull_request_body(
    promotion: Promotion,
    promoted: list[str],
    source: Environment,
    source_sha: str,
) -> str:
    lines = [
        f"Promotion `{promotion.name}` copied the following from `{source.name}` "
        f"(SHA `{source_sha}`):",
        "",
    ]
    lines.extend(f"- {name}" for name in promoted)
    return "\n".join(lines) + "\n"


class PromotionEngine:
    """Runs reconcile attempts for Promotion resources."""

    def __init__(
        self,
        config: Config,
        store: FileResourceStore,
        resolver: CredentialResolver,
        *,
        provider_factory: ProviderFactory | None = None,
        leases: TargetLeases | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Validated operator configuration.
            store: Resource store holding Environments and Promotions.
            resolver: Credential resolver for clones and API tokens.
            provider_factory: Builds the pull request provider for a target
                environment. Defaults to the provider registry.
            leases: Shared target leases (one per controller process).
            clock: Time source for fresh branch names.
        """
        self._config = config
        self._store = store
        self._resolver = resolver
        self._provider_factory = provider_factory or default_provider_factory(config)
        self._leases = leases or TargetLeases()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def config(self) -> Config:
        return self._config

    def reconcile(self, namespace: str, name: str, *, dry_run: bool | None = None) -> ReconcileResult:
        """Run one complete reconcile attempt for a Promotion.

        Errors never propagate: they are recorded on the result and in the
        Promotion's Ready condition. Status is persisted on every path.
        """
        result = ReconcileResult(
            namespace=namespace,
            name=name,
            dry_run=self._config.dry_run if dry_run is None else dry_run,
        )
        logger.info("Begin reconciling Promotion", extra={"namespace": namespace, "promotion": name})

        promotion = self._store.get_promotion(namespace, name)
        if promotion is None:
            logger.info("Promotion not found, ignoring", extra={"namespace": namespace, "promotion": name})
            result.found = False
            result.end_time = datetime.now(UTC)
            return result

        try:
            self._reconcile_promotion(promotion, result)
        except ReadinessWait as e:
            result.waiting = True
            result.message = str(e)
            result.requeue_after = self._config.readiness_requeue_seconds
            logger.info(
                str(e),
                extra={
                    "namespace": namespace,
                    "promotion": name,
                    "requeue_after_seconds": result.requeue_after,
                },
            )
        except PromotionError as e:
            logger.error(
                "Promotion attempt failed",
                extra={
                    "namespace": namespace,
                    "promotion": name,
                    "state": result.state.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            promotion.mark_not_ready(PROMOTION_FAILED_REASON, str(e))
            result.message = str(e)
            result.error = e
        except Exception as e:
            logger.exception(
                "Unexpected error during promotion reconcile",
                extra={"namespace": namespace, "promotion": name, "state": result.state.value},
            )
            promotion.mark_not_ready(PROMOTION_FAILED_REASON, str(e))
            result.message = str(e)
            result.error = e

        promotion.status.observed_generation = promotion.metadata.generation
        try:
            self._store.update_status(promotion)
        except OSError as e:
            logger.error(
                "Unable to update Promotion status",
                extra={"namespace": namespace, "promotion": name, "error": str(e)},
            )

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _await_environments(self, promotion: Promotion) -> tuple[Environment, Environment]:
        result: list[Environment] = []
        for role, ref in (
            ("source", promotion.spec.source_environment_ref),
            ("target", promotion.spec.target_environment_ref),
        ):
            environment = self._store.get_environment(promotion.namespace, ref.name)
            if environment is None:
                raise ReadinessWait(f"Waiting for {role} environment {ref.name} to exist")
            if not environment.is_ready():
                raise ReadinessWait(f"Waiting for {role} environment {ref.name} to get ready")
            result.append(environment)
        return result[0], result[1]

    def _reconcile_promotion(self, promotion: Promotion, result: ReconcileResult) -> None:
        result.state = ReconcileState.AWAITING_ENVIRONMENTS
        source_env, target_env = self._await_environments(promotion)

        result.state = ReconcileState.PROVISIONING
        source_credentials = self._resolver.resolve(source_env)
        target_credentials = self._resolver.resolve(target_env)

        with ExitStack() as stack:
            source_ws = stack.enter_context(
                provision(promotion, source_env, source_credentials, self._config.workspace_root)
            )
            target_ws = stack.enter_context(
                provision(promotion, target_env, target_credentials, self._config.workspace_root)
            )

            result.state = ReconcileState.RESOLVING_REQUEST
            repo_ref = RepositoryRef.from_url(target_env.spec.source.url)
            token = self._resolver.resolve_api_token(target_env)
            provider = self._provider_factory(target_env, token)
            stack.callback(provider.close)

            open_requests = provider.list(repo_ref)
            recorded = promotion.status.last_pull_request_number
            is_open = is_request_open(recorded, open_requests)
            logger.info(
                "Resolved pull request state",
                extra={
                    "promotion": promotion.name,
                    "recorded_pr_number": recorded,
                    "open_pull_requests": len(open_requests),
                    "is_open": is_open,
                },
            )

            result.state = ReconcileState.COPYING
            # Every path is confined before anything is written
            resolved = [
                resolve_copy_paths(source_ws.environment_root, target_ws.environment_root, op)
                for op in promotion.spec.copy_operations
            ]

            lease_key = (target_env.spec.source.url, target_env.branch)
            with self._leases.hold(lease_key):
                acquired = acquire_branch(
                    target_ws,
                    promotion.name,
                    recorded,
                    provider,
                    repo_ref,
                    open_requests,
                    now=self._clock(),
                    prefix=self._config.branch_prefix,
                )
                result.branch = acquired.name

                ladder = self._copy_and_commit(
                    promotion, source_env, target_env, source_ws, target_ws, acquired, resolved, result
                )

                result.state = ReconcileState.SYNCING_REQUEST
                self._sync_request(
                    promotion,
                    source_env,
                    target_env,
                    source_ws,
                    provider,
                    repo_ref,
                    acquired,
                    ladder,
                    result,
                )

        result.state = ReconcileState.READY
        result.requeue_after = self._config.reconcile_interval_seconds

    def _copy_and_commit(
        self,
        promotion: Promotion,
        source_env: Environment,
        target_env: Environment,
        source_ws: Workspace,
        target_ws: Workspace,
        acquired: AcquiredBranch,
        resolved: list[ResolvedCopy],
        result: ReconcileResult,
    ) -> ChangeLadder:
        ladder = ChangeLadder(
            workspace=target_ws,
            branch=acquired.name,
            context=CommitContext(
                promotion=promotion.name,
                source_env=source_env.name,
                target_env=target_env.name,
                source_sha=source_ws.short_sha,
            ),
            identity=self._config.commit_identity,
            template=self._config.commit_message_template,
            push=not result.dry_run,
        )

        # Results are updated as the ladder climbs so a failure part way
        # through still reports what reached the remote
        result.promoted = ladder.promoted
        result.commits = ladder.commits

        ladder.head_before = target_ws.head_sha
        for item in resolved:
            copy_operation(item)
            ladder.step(item.operation)
        ladder.head_after = target_ws.head_sha
        return ladder

    def _sync_request(
        self,
        promotion: Promotion,
        source_env: Environment,
        target_env: Environment,
        source_ws: Workspace,
        provider: PullRequestProvider,
        repo_ref: RepositoryRef,
        acquired: AcquiredBranch,
        ladder: ChangeLadder,
        result: ReconcileResult,
    ) -> None:
        result.pull_request = acquired.pull_request

        if ladder.head_before == ladder.head_after:
            message = MESSAGE_REQUEST_OPEN if acquired.resumed else MESSAGE_IN_SYNC
            promotion.mark_ready(SUCCEEDED_REASON, message)
            result.message = message
            return

        title = render_pull_request_title(
            self._config.pr_title_template,
            promotion,
            ladder.promoted,
            source_env,
            target_env,
            source_ws.short_sha,
        )

        if result.dry_run:
            action = "update" if acquired.resumed else "create"
            result.message = f"Dry run: would {action} pull request '{title}'"
            logger.info(
                "Dry run, skipping pull request sync",
                extra={"promotion": promotion.name, "title": title, "action": action},
            )
            return

        if acquired.pull_request is not None:
            result.pull_request = provider.edit(repo_ref, acquired.pull_request.number, title)
            result.pull_request_edited = True
            message = MESSAGE_REQUEST_UPDATED
        else:
            body = render_pull_request_body(promotion, ladder.promoted, source_env, source_ws.short_sha)
            pull_request = provider.create(repo_ref, title, acquired.name, target_env.branch, body)
            promotion.status.last_pull_request_number = pull_request.number
            promotion.status.last_pull_request_url = pull_request.url
            result.pull_request = pull_request
            result.pull_request_created = True
            message = MESSAGE_REQUEST_CREATED
            logger.info(
                "Created new pull request",
                extra={
                    "promotion": promotion.name,
                    "pr_number": pull_request.number,
                    "web_url": pull_request.url,
                },
            )

        promotion.mark_ready(SUCCEEDED_REASON, message)
        result.message = message

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconcile result with structured data."""
        extra: dict[str, Any] = {
            "namespace": result.namespace,
            "promotion": result.name,
            "state": result.state.value,
            "duration_seconds": result.duration_seconds,
            "branch": result.branch,
            "promoted": list(result.promoted),
            "commits": len(result.commits),
            "requeue_after_seconds": result.requeue_after,
            "dry_run": result.dry_run,
        }
        if result.pull_request is not None:
            extra["pr_number"] = result.pull_request.number

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconcile failed", extra=extra)
        elif result.waiting:
            logger.info("Reconcile waiting for environments", extra=extra)
        else:
            logger.info("Reconciled Promotion successfully", extra=extra)
