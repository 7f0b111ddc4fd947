"""Environment readiness reconciler.

An Environment is Ready once its repository can be cloned with the
credentials it references. The Promotion engine never touches an
Environment that is not Ready, so this check gates every promotion
reading from or writing to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import Config
from .credentials import CredentialResolver
from .errors import PromotionError
from .models import ENVIRONMENT_FAILED_REASON, SUCCEEDED_REASON
from .store import FileResourceStore
from .workspace import provision

logger = logging.getLogger(__name__)

MESSAGE_ENVIRONMENT_READY = "Authentication works, cloned repo successfully."


@dataclass
class EnvironmentResult:
    """Result of a single environment reconcile."""

    namespace: str
    name: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    found: bool = True
    ready: bool = False
    commit: str = ""
    requeue_after: float | None = None
    message: str = ""
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


class EnvironmentReconciler:
    """Verifies that Environments can be cloned and records their head commit."""

    def __init__(
        self,
        config: Config,
        store: FileResourceStore,
        resolver: CredentialResolver,
    ) -> None:
        self._config = config
        self._store = store
        self._resolver = resolver

    def reconcile(self, namespace: str, name: str) -> EnvironmentResult:
        """Clone the environment once and update its Ready condition."""
        result = EnvironmentResult(namespace=namespace, name=name)

        environment = self._store.get_environment(namespace, name)
        if environment is None:
            logger.info("Environment not found, ignoring", extra={"namespace": namespace, "environment": name})
            result.found = False
            result.end_time = datetime.now(UTC)
            return result

        try:
            credentials = self._resolver.resolve(environment)
            with provision(environment, environment, credentials, self._config.workspace_root) as ws:
                result.commit = ws.head_sha
            environment.mark_ready(SUCCEEDED_REASON, MESSAGE_ENVIRONMENT_READY, result.commit)
            result.ready = True
            result.message = MESSAGE_ENVIRONMENT_READY
            result.requeue_after = self._config.environment_interval_seconds
        except PromotionError as e:
            logger.error(
                "Environment check failed",
                extra={
                    "namespace": namespace,
                    "environment": name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            environment.mark_not_ready(ENVIRONMENT_FAILED_REASON, str(e))
            result.message = str(e)
            result.error = e

        environment.status.observed_generation = environment.metadata.generation
        try:
            self._store.update_status(environment)
        except OSError as e:
            logger.error(
                "Unable to update Environment status",
                extra={"namespace": namespace, "environment": name, "error": str(e)},
            )

        result.end_time = datetime.now(UTC)
        logger.info(
            "Reconciled Environment",
            extra={
                "namespace": namespace,
                "environment": name,
                "ready": result.ready,
                "commit": result.commit[:7],
                "duration_seconds": result.duration_seconds,
            },
        )
        return result
