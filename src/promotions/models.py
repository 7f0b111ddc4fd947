"""Pydantic models for Environment and Promotion resources.

These models provide:
1. Type-safe parsing of Kubernetes-style YAML manifests
2. Validation at the boundary (fail fast, fail loudly)
3. Condition bookkeeping with Kubernetes SetStatusCondition semantics
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

API_GROUP = "promotions.gitopsprom.io"
API_VERSION = f"{API_GROUP}/v1alpha1"

DEFAULT_BRANCH = "master"
DEFAULT_NAMESPACE = "default"

GIT_PROVIDER_GITHUB = "github"

STRATEGY_PULL_REQUEST = "pull-request"

# Condition types, statuses and reasons
READY_CONDITION = "Ready"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

SUCCEEDED_REASON = "Succeeded"
PROGRESSING_REASON = "Progressing"
ENVIRONMENT_FAILED_REASON = "EnvironmentOperationFailed"
PROMOTION_FAILED_REASON = "PromotionOperationFailed"

ConditionStatus = Literal["True", "False", "Unknown"]


class ResourceModel(BaseModel):
    """Base for all resource models: camelCase aliases, unknown fields ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Common
# =============================================================================


class ObjectMeta(ResourceModel):
    """Subset of Kubernetes object metadata used by the operator."""

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = DEFAULT_NAMESPACE
    generation: Annotated[int, Field(ge=1)] = 1


class LocalObjectReference(ResourceModel):
    """Reference to another object by name within the same namespace."""

    name: Annotated[str, Field(min_length=1)]


class Condition(ResourceModel):
    """Kubernetes-style status condition."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="lastTransitionTime"
    )


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Return the condition of the given type, or None."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(conditions: list[Condition], new: Condition) -> None:
    """Add or update a condition in place.

    The transition time is only moved forward when the status value
    changes, so repeated reconciles with the same outcome do not churn it.
    """
    existing = find_condition(conditions, new.type)
    if existing is None:
        conditions.append(new)
        return

    if existing.status != new.status:
        existing.status = new.status
        existing.last_transition_time = new.last_transition_time
    existing.reason = new.reason
    existing.message = new.message


# =============================================================================
# Environment
# =============================================================================


class GitRepositoryRef(ResourceModel):
    """Git reference to check out."""

    branch: str = DEFAULT_BRANCH


class Source(ResourceModel):
    """Where an environment's repository lives and how to authenticate."""

    url: Annotated[str, Field(min_length=1)]
    ref: GitRepositoryRef | None = None
    secret_ref: LocalObjectReference | None = Field(None, alias="secretRef")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not (v.startswith(("https://", "http://", "ssh://", "file://", "/")) or "@" in v):
            raise ValueError("url must be an https, ssh, scp-style or file URL")
        return v


class EnvironmentSpec(ResourceModel):
    """Desired state of an Environment."""

    path: str = ""
    source: Source
    api_token_secret_ref: LocalObjectReference | None = Field(None, alias="apiTokenSecretRef")
    git_provider: str | None = Field(None, alias="gitProvider")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Normalize path to a relative directory inside the repository.

        A leading "/" means the repository root, never the host root.
        """
        parts = [p for p in v.replace("\\", "/").split("/") if p not in ("", ".")]
        if ".." in parts:
            raise ValueError("path must not contain '..' segments")
        return "/".join(parts)


class EnvironmentStatus(ResourceModel):
    """Observed state of an Environment."""

    observed_generation: int = Field(0, alias="observedGeneration")
    conditions: list[Condition] = Field(default_factory=list)
    observed_commit_hash: str = Field("", alias="observedCommitHash")


class Environment(ResourceModel):
    """A named git-backed directory tree in one repository and branch."""

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: Literal["Environment"] = "Environment"
    metadata: ObjectMeta
    spec: EnvironmentSpec
    status: EnvironmentStatus = Field(default_factory=EnvironmentStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def branch(self) -> str:
        """Configured branch, falling back to the default branch."""
        if self.spec.source.ref is not None and self.spec.source.ref.branch:
            return self.spec.source.ref.branch
        return DEFAULT_BRANCH

    def is_ready(self) -> bool:
        condition = find_condition(self.status.conditions, READY_CONDITION)
        return condition is not None and condition.status == CONDITION_TRUE

    def mark_ready(self, reason: str, message: str, commit: str) -> None:
        self.status.observed_commit_hash = commit
        set_condition(
            self.status.conditions,
            Condition(type=READY_CONDITION, status=CONDITION_TRUE, reason=reason, message=message),
        )

    def mark_not_ready(self, reason: str, message: str) -> None:
        set_condition(
            self.status.conditions,
            Condition(type=READY_CONDITION, status=CONDITION_FALSE, reason=reason, message=message),
        )


# =============================================================================
# Promotion
# =============================================================================


class CopyOperation(ResourceModel):
    """One named source/target path pair, relative to each environment's path."""

    name: Annotated[str, Field(min_length=1)]
    source: Annotated[str, Field(min_length=1)]
    target: Annotated[str, Field(min_length=1)]


class PromotionSpec(ResourceModel):
    """Desired state of a Promotion."""

    source_environment_ref: LocalObjectReference = Field(alias="sourceEnvironmentRef")
    target_environment_ref: LocalObjectReference = Field(alias="targetEnvironmentRef")
    copy_operations: list[CopyOperation] = Field(default_factory=list, alias="copy")
    strategy: str = STRATEGY_PULL_REQUEST

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        if v != STRATEGY_PULL_REQUEST:
            raise ValueError(f"strategy must be '{STRATEGY_PULL_REQUEST}'")
        return v


class PromotionStatus(ResourceModel):
    """Observed state of a Promotion."""

    observed_generation: int = Field(0, alias="observedGeneration")
    conditions: list[Condition] = Field(default_factory=list)
    last_pull_request_url: str = Field("", alias="lastPullRequestUrl")
    last_pull_request_number: Annotated[int, Field(ge=0)] = Field(
        0, alias="lastPullRequestNumber"
    )


class Promotion(ResourceModel):
    """Intent to copy paths from one Environment to another via a pull request."""

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: Literal["Promotion"] = "Promotion"
    metadata: ObjectMeta
    spec: PromotionSpec
    status: PromotionStatus = Field(default_factory=PromotionStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def ready_condition(self) -> Condition | None:
        return find_condition(self.status.conditions, READY_CONDITION)

    def mark_ready(self, reason: str, message: str) -> None:
        set_condition(
            self.status.conditions,
            Condition(type=READY_CONDITION, status=CONDITION_TRUE, reason=reason, message=message),
        )

    def mark_not_ready(self, reason: str, message: str) -> None:
        set_condition(
            self.status.conditions,
            Condition(type=READY_CONDITION, status=CONDITION_FALSE, reason=reason, message=message),
        )


Resource = Environment | Promotion

RESOURCE_KINDS: dict[str, type[Environment] | type[Promotion]] = {
    "Environment": Environment,
    "Promotion": Promotion,
}
