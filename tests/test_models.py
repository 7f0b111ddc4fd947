"""Tests for Pydantic resource models and condition helpers."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from promotions.models import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    READY_CONDITION,
    Condition,
    Environment,
    Promotion,
    find_condition,
    set_condition,
)


def environment_document(**spec_overrides) -> dict:
    spec = {
        "path": "envs/prod",
        "source": {"url": "https://github.com/acme/production", "ref": {"branch": "main"}},
    }
    spec.update(spec_overrides)
    return {
        "apiVersion": "promotions.gitopsprom.io/v1alpha1",
        "kind": "Environment",
        "metadata": {"name": "production", "namespace": "team-a"},
        "spec": spec,
    }


def promotion_document(**spec_overrides) -> dict:
    spec = {
        "sourceEnvironmentRef": {"name": "staging"},
        "targetEnvironmentRef": {"name": "production"},
        "copy": [
            {"name": "app", "source": "app", "target": "app"},
            {"name": "config", "source": "config/settings.yaml", "target": "config/"},
        ],
    }
    spec.update(spec_overrides)
    return {
        "apiVersion": "promotions.gitopsprom.io/v1alpha1",
        "kind": "Promotion",
        "metadata": {"name": "app-to-prod", "namespace": "team-a", "generation": 3},
        "spec": spec,
    }


class TestEnvironment:
    """Tests for Environment model."""

    def test_parse_manifest(self) -> None:
        """Test parsing a camelCase manifest."""
        env = Environment.model_validate(
            environment_document(
                apiTokenSecretRef={"name": "gh-token"},
                gitProvider="github",
            )
        )

        assert env.name == "production"
        assert env.namespace == "team-a"
        assert env.branch == "main"
        assert env.spec.path == "envs/prod"
        assert env.spec.api_token_secret_ref.name == "gh-token"
        assert env.spec.git_provider == "github"
        assert env.spec.source.secret_ref is None

    def test_default_branch(self) -> None:
        """Test that a missing ref falls back to master."""
        document = environment_document()
        del document["spec"]["source"]["ref"]

        env = Environment.model_validate(document)

        assert env.branch == "master"

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/", ""),
            ("/envs/prod", "envs/prod"),
            ("./envs//prod/", "envs/prod"),
            ("", ""),
        ],
    )
    def test_path_is_relative_to_repository(self, path: str, expected: str) -> None:
        """Test that absolute and untidy paths are normalized inside the repository."""
        env = Environment.model_validate(environment_document(path=path))

        assert env.spec.path == expected

    @pytest.mark.parametrize("path", ["..", "envs/../../etc", "/../host"])
    def test_path_traversal_rejected(self, path: str) -> None:
        """Test that parent directory segments fail validation."""
        with pytest.raises(ValidationError):
            Environment.model_validate(environment_document(path=path))

    def test_invalid_url(self) -> None:
        """Test that a bare word is not accepted as a repository URL."""
        with pytest.raises(ValidationError):
            Environment.model_validate(environment_document(source={"url": "production"}))

    def test_unknown_fields_ignored(self) -> None:
        """Test that extra manifest fields do not fail validation."""
        document = environment_document(interval="5m")
        document["metadata"]["labels"] = {"team": "a"}

        env = Environment.model_validate(document)

        assert env.name == "production"

    def test_readiness(self) -> None:
        """Test marking an environment ready and not ready."""
        env = Environment.model_validate(environment_document())
        assert env.is_ready() is False

        env.mark_ready("Succeeded", "cloned", "abc123")
        assert env.is_ready() is True
        assert env.status.observed_commit_hash == "abc123"

        env.mark_not_ready("EnvironmentOperationFailed", "auth failed")
        assert env.is_ready() is False


class TestPromotion:
    """Tests for Promotion model."""

    def test_parse_manifest(self) -> None:
        """Test that copy operations keep their declared order."""
        promotion = Promotion.model_validate(promotion_document())

        assert promotion.metadata.generation == 3
        assert promotion.spec.strategy == "pull-request"
        assert [op.name for op in promotion.spec.copy_operations] == ["app", "config"]
        assert promotion.status.last_pull_request_number == 0
        assert promotion.status.last_pull_request_url == ""

    def test_unsupported_strategy(self) -> None:
        """Test that strategies other than pull-request are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            Promotion.model_validate(promotion_document(strategy="direct-push"))

        assert "pull-request" in str(exc_info.value)

    def test_empty_copy_path(self) -> None:
        """Test that copy operations need both paths."""
        with pytest.raises(ValidationError):
            Promotion.model_validate(promotion_document(copy=[{"name": "x", "source": "", "target": "y"}]))

    def test_status_round_trip_uses_aliases(self) -> None:
        """Test that status serializes with manifest field names."""
        promotion = Promotion.model_validate(promotion_document())
        promotion.status.last_pull_request_number = 7
        promotion.status.last_pull_request_url = "https://github.com/acme/production/pull/7"
        promotion.mark_ready("Succeeded", "New Pull request created successfully")

        dumped = promotion.status.model_dump(by_alias=True, mode="json")

        assert dumped["lastPullRequestNumber"] == 7
        assert dumped["lastPullRequestUrl"] == "https://github.com/acme/production/pull/7"
        assert "lastTransitionTime" in dumped["conditions"][0]

    def test_negative_request_number_rejected(self) -> None:
        """Test that lastPullRequestNumber cannot be negative."""
        document = promotion_document()
        document["status"] = {"lastPullRequestNumber": -1}

        with pytest.raises(ValidationError):
            Promotion.model_validate(document)


class TestConditions:
    """Tests for condition helpers."""

    def test_set_appends_new_condition(self) -> None:
        """Test that a new condition type is appended."""
        conditions: list[Condition] = []

        set_condition(conditions, Condition(type=READY_CONDITION, status=CONDITION_TRUE, reason="Succeeded"))

        assert len(conditions) == 1
        assert find_condition(conditions, READY_CONDITION).reason == "Succeeded"

    def test_transition_time_kept_when_status_unchanged(self) -> None:
        """Test that repeating a status only updates reason and message."""
        earlier = datetime(2024, 1, 1, tzinfo=UTC)
        conditions = [
            Condition(
                type=READY_CONDITION,
                status=CONDITION_TRUE,
                reason="Succeeded",
                message="old",
                lastTransitionTime=earlier,
            )
        ]

        set_condition(conditions, Condition(type=READY_CONDITION, status=CONDITION_TRUE, message="new"))

        assert conditions[0].message == "new"
        assert conditions[0].last_transition_time == earlier

    def test_transition_time_moves_when_status_changes(self) -> None:
        """Test that a status flip records a new transition time."""
        earlier = datetime(2024, 1, 1, tzinfo=UTC)
        conditions = [
            Condition(type=READY_CONDITION, status=CONDITION_TRUE, lastTransitionTime=earlier)
        ]

        set_condition(conditions, Condition(type=READY_CONDITION, status=CONDITION_FALSE, reason="Failed"))

        assert conditions[0].status == CONDITION_FALSE
        assert conditions[0].last_transition_time > earlier

    def test_find_missing_condition(self) -> None:
        """Test that a missing type returns None."""
        assert find_condition([], READY_CONDITION) is None
