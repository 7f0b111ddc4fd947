"""File-backed resource and secret stores.

Environment and Promotion manifests are Kubernetes-style YAML documents
synced onto disk (git-sync sidecar or mounted ConfigMaps). The operator
never writes to the manifests: status is persisted separately under the
status directory and merged back on read.

Secrets are read from a mounted secret volume laid out as
<secrets_dir>/<namespace>/<name>/<key>, which is how Kubernetes projects
Secret data into a pod.

SECURITY: Manifest files enforce a size limit before they are read, and
secret names are validated so a lookup cannot walk outside secrets_dir.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import (
    API_GROUP,
    RESOURCE_KINDS,
    Environment,
    Promotion,
    Resource,
)

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

# DNS-1123 subdomain, as used for Kubernetes object and secret names
VALID_OBJECT_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]{0,251}[a-z0-9])?$")


class ResourceLoadError(Exception):
    """Raised when a manifest cannot be read or fails validation."""

    pass


class SecretNotFoundError(Exception):
    """Raised when a secret or one of its keys is not present."""

    pass


def _format_validation_error(source: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def parse_resource(document: dict[str, Any], source: Path) -> Resource | None:
    """Validate one manifest document.

    Returns:
        The parsed resource, or None when the document belongs to another
        API group or kind.

    Raises:
        ResourceLoadError: If the document is ours but fails validation.
    """
    api_version = str(document.get("apiVersion", ""))
    kind = document.get("kind")
    if api_version.split("/", 1)[0] != API_GROUP or kind not in RESOURCE_KINDS:
        return None

    try:
        return RESOURCE_KINDS[kind].model_validate(document)
    except ValidationError as e:
        raise ResourceLoadError(_format_validation_error(source, e)) from e


def load_manifest_file(path: Path) -> list[Resource]:
    """Load every Environment and Promotion document from one YAML file.

    Raises:
        ResourceLoadError: If the file is too large, unreadable or invalid.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ResourceLoadError(f"Failed to stat manifest {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ResourceLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ResourceLoadError(f"Failed to read manifest {path}: {e}") from e

    try:
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise ResourceLoadError(f"Invalid YAML in {path}: {e}") from e

    resources: list[Resource] = []
    for document in documents:
        if document is None:
            continue
        if not isinstance(document, dict):
            raise ResourceLoadError(f"Manifest documents must be YAML mappings: {path}")
        resource = parse_resource(document, path)
        if resource is not None:
            resources.append(resource)
    return resources


class FileResourceStore:
    """Reads resources from a manifests directory and persists their status.

    The store is re-read on every lookup so edits synced onto disk are
    picked up by the next reconcile without restarting the operator.
    """

    def __init__(self, manifests_dir: Path, status_dir: Path) -> None:
        self._manifests_dir = manifests_dir
        self._status_dir = status_dir

    @property
    def manifests_dir(self) -> Path:
        return self._manifests_dir

    @property
    def status_dir(self) -> Path:
        return self._status_dir

    def _manifest_files(self) -> list[Path]:
        if not self._manifests_dir.is_dir():
            raise ResourceLoadError(f"Manifests directory does not exist: {self._manifests_dir}")
        return sorted(
            p for p in self._manifests_dir.rglob("*") if p.is_file() and p.suffix in MANIFEST_SUFFIXES
        )

    def load_all(self) -> list[Resource]:
        """Load every resource with its persisted status merged in.

        A file that fails to load is logged and skipped, and an identity
        defined by more than one manifest is dropped entirely. Neither
        affects resources defined elsewhere.

        Raises:
            ResourceLoadError: If the manifests directory does not exist.
        """
        loaded: dict[tuple[str, str, str], list[tuple[Path, Resource]]] = {}

        for path in self._manifest_files():
            try:
                file_resources = load_manifest_file(path)
            except ResourceLoadError as e:
                logger.error("Skipping invalid manifest", extra={"path": str(path), "error": str(e)})
                continue
            for resource in file_resources:
                key = (resource.kind, resource.namespace, resource.name)
                loaded.setdefault(key, []).append((path, resource))

        resources: list[Resource] = []
        for (kind, namespace, name), definitions in loaded.items():
            if len(definitions) > 1:
                logger.error(
                    "Ignoring resource defined by more than one manifest",
                    extra={
                        "kind": kind,
                        "namespace": namespace,
                        "resource": name,
                        "paths": [str(p) for p, _ in definitions],
                    },
                )
                continue
            resource = definitions[0][1]
            self._merge_status(resource)
            resources.append(resource)

        return resources

    def list_environments(self, namespace: str | None = None) -> list[Environment]:
        return [
            r
            for r in self.load_all()
            if isinstance(r, Environment) and (namespace is None or r.namespace == namespace)
        ]

    def list_promotions(self, namespace: str | None = None) -> list[Promotion]:
        return [
            r
            for r in self.load_all()
            if isinstance(r, Promotion) and (namespace is None or r.namespace == namespace)
        ]

    def get_environment(self, namespace: str, name: str) -> Environment | None:
        for environment in self.list_environments(namespace):
            if environment.name == name:
                return environment
        return None

    def get_promotion(self, namespace: str, name: str) -> Promotion | None:
        for promotion in self.list_promotions(namespace):
            if promotion.name == name:
                return promotion
        return None

    def _status_path(self, kind: str, namespace: str, name: str) -> Path:
        return self._status_dir / kind.lower() / namespace / f"{name}.yaml"

    def _merge_status(self, resource: Resource) -> None:
        path = self._status_path(resource.kind, resource.namespace, resource.name)
        if not path.is_file():
            return

        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            # A corrupt status file is equivalent to no recorded status
            logger.warning(
                "Ignoring unreadable status file",
                extra={"path": str(path), "error": str(e)},
            )
            return

        if not isinstance(raw, dict):
            return

        status_class = type(resource.status)
        try:
            resource.status = status_class.model_validate(raw)
        except ValidationError as e:
            logger.warning(
                "Ignoring invalid status file",
                extra={"path": str(path), "error": str(e)},
            )

    def update_status(self, resource: Resource) -> None:
        """Persist a resource's status atomically. Only status is written.

        Raises:
            OSError: If the status file cannot be written.
        """
        path = self._status_path(resource.kind, resource.namespace, resource.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(
            resource.status.model_dump(by_alias=True, mode="json"),
            sort_keys=False,
        )

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(
            "Persisted status",
            extra={"kind": resource.kind, "namespace": resource.namespace, "resource": resource.name},
        )


class FileSecretStore:
    """Reads secret data from a mounted secret volume."""

    def __init__(self, secrets_dir: Path) -> None:
        self._secrets_dir = secrets_dir

    def get(self, namespace: str, name: str, key: str) -> bytes:
        """Return the raw bytes stored under one key of a secret.

        Raises:
            SecretNotFoundError: If the secret or key does not exist.
        """
        for part, label in ((namespace, "namespace"), (name, "secret name")):
            if not VALID_OBJECT_NAME_PATTERN.match(part):
                raise SecretNotFoundError(f"Invalid {label}: {part!r}")
        if not re.match(r"^[-._a-zA-Z0-9]+$", key) or key in (".", ".."):
            raise SecretNotFoundError(f"Invalid secret key: {key!r}")

        secret_dir = self._secrets_dir / namespace / name
        if not secret_dir.is_dir():
            raise SecretNotFoundError(f"Secret {namespace}/{name} not found")

        key_path = secret_dir / key
        if not key_path.is_file():
            raise SecretNotFoundError(f"Secret {namespace}/{name} has no key '{key}'")

        try:
            return key_path.read_bytes()
        except OSError as e:
            raise SecretNotFoundError(f"Failed to read secret {namespace}/{name}: {e}") from e
