"""Root-confined copy operations between environment workspaces.

Both sides of a copy operation are resolved against their environment
root before anything on disk is touched. A path that would land outside
its root, lexically or through a symlink, is rejected.

Copy semantics:
- directory source: its contents are merged recursively into target
- file source, existing directory target: the file lands inside it
- file source otherwise: copied to the literal target path

Missing parent directories of the target are always created. Only file
content is carried over and modes are not copied. Symlinks inside a copied
tree are followed only when they resolve inside the environment root.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import CopyError, PathEscapeError, SourceNotFoundError
from .models import CopyOperation

logger = logging.getLogger(__name__)

# Repository metadata is never copied between clones
GIT_DIR = ".git"


@dataclass(frozen=True)
class ResolvedCopy:
    """A copy operation with both paths resolved inside their roots."""

    operation: CopyOperation
    source: Path
    target: Path
    source_root: Path
    target_root: Path
    # Target was written with a trailing separator and must be a directory
    target_is_dir_hint: bool = False


def secure_join(root: Path, unsafe_path: str) -> Path:
    """Join unsafe_path onto root, refusing results outside root.

    Symlinks are resolved, so a link inside the root that points outside
    it is treated the same as a "../" traversal.

    Raises:
        PathEscapeError: If the joined path is not contained in root.
    """
    resolved_root = root.resolve()
    if os.path.isabs(unsafe_path):
        raise PathEscapeError(f"Path must be relative to the environment root: {unsafe_path}")

    candidate = (resolved_root / unsafe_path).resolve()
    if candidate != resolved_root and not candidate.is_relative_to(resolved_root):
        raise PathEscapeError(f"Path {unsafe_path!r} escapes environment root {root}")
    return candidate


def resolve_copy_paths(source_root: Path, target_root: Path, operation: CopyOperation) -> ResolvedCopy:
    """Resolve both sides of a copy operation.

    Raises:
        PathEscapeError: If either side escapes its environment root.
    """
    source = secure_join(source_root, operation.source)
    target = secure_join(target_root, operation.target)
    if GIT_DIR in target.relative_to(target_root.resolve()).parts:
        raise PathEscapeError(f"Copy target {operation.target!r} points into repository metadata")
    return ResolvedCopy(
        operation=operation,
        source=source,
        target=target,
        source_root=source_root.resolve(),
        target_root=target_root.resolve(),
        target_is_dir_hint=operation.target.endswith(("/", os.sep)),
    )


def _reject_escaping_links(tree: Path, root: Path) -> None:
    """Raise PathEscapeError for any symlink under tree resolving outside root."""
    visited: set[Path] = set()
    for dirpath, dirnames, filenames in os.walk(tree, followlinks=True):
        real = Path(dirpath).resolve()
        if real in visited:
            dirnames[:] = []
            continue
        visited.add(real)
        dirnames[:] = [d for d in dirnames if d != GIT_DIR]

        for entry in (*dirnames, *filenames):
            path = Path(dirpath) / entry
            if not path.is_symlink():
                continue
            resolved = path.resolve()
            if resolved != root and not resolved.is_relative_to(root):
                raise PathEscapeError(
                    f"Symlink {path.relative_to(tree)} in {tree} points outside environment root {root}"
                )


def copy_operation(resolved: ResolvedCopy) -> Path:
    """Copy the resolved source onto the resolved target.

    Returns:
        The path that was written.

    Raises:
        SourceNotFoundError: If the source does not exist.
        PathEscapeError: If a symlink inside either tree leaves its root.
        CopyError: If the filesystem copy fails.
    """
    source, target = resolved.source, resolved.target

    if not source.exists():
        raise SourceNotFoundError(
            f"Copy operation '{resolved.operation.name}': source path {resolved.operation.source} does not exist"
        )

    if source.is_dir():
        _reject_escaping_links(source, resolved.source_root)
        if target.is_dir():
            _reject_escaping_links(target, resolved.target_root)

    try:
        if source.is_dir():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(
                source,
                target,
                dirs_exist_ok=True,
                copy_function=shutil.copyfile,
                ignore=shutil.ignore_patterns(GIT_DIR),
            )
            written = target
        else:
            if target.is_dir() or resolved.target_is_dir_hint:
                target.mkdir(parents=True, exist_ok=True)
                target = target / source.name
                if target.is_symlink() and not target.resolve().is_relative_to(resolved.target_root):
                    raise PathEscapeError(f"Copy target {target} points outside environment root")
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
            written = target
    except (OSError, shutil.Error) as e:
        raise CopyError(f"Copy operation '{resolved.operation.name}' failed: {e}") from e

    logger.debug(
        "Copied path",
        extra={
            "operation": resolved.operation.name,
            "source": str(source),
            "target": str(written),
        },
    )
    return written
