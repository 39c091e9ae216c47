"""
SANDLOOP Diff Engine

Reconciles the overlay clone against the original workspace.
The change set is a pure function of the two trees: no per-iteration
bookkeeping, no dependence on walk order.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class FileChange(BaseModel):
    """One reconciled difference between the workspace and its clone."""
    model_config = ConfigDict(frozen=True)

    path: str  # workspace-relative, forward slashes
    kind: ChangeKind
    original_content: bytes | None = None
    new_content: bytes | None = None

    @property
    def new_text(self) -> str:
        return (self.new_content or b"").decode("utf-8", errors="replace")

    @property
    def original_text(self) -> str:
        return (self.original_content or b"").decode("utf-8", errors="replace")

    def describe(self) -> str:
        return f"{self.kind.value.upper()} {self.path}"


def snapshot_tree(root: Path, excluded_dirs: Iterable[str] = ()) -> dict[str, bytes]:
    """
    Read every regular file under root, keyed by posix relative path.

    Symlinks are not part of the snapshot: their content belongs to the
    target, so they are never reported as changes.
    """
    excluded = set(excluded_dirs)
    snapshot: dict[str, bytes] = {}

    for dirpath, dirnames, filenames in os.walk(root):
        # Prune in place so os.walk never descends into excluded dirs
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        base = Path(dirpath)
        for name in filenames:
            full = base / name
            rel = full.relative_to(root).as_posix()
            if full.is_symlink():
                logger.debug(f"[DIFF] Skipping symlink {rel}")
                continue
            try:
                snapshot[rel] = full.read_bytes()
            except OSError as e:
                logger.warning(f"[DIFF] Skipping unreadable file {rel}: {e}")

    return snapshot


def compute_changes(
    original_root: Path,
    clone_root: Path,
    excluded_dirs: Iterable[str] = (),
) -> list[FileChange]:
    """Classify every path present in either tree; unchanged paths are omitted."""
    excluded = list(excluded_dirs)
    before = snapshot_tree(original_root, excluded)
    after = snapshot_tree(clone_root, excluded)

    changes: list[FileChange] = []
    for path in sorted(before.keys() | after.keys()):
        old = before.get(path)
        new = after.get(path)
        if old is None:
            changes.append(FileChange(path=path, kind=ChangeKind.CREATED, new_content=new))
        elif new is None:
            changes.append(FileChange(path=path, kind=ChangeKind.DELETED, original_content=old))
        elif old != new:
            changes.append(FileChange(
                path=path,
                kind=ChangeKind.MODIFIED,
                original_content=old,
                new_content=new,
            ))

    logger.debug(
        f"[DIFF] {len(before)} original files, {len(after)} clone files, "
        f"{len(changes)} changes"
    )
    return changes
