"""
SANDLOOP Change Applicator

The only code path that writes to the live workspace. Changes are
applied file by file; a failure on one file is reported and the
rest still go through.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from loguru import logger

from sandloop.workspace.diff import ChangeKind, FileChange


class ChangeApplier(Protocol):
    def apply(self, change: FileChange) -> str:
        ...


class WorkspaceApplier:
    """Writes reconciled changes into a directory on disk."""

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path).resolve()

    def apply(self, change: FileChange) -> str:
        fpath = self._resolve(change.path)

        if change.kind is ChangeKind.DELETED:
            fpath.unlink(missing_ok=True)
            return f"DELETE {change.path}"

        fpath.parent.mkdir(parents=True, exist_ok=True)
        if fpath.is_symlink():
            # Replace the link itself; never write through to its target
            fpath.unlink()
        fpath.write_bytes(change.new_content or b"")
        label = "CREATE" if change.kind is ChangeKind.CREATED else "MODIFY"
        return f"{label} {change.path}"

    def _resolve(self, relative: str) -> Path:
        """Resolve the parent directory only, so a symlinked file is addressed as the link."""
        candidate = self.repo_path / relative
        if candidate.name in ("", ".", ".."):
            raise ValueError(f"not a file path: {relative}")
        parent = candidate.parent.resolve()
        if not parent.is_relative_to(self.repo_path):
            raise ValueError(f"path escapes workspace: {relative}")
        return parent / candidate.name


def apply_changes(applier: ChangeApplier, changes: list[FileChange]) -> list[str]:
    """Apply every change, collecting one report line per file."""
    applied = []
    for change in changes:
        try:
            applied.append(applier.apply(change))
        except (OSError, ValueError) as e:
            logger.warning(f"[APPLY] {change.path} failed: {e}")
            applied.append(f"FAIL {change.path} ({e})")
    return applied
