"""
SANDLOOP Workspace Overlay

Copy-on-write sandboxing. Every run gets a private clone of the
workspace plus a scratch directory for the generated script, so
model-written code can mutate files freely without ever touching
the live project. The net diff is computed once, at teardown.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Iterable
from pathlib import Path

from loguru import logger

from sandloop.workspace.diff import FileChange, compute_changes


DEFAULT_EXCLUDED_DIRS = (".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv")


class SandboxCreationError(Exception):
    pass


class OverlaySession:
    """
    Owns one temporary root:

        <root>/workspace   full clone of the workspace at session start
        <root>/scratch     the current iteration's script
    """

    def __init__(
        self,
        workspace_root: Path,
        script_name: str = "index.py",
        excluded_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
        prefer_copy_on_write: bool = True,
    ):
        self.workspace_root = Path(workspace_root).resolve()
        self.script_name = script_name
        self.excluded_dirs = tuple(excluded_dirs)
        self.prefer_copy_on_write = prefer_copy_on_write
        self._root: Path | None = None
        self._changes: list[FileChange] | None = None

    @property
    def root(self) -> Path:
        if self._root is None:
            raise SandboxCreationError("Overlay session has not been created")
        return self._root

    @property
    def clone_root(self) -> Path:
        return self.root / "workspace"

    @property
    def scratch_dir(self) -> Path:
        return self.root / "scratch"

    @property
    def script_path(self) -> Path:
        return self.scratch_dir / self.script_name

    @property
    def active(self) -> bool:
        return self._root is not None and self._root.exists()

    def create(self) -> Path:
        """
        Clone the workspace into a fresh temp root.
        Either the overlay exists completely afterwards or not at all.
        """
        if not self.workspace_root.is_dir():
            raise SandboxCreationError(f"Workspace not found: {self.workspace_root}")

        self._root = Path(tempfile.mkdtemp(prefix="sandloop-"))
        try:
            self._clone_tree()
            self._contain_symlinks()
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        except SandboxCreationError:
            self.cleanup()
            raise
        except OSError as e:
            self.cleanup()
            raise SandboxCreationError(f"Failed to prepare overlay: {e}") from e

        logger.info(f"[OVERLAY] Sandbox created: {self.clone_root}")
        return self.clone_root

    def write_script(self, source: str) -> Path:
        self.script_path.write_text(source, encoding="utf-8")
        return self.script_path

    def clear_script(self) -> None:
        """Remove the current script. Never raises."""
        try:
            self.script_path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"[OVERLAY] Could not remove script: {e}")

    def finalize(self) -> list[FileChange]:
        """Diff the clone against the original, then tear the overlay down."""
        if self._changes is not None:
            return self._changes

        try:
            self._changes = compute_changes(
                self.workspace_root, self.clone_root, self.excluded_dirs
            )
        finally:
            self.cleanup()

        logger.info(f"[OVERLAY] Finalized with {len(self._changes)} change(s)")
        return self._changes

    def cleanup(self) -> None:
        if self._root is not None and self._root.exists():
            shutil.rmtree(self._root, ignore_errors=True)
            logger.debug(f"[OVERLAY] Removed {self._root}")

    # ------------------------------------------------------------------ #
    # Clone strategies
    # ------------------------------------------------------------------ #

    def _clone_tree(self) -> None:
        cow_error = "disabled"
        if self.prefer_copy_on_write:
            try:
                self._copy_on_write()
                logger.debug("[OVERLAY] Copy-on-write clone succeeded")
                return
            except SandboxCreationError as e:
                cow_error = str(e)
                logger.debug(f"[OVERLAY] Copy-on-write unavailable, falling back: {e}")
                shutil.rmtree(self.clone_root, ignore_errors=True)

        try:
            shutil.copytree(self.workspace_root, self.clone_root, symlinks=True)
        except (OSError, shutil.Error) as e:
            raise SandboxCreationError(
                f"Failed to clone workspace.\n"
                f"copy-on-write: {cow_error}\n"
                f"recursive copy: {e}"
            ) from e

    def _contain_symlinks(self) -> None:
        """
        Repoint absolute links that lead into the live workspace at the
        same path inside the clone. Relative links already resolve within
        the clone because it mirrors the tree.
        """
        for dirpath, dirnames, filenames in os.walk(self.clone_root):
            for name in dirnames + filenames:
                link = Path(dirpath) / name
                if not link.is_symlink():
                    continue
                target = os.readlink(link)
                if not os.path.isabs(target):
                    continue
                real = Path(os.path.realpath(target))
                if not real.is_relative_to(self.workspace_root):
                    continue
                link.unlink()
                link.symlink_to(self.clone_root / real.relative_to(self.workspace_root))
                logger.debug(
                    f"[OVERLAY] Repointed {link.relative_to(self.clone_root)} into the clone"
                )

    def _copy_on_write(self) -> None:
        if sys.platform.startswith("linux"):
            cmd = ["cp", "-a", "--reflink=always", str(self.workspace_root), str(self.clone_root)]
        elif sys.platform == "darwin":
            cmd = ["cp", "-c", "-R", str(self.workspace_root), str(self.clone_root)]
        else:
            raise SandboxCreationError(f"no copy-on-write strategy for {sys.platform}")
        self._run_cmd(cmd)

    @staticmethod
    def _run_cmd(cmd: list[str]) -> str:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=600)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SandboxCreationError(f"{' '.join(cmd[:3])}: {e}") from e
        if result.returncode != 0:
            raise SandboxCreationError((result.stderr or result.stdout).strip() or f"exit {result.returncode}")
        return result.stdout
