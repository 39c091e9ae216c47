import os
from pathlib import Path

import pytest

from sandloop.workspace import OverlaySession, SandboxCreationError
from sandloop.workspace.diff import ChangeKind, compute_changes, snapshot_tree


def _session(repo: Path, **kwargs) -> OverlaySession:
    session = OverlaySession(repo, **kwargs)
    session.create()
    return session


@pytest.mark.parametrize("prefer_cow", [True, False])
def test_create_clones_workspace(repo, prefer_cow):
    session = _session(repo, prefer_copy_on_write=prefer_cow)
    try:
        assert (session.clone_root / "README.md").read_text() == "# demo\n"
        assert (session.clone_root / "src" / "app.py").exists()
        assert session.scratch_dir.is_dir()
        assert session.script_path == session.scratch_dir / "index.py"
        assert not session.script_path.is_relative_to(session.clone_root)
    finally:
        session.cleanup()


def test_missing_workspace_raises(tmp_path):
    session = OverlaySession(tmp_path / "nope")
    with pytest.raises(SandboxCreationError):
        session.create()
    assert not session.active


def test_identical_clone_has_no_changes(repo):
    session = _session(repo)
    assert session.finalize() == []


def test_added_nested_file_is_one_created_change(repo):
    session = _session(repo)
    (session.clone_root / "a").mkdir()
    (session.clone_root / "a" / "b.txt").write_text("new")

    changes = session.finalize()

    assert len(changes) == 1
    assert changes[0].path == "a/b.txt"
    assert changes[0].kind is ChangeKind.CREATED
    assert changes[0].new_content == b"new"
    assert changes[0].original_content is None


def test_removed_file_is_one_deleted_change(repo):
    session = _session(repo)
    (session.clone_root / "c.txt").unlink()

    changes = session.finalize()

    assert len(changes) == 1
    assert changes[0].kind is ChangeKind.DELETED
    assert changes[0].path == "c.txt"
    assert changes[0].original_content == b"remove me\n"


def test_modified_file_and_sorting(repo):
    session = _session(repo)
    (session.clone_root / "src" / "app.py").write_text("print('changed')\n")
    (session.clone_root / "zzz.txt").write_text("z")
    (session.clone_root / "c.txt").unlink()

    changes = session.finalize()

    assert [c.path for c in changes] == ["c.txt", "src/app.py", "zzz.txt"]
    assert [c.kind for c in changes] == [ChangeKind.DELETED, ChangeKind.MODIFIED, ChangeKind.CREATED]
    assert changes[1].original_text == "print('app')\n"
    assert changes[1].new_text == "print('changed')\n"


def test_finalize_is_idempotent_and_removes_root(repo):
    session = _session(repo)
    root = session.root
    (session.clone_root / "x.txt").write_text("x")

    first = session.finalize()
    second = session.finalize()

    assert first is second
    assert not root.exists()
    assert not session.active


def test_live_workspace_untouched_by_clone_writes(repo):
    session = _session(repo)
    (session.clone_root / "README.md").write_text("overwritten")
    (session.clone_root / "new.txt").write_text("n")
    session.finalize()

    assert (repo / "README.md").read_text() == "# demo\n"
    assert not (repo / "new.txt").exists()


def test_excluded_dirs_are_ignored(repo):
    (repo / ".git").mkdir()
    (repo / ".git" / "HEAD").write_text("ref")
    session = _session(repo)
    (session.clone_root / ".git" / "HEAD").write_text("changed")
    (session.clone_root / "pkg" / "__pycache__").mkdir(parents=True)
    (session.clone_root / "pkg" / "__pycache__" / "m.pyc").write_bytes(b"\x00")

    assert session.finalize() == []


def test_script_write_and_clear(repo):
    session = _session(repo, script_name="run.py")
    try:
        path = session.write_script("print(1)")
        assert path.name == "run.py"
        assert path.read_text() == "print(1)"
        session.write_script("print(2)")
        assert path.read_text() == "print(2)"

        session.clear_script()
        assert not path.exists()
        session.clear_script()
    finally:
        session.cleanup()


def test_compute_changes_ignores_walk_order(tmp_path):
    before = tmp_path / "before"
    after = tmp_path / "after"
    for root in (before, after):
        (root / "d").mkdir(parents=True)
    (before / "d" / "same.txt").write_text("s")
    (after / "d" / "same.txt").write_text("s")
    (after / "b.txt").write_text("b")
    (after / "a.txt").write_text("a")

    changes = compute_changes(before, after)
    assert [c.path for c in changes] == ["a.txt", "b.txt"]
    assert snapshot_tree(before) == {"d/same.txt": b"s"}


def test_absolute_link_into_workspace_is_repointed_at_clone(repo):
    (repo / "abs_link.md").symlink_to(repo / "README.md")
    session = _session(repo)

    (session.clone_root / "abs_link.md").write_text("mutated in sandbox")

    assert (repo / "README.md").read_text() == "# demo\n"
    assert (session.clone_root / "README.md").read_text() == "mutated in sandbox"
    assert os.readlink(session.clone_root / "abs_link.md") == str(session.clone_root / "README.md")

    changes = session.finalize()
    assert [(c.path, c.kind) for c in changes] == [("README.md", ChangeKind.MODIFIED)]


def test_absolute_link_into_workspace_dir_is_repointed(repo):
    (repo / "src_link").symlink_to(repo / "src")
    session = _session(repo)

    (session.clone_root / "src_link" / "app.py").write_text("print('sandbox')\n")

    assert (repo / "src" / "app.py").read_text() == "print('app')\n"
    assert [c.path for c in session.finalize()] == ["src/app.py"]


def test_relative_link_stays_inside_clone(repo):
    (repo / "rel.txt").symlink_to("c.txt")
    session = _session(repo)

    (session.clone_root / "rel.txt").write_text("through the link")

    assert (repo / "c.txt").read_text() == "remove me\n"
    assert os.readlink(session.clone_root / "rel.txt") == "c.txt"
    session.cleanup()


def test_links_outside_workspace_are_left_alone(repo, tmp_path):
    outside = tmp_path / "outside.txt"
    outside.write_text("elsewhere")
    (repo / "out_link.txt").symlink_to(outside)
    session = _session(repo)

    assert os.readlink(session.clone_root / "out_link.txt") == str(outside)
    session.cleanup()


def test_symlinks_are_not_reported_as_changes(repo):
    (repo / "real.txt").write_text("real")
    (repo / "link.txt").symlink_to("real.txt")
    session = _session(repo)

    (session.clone_root / "link.txt").unlink()
    (session.clone_root / "new_link.txt").symlink_to("real.txt")

    assert session.finalize() == []
    assert "link.txt" not in snapshot_tree(repo)
