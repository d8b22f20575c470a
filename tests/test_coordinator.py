from __future__ import annotations

import pytest

from forkstack.patching.coordinator import StackCoordinator
from forkstack.patching.layers import Layer, StackError

from conftest import APP_TEXT, IDENTIFIER, UTIL_TEXT, StackWorkspace, git, write_files


def _populate(stack: StackWorkspace) -> None:
    stack.upstream_commit_patches(
        stack.base_patches,
        [("Base tweak", {"README.md": "forked readme\n"})],
    )
    stack.write_file_patch(
        "src/util.py",
        stack.upstream_diff({"src/util.py": UTIL_TEXT.replace("return 1", "return 7")}),
    )
    stack.upstream_commit_patches(
        stack.feature_patches,
        [("Add feature file", {"src/feature.txt": "feature\n"})],
    )
    stack.commit_fork("Add patches")


def test_apply_runs_layers_in_order(stack: StackWorkspace) -> None:
    _populate(stack)
    coordinator = StackCoordinator(stack.settings())

    results = coordinator.apply()

    assert [result.layer for result in results] == [Layer.BASE, Layer.FILE, Layer.FEATURE]
    assert [result.applied for result in results] == [1, 1, 1]
    work = stack.work_dir
    assert (work / "README.md").read_text(encoding="utf-8") == "forked readme\n"
    assert "return 7" in (work / "src" / "util.py").read_text(encoding="utf-8")
    assert (work / "src" / "feature.txt").exists()
    assert git(work, "log", "-1", "--format=%s").strip() == "Add feature file"
    assert git(work, "log", "-1", "--format=%s", "file").strip() == f"{IDENTIFIER} File Patches"


def test_apply_selected_layers_only(stack: StackWorkspace) -> None:
    coordinator = StackCoordinator(stack.settings())
    coordinator.apply()

    results = coordinator.apply([Layer.FEATURE, Layer.FILE])

    assert [result.layer for result in results] == [Layer.FILE, Layer.FEATURE]


def test_rebuild_runs_layers_in_reverse(stack: StackWorkspace) -> None:
    _populate(stack)
    coordinator = StackCoordinator(stack.settings())
    coordinator.apply()
    write_files(stack.work_dir, {"src/second.txt": "second\n"})
    git(stack.work_dir, "add", "-A")
    git(stack.work_dir, "commit", "--quiet", "-m", "Second feature")

    results = coordinator.rebuild()

    assert [result.layer for result in results] == [Layer.FEATURE, Layer.FILE, Layer.BASE]
    features = sorted(path.name for path in stack.feature_patches.glob("*.patch"))
    assert features == ["0001-Add-feature-file.patch", "0002-Second-feature.patch"]
    assert [path.name for path in sorted(stack.base_patches.glob("*.patch"))] == ["0001-Base-tweak.patch"]
    assert (stack.file_patches / "src" / "util.py.patch").exists()


def test_strategy_follows_options(stack: StackWorkspace) -> None:
    default = StackCoordinator(stack.settings())
    assert default.strategy_for(Layer.BASE).value == "mailbox"
    assert default.strategy_for(Layer.FILE).value == "fuzzy"

    git_apply = StackCoordinator(stack.settings(git_file_patches=True))
    assert git_apply.strategy_for(Layer.FILE).value == "git-apply"
    assert git_apply.strategy_for(Layer.FEATURE).value == "mailbox"


def test_read_only_stack_keeps_layers_in_cache(stack: StackWorkspace) -> None:
    _populate(stack)
    coordinator = StackCoordinator(stack.settings(read_only=True))

    coordinator.apply()

    layers = stack.root / ".cache" / "layers"
    assert git(layers / "base", "log", "-1", "--format=%s", "patchedBase").strip() == f"{IDENTIFIER} Base Patches"
    assert git(layers / "file", "log", "-1", "--format=%s", "file").strip() == f"{IDENTIFIER} File Patches"
    assert "return 7" in (stack.work_dir / "src" / "util.py").read_text(encoding="utf-8")
    assert (stack.work_dir / "src" / "feature.txt").exists()
    assert git(stack.work_dir, "log", "-1", "--format=%s").strip() == "Add feature file"

    with pytest.raises(StackError, match="read-only"):
        coordinator.rebuild()
    with pytest.raises(StackError, match="read-only") as excinfo:
        coordinator.fixup()
    assert excinfo.value.layer is Layer.FILE


def test_status_before_and_after_apply(stack: StackWorkspace) -> None:
    _populate(stack)
    coordinator = StackCoordinator(stack.settings())

    before = coordinator.status()
    assert not before.exists
    assert before.patch_counts == {Layer.BASE: 1, Layer.FILE: 1, Layer.FEATURE: 1}
    assert before.tags == {}

    coordinator.apply()
    after = coordinator.status()

    assert after.exists
    assert set(after.tags) == {"base", "patchedBase", "file"}
    assert all(after.tags.values())
    assert not after.apply_failed
    assert not after.rebase_in_progress


def test_fixup_folds_tracked_changes_into_file_commit(stack: StackWorkspace) -> None:
    coordinator = StackCoordinator(stack.settings())
    coordinator.apply()
    work = stack.work_dir
    write_files(work, {"src/feature.txt": "feature\n"})
    git(work, "add", "-A")
    git(work, "commit", "--quiet", "-m", "Feature on top")
    (work / "src" / "app.txt").write_text(APP_TEXT.replace("line 7\n", "line seven\n"), encoding="utf-8")

    commit = coordinator.fixup()

    assert git(work, "rev-parse", "file").strip() == commit
    assert "line seven\n" in git(work, "show", "file:src/app.txt")
    assert git(work, "log", "-1", "--format=%s %an", "file").strip() == f"{IDENTIFIER} File Patches File"
    assert git(work, "rev-parse", "file~1").strip() == git(work, "rev-parse", "patchedBase").strip()
    assert git(work, "log", "-1", "--format=%s").strip() == "Feature on top"
    assert git(work, "status", "--porcelain", "--untracked-files=no").strip() == ""


def test_fixup_without_changes_returns_current_commit(stack: StackWorkspace) -> None:
    coordinator = StackCoordinator(stack.settings())
    coordinator.apply()

    assert coordinator.fixup() == git(stack.work_dir, "rev-parse", "file").strip()
