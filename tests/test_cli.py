from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from forkstack.cli import app

from conftest import StackWorkspace, UTIL_TEXT, git

runner = CliRunner()

BAD_PATCH = (
    "--- a/src/app.txt\n"
    "+++ b/src/app.txt\n"
    "@@ -1,2 +1,2 @@\n"
    " missing context\n"
    "-old text\n"
    "+new text\n"
)


def _invoke(*args: str):
    return runner.invoke(app, list(args), catch_exceptions=False)


def test_status_before_apply(stack: StackWorkspace) -> None:
    result = _invoke("status", "--config", str(stack.config_path))

    assert result.exit_code == 0, result.output
    assert "has not been created yet" in result.output
    assert "- Base patches: 0" in result.output


def test_apply_then_status(stack: StackWorkspace) -> None:
    stack.write_file_patch(
        "src/util.py",
        stack.upstream_diff({"src/util.py": UTIL_TEXT.replace("return 1", "return 5")}),
    )

    applied = _invoke("apply", "--config", str(stack.config_path))

    assert applied.exit_code == 0, applied.output
    assert "- File: applied 1 patch(es) via fuzzy" in applied.output
    assert "Patch stack applied to" in applied.output

    status = _invoke("status", "-c", str(stack.config_path))
    assert status.exit_code == 0, status.output
    assert "- tag patchedBase: " in status.output
    assert "missing" not in status.output


def test_failed_apply_reports_next_step(stack: StackWorkspace) -> None:
    stack.write_file_patch("src/app.txt", BAD_PATCH)

    applied = _invoke("apply", "--config", str(stack.config_path))

    assert applied.exit_code == 1
    assert "Error: [Demo file] Failed to apply 1/1 hunks" in applied.output
    assert "Next:" in applied.output

    status = _invoke("status", "--config", str(stack.config_path))
    assert status.exit_code == 1
    assert "The last apply failed." in status.output


def test_rebuild_selected_layer(stack: StackWorkspace) -> None:
    assert _invoke("apply", "--config", str(stack.config_path)).exit_code == 0
    (stack.work_dir / "notes.txt").write_text("notes\n", encoding="utf-8")
    git(stack.work_dir, "add", "-A")
    git(stack.work_dir, "commit", "--quiet", "-m", "Add notes")

    result = _invoke("rebuild", "--config", str(stack.config_path), "--layer", "feature", "--no-filter")

    assert result.exit_code == 0, result.output
    assert "- Feature: saved 1/1 modified patch(es), 0 unchanged" in result.output
    assert (stack.feature_patches / "0001-Add-notes.patch").exists()


def test_unknown_layer_is_a_usage_error(stack: StackWorkspace) -> None:
    result = runner.invoke(app, ["apply", "--config", str(stack.config_path), "--layer", "bogus"])
    assert result.exit_code == 2


def test_missing_config_exits_with_error(tmp_path: Path) -> None:
    result = _invoke("apply", "--config", str(tmp_path / "nope.yaml"))

    assert result.exit_code == 1
    assert "Settings file not found" in result.output


def test_patch_command(tmp_path: Path) -> None:
    base = tmp_path / "base"
    (base / "src").mkdir(parents=True)
    (base / "src" / "app.txt").write_text("a\nold text\nb\n", encoding="utf-8")
    patches = tmp_path / "patches"
    patches.mkdir()
    (patches / "app.patch").write_text(
        "--- a/src/app.txt\n+++ b/src/app.txt\n@@ -1,3 +1,3 @@\n a\n-old text\n+new text\n b\n",
        encoding="utf-8",
    )

    result = _invoke("patch", str(base), str(patches))

    assert result.exit_code == 0, result.output
    assert "Patched 1 file(s): exact=1" in result.output
    assert (base / "src" / "app.txt").read_text(encoding="utf-8") == "a\nnew text\nb\n"

    (patches / "app.patch").write_text(BAD_PATCH, encoding="utf-8")
    failed = _invoke("patch", str(base), str(patches), "--rejects", str(tmp_path / "rejects"))

    assert failed.exit_code == 1
    assert "Failed to apply 1/1 hunks" in failed.output
