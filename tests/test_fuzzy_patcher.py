from __future__ import annotations

import os
from pathlib import Path

import pytest

from forkstack.tools.fuzzy import FuzzyPatcher, MatchKind, PatchMode, line_similarity, window_score

APP = "".join(f"line {number}\n" for number in range(1, 11))

CHANGE_LINE_3 = (
    "diff --git a/app.txt b/app.txt\n"
    "--- a/app.txt\n"
    "+++ b/app.txt\n"
    "@@ -2,3 +2,3 @@\n"
    " line 2\n"
    "-line 3\n"
    "+LINE 3\n"
    " line 4\n"
)

CRLF_HEADER = "--- a/crlf.txt\n+++ b/crlf.txt\n@@ -1,3 +1,3 @@\n"


def _tree(tmp_path: Path, files: dict[str, str]) -> Path:
    base = tmp_path / "tree"
    for relative, content in files.items():
        target = base / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return base


def _patches(tmp_path: Path, patches: dict[str, str]) -> Path:
    directory = tmp_path / "patches"
    for name, text in patches.items():
        target = directory / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    return directory


def test_exact_match_applies_in_place(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"app.txt": APP})
    outcome = FuzzyPatcher(base, _patches(tmp_path, {"app.txt.patch": CHANGE_LINE_3})).operate()

    assert outcome.ok
    assert outcome.summary.exact == 1
    assert outcome.summary.changed_files == 1
    assert (base / "app.txt").read_text(encoding="utf-8") == APP.replace("line 3\n", "LINE 3\n")


def test_shifted_context_is_found_at_an_offset(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"app.txt": "extra a\nextra b\n" + APP})
    outcome = FuzzyPatcher(base, _patches(tmp_path, {"app.txt.patch": CHANGE_LINE_3})).operate()

    assert outcome.ok
    assert outcome.summary.offset == 1
    match = outcome.files[0].matches[0]
    assert match.kind is MatchKind.OFFSET
    assert match.line == 4
    assert "LINE 3\n" in (base / "app.txt").read_text(encoding="utf-8")


def test_exact_mode_refuses_to_move_hunks(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"app.txt": "extra a\nextra b\n" + APP})
    rejects = tmp_path / "rejects"
    outcome = FuzzyPatcher(
        base,
        _patches(tmp_path, {"app.txt.patch": CHANGE_LINE_3}),
        rejects_dir=rejects,
        mode=PatchMode.EXACT,
    ).operate()

    assert not outcome.ok
    assert outcome.exit_code == 1
    assert outcome.summary.failure_ratio == "1/1"
    assert "LINE 3" not in (base / "app.txt").read_text(encoding="utf-8")
    assert (rejects / "app.txt.rej").exists()


def test_fuzzy_mode_keeps_target_context(tmp_path: Path) -> None:
    drifted = APP.replace("line 2\n", "line  2\n").replace("line 4\n", "  line 4\n")
    base = _tree(tmp_path, {"app.txt": drifted})
    patches = _patches(tmp_path, {"app.txt.patch": CHANGE_LINE_3})

    offset_only = FuzzyPatcher(base, patches, output_dir=tmp_path / "offset", mode=PatchMode.OFFSET).operate()
    assert offset_only.summary.failed == 1

    outcome = FuzzyPatcher(base, patches, mode=PatchMode.FUZZY, min_score=0.9).operate()
    assert outcome.ok
    assert outcome.summary.fuzzy == 1
    text = (base / "app.txt").read_text(encoding="utf-8")
    assert "line  2\nLINE 3\n  line 4\n" in text


def test_unmatched_hunks_are_written_to_rejects(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"app.txt": APP})
    rejects = tmp_path / "rejects"
    bad = (
        "--- a/app.txt\n"
        "+++ b/app.txt\n"
        "@@ -1,3 +1,3 @@\n"
        " nothing like this\n"
        "-exists in the\n"
        "+appears in the\n"
        " file at all\n"
    )
    outcome = FuzzyPatcher(
        base,
        _patches(tmp_path, {"app.txt.patch": CHANGE_LINE_3, "zz-bad.patch": bad}),
        rejects_dir=rejects,
    ).operate()

    assert outcome.summary.exact == 1
    assert outcome.summary.failed == 1
    reject = (rejects / "app.txt.rej").read_text(encoding="utf-8")
    assert reject.startswith("++++ REJECTED PATCH zz-bad.patch\n--- a/app.txt\n+++ b/app.txt\n")
    assert "+appears in the" in reject
    assert "LINE 3\n" in (base / "app.txt").read_text(encoding="utf-8")


def test_new_and_deleted_files(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"old.txt": "bye\nnow\n"})
    patches = _patches(
        tmp_path,
        {
            "0001-new.patch": (
                "diff --git a/docs/new.txt b/docs/new.txt\n"
                "new file mode 100644\n"
                "--- /dev/null\n"
                "+++ b/docs/new.txt\n"
                "@@ -0,0 +1,2 @@\n"
                "+a\n"
                "+b\n"
            ),
            "0002-delete.patch": (
                "diff --git a/old.txt b/old.txt\n"
                "deleted file mode 100644\n"
                "--- a/old.txt\n"
                "+++ /dev/null\n"
                "@@ -1,2 +0,0 @@\n"
                "-bye\n"
                "-now\n"
            ),
        },
    )

    outcome = FuzzyPatcher(base, patches).operate()

    assert outcome.ok
    assert outcome.summary.changed_files == 2
    assert (base / "docs" / "new.txt").read_text(encoding="utf-8") == "a\nb\n"
    assert not (base / "old.txt").exists()


def test_hunk_needing_context_in_missing_file_fails(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"app.txt": APP})
    outcome = FuzzyPatcher(base, _patches(tmp_path, {"missing.patch": CHANGE_LINE_3.replace("app.txt", "gone.txt")})).operate()

    assert outcome.summary.failed == 1
    assert not (base / "gone.txt").exists()


def test_mode_change_counts_as_access(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"run.sh": "echo hi\n"})
    os.chmod(base / "run.sh", 0o644)
    patch = "diff --git a/run.sh b/run.sh\nold mode 100644\nnew mode 100755\n"

    outcome = FuzzyPatcher(base, _patches(tmp_path, {"run.sh.patch": patch})).operate()

    assert outcome.summary.access == 1
    assert os.stat(base / "run.sh").st_mode & 0o111


def test_output_dir_leaves_base_untouched(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"app.txt": APP, ".git/config": "ignored\n"})
    output = tmp_path / "out"

    outcome = FuzzyPatcher(base, _patches(tmp_path, {"app.txt.patch": CHANGE_LINE_3}), output_dir=output).operate()

    assert outcome.ok
    assert (base / "app.txt").read_text(encoding="utf-8") == APP
    assert "LINE 3\n" in (output / "app.txt").read_text(encoding="utf-8")
    assert not (output / ".git").exists()


def test_empty_patch_directory_is_a_noop(tmp_path: Path) -> None:
    base = _tree(tmp_path, {"app.txt": APP})
    outcome = FuzzyPatcher(base, tmp_path / "does-not-exist").operate()
    assert outcome.ok
    assert outcome.summary.total == 0


def test_similarity_ignores_whitespace() -> None:
    assert line_similarity("a  b", "ab") == 1.0
    assert line_similarity("", "x") == 0.0
    assert window_score(["x", "line 1"], 1, ["line  1"]) == 1.0


@pytest.mark.parametrize(
    "body",
    [
        " one\r\n-two\r\n+TWO\r\n three\r\n",
        " one\n-two\n+TWO\n three\n",
    ],
    ids=["git-diff-of-crlf-file", "lf-patch"],
)
def test_crlf_target_keeps_its_line_endings(tmp_path: Path, body: str) -> None:
    base = _tree(tmp_path, {"crlf.txt": "one\r\ntwo\r\nthree\r\n"})

    outcome = FuzzyPatcher(base, _patches(tmp_path, {"crlf.txt.patch": CRLF_HEADER + body})).operate()

    assert outcome.ok
    assert outcome.summary.exact == 1
    assert (base / "crlf.txt").read_bytes() == b"one\r\nTWO\r\nthree\r\n"
