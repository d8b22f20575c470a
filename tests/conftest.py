from __future__ import annotations

import itertools
import subprocess
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Tuple

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from forkstack.settings import StackSettings, parse_settings  # noqa: E402

IDENTIFIER = "Demo"
APP_TEXT = "".join(f"line {number}\n" for number in range(1, 21))
UTIL_TEXT = "def helper():\n    return 1\n"
README_TEXT = "upstream readme\n"


def git(root: Path, *args: str) -> str:
    """Run git in ``root`` and return stdout, failing the test on a non-zero exit."""

    completed = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def write_files(root: Path, files: Mapping[str, str]) -> None:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


@pytest.fixture(autouse=True)
def isolated_git_config(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Give every test the same git identity and defaults regardless of the host."""

    home = tmp_path_factory.mktemp("git-home")
    config = home / ".gitconfig"
    config.write_text(
        textwrap.dedent(
            """
            [user]
                name = Fork Maintainer
                email = maintainer@example.com
            [commit]
                gpgsign = false
            [tag]
                gpgsign = false
            [init]
                defaultBranch = main
            [advice]
                detachedHead = false
            """
        ).lstrip(),
        encoding="utf-8",
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("FORKSTACK_FILTER_PATCHES", raising=False)
    return config


@pytest.fixture()
def upstream(tmp_path: Path) -> Path:
    """Create the upstream repository every fork in the tests is built from."""

    repo = tmp_path / "upstream"
    repo.mkdir()
    git(repo, "init", "--quiet")
    write_files(repo, {"README.md": README_TEXT, "src/app.txt": APP_TEXT, "src/util.py": UTIL_TEXT})
    git(repo, "add", "-A")
    git(repo, "commit", "--quiet", "-m", "Initial upstream")
    return repo


@dataclass(slots=True)
class StackWorkspace:
    """A fork checkout: settings, patch directories and a work tree location."""

    root: Path
    upstream: Path
    config_path: Path
    _scratch: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    @property
    def work_dir(self) -> Path:
        return self.root / "work"

    @property
    def base_patches(self) -> Path:
        return self.root / "patches" / "base"

    @property
    def file_patches(self) -> Path:
        return self.root / "patches" / "files"

    @property
    def feature_patches(self) -> Path:
        return self.root / "patches" / "features"

    @property
    def rejects(self) -> Path:
        return self.root / "patches" / "rejects"

    def raw_settings(self) -> Dict[str, Any]:
        return yaml.safe_load(self.config_path.read_text(encoding="utf-8"))

    def settings(self, **options: Any) -> StackSettings:
        data = self.raw_settings()
        data.setdefault("options", {}).update(options)
        return parse_settings(data, root=self.root)

    def write_options(self, **options: Any) -> None:
        data = self.raw_settings()
        data.setdefault("options", {}).update(options)
        self.config_path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")

    def _scratch_clone(self) -> Path:
        scratch = self.root.parent / f"scratch-{next(self._scratch)}"
        subprocess.run(
            ["git", "clone", "--quiet", str(self.upstream), str(scratch)],
            check=True,
            capture_output=True,
            text=True,
        )
        return scratch

    def upstream_commit_patches(self, output: Path, commits: Iterable[Tuple[str, Mapping[str, str]]]) -> list[Path]:
        """Commit ``commits`` on top of upstream and write them out with format-patch."""

        scratch = self._scratch_clone()
        count = 0
        for message, files in commits:
            write_files(scratch, files)
            git(scratch, "add", "-A")
            git(scratch, "commit", "--quiet", "-m", message)
            count += 1
        output.mkdir(parents=True, exist_ok=True)
        written = git(scratch, "format-patch", "-o", str(output), f"HEAD~{count}..HEAD")
        return [Path(line) for line in written.splitlines() if line.strip()]

    def upstream_diff(self, files: Mapping[str, str]) -> str:
        """Return the ``git diff`` that turns upstream into ``files``."""

        scratch = self._scratch_clone()
        write_files(scratch, files)
        git(scratch, "add", "-A")
        return git(scratch, "diff", "--cached", "--full-index")

    def write_file_patch(self, relative: str, text: str) -> Path:
        target = self.file_patches / f"{relative}.patch"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
        return target

    def commit_fork(self, message: str = "Update patches") -> None:
        git(self.root, "add", "-A")
        git(self.root, "commit", "--quiet", "--allow-empty", "-m", message)


@pytest.fixture()
def stack(tmp_path: Path, upstream: Path) -> StackWorkspace:
    """Create a fork repository whose settings point at ``upstream``."""

    root = tmp_path / "fork"
    root.mkdir()
    config_path = root / "forkstack.yaml"
    config_path.write_text(
        textwrap.dedent(
            f"""
            fork:
              identifier: {IDENTIFIER}
            upstream:
              url: ../upstream
            paths:
              work_dir: work
              cache_dir: .cache
              base_patches: patches/base
              file_patches: patches/files
              feature_patches: patches/features
              rejects: patches/rejects
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (root / ".gitignore").write_text("work/\n.cache/\n", encoding="utf-8")
    git(root, "init", "--quiet")
    git(root, "add", "-A")
    git(root, "commit", "--quiet", "-m", "Fork settings")
    return StackWorkspace(root=root, upstream=upstream, config_path=config_path)
