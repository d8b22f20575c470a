"""Minimal git helpers
The helpers below wrap the handful of git subcommands the patch engine needs.
Each :class:`Git` handle owns one working directory; no state is cached between
calls so an external reset is always observed by the next command.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Sequence

import logging
import os
import shutil
import subprocess


LOGGER = logging.getLogger(__name__)

FORMAT_PATCH_OPTIONS: tuple[str, ...] = (
    "--diff-algorithm=myers",
    "--zero-commit",
    "--full-index",
    "--no-signature",
    "--no-stat",
    "-N",
)


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitNotFoundError(GitError):
    """Raised when no ``git`` executable can be located."""


def check_for_git() -> str:
    """Return the path of the ``git`` binary or raise :class:`GitNotFoundError`."""

    located = shutil.which("git")
    if not located:
        raise GitNotFoundError(
            "git was not found on PATH. Install git and make sure it is discoverable before running forkstack."
        )
    return located


@dataclass(frozen=True, slots=True)
class GitResult:
    """Exit code and captured output of a single git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    raw_stdout: bytes = field(default=b"", repr=False)

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or "unknown git error"


@dataclass(frozen=True, slots=True)
class CommitIdentity:
    """Author/committer identity pinned to a fixed timestamp.

    Synthetic layer commits use these so that re-applying identical content
    produces identical commit hashes regardless of wall-clock time or the
    user's git configuration.
    """

    name: str
    email: str
    timestamp: str

    def environment(self) -> dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self.name,
            "GIT_AUTHOR_EMAIL": self.email,
            "GIT_AUTHOR_DATE": self.timestamp,
            "GIT_COMMITTER_NAME": self.name,
            "GIT_COMMITTER_EMAIL": self.email,
            "GIT_COMMITTER_DATE": self.timestamp,
        }

    def committer_environment(self) -> dict[str, str]:
        return {key: value for key, value in self.environment().items() if key.startswith("GIT_COMMITTER_")}


class Git:
    """Lightweight wrapper around ``git`` commands for a single directory."""

    def __init__(self, root: Path | str, *, env: Mapping[str, str] | None = None) -> None:
        self.root = Path(root).resolve()
        self._env = dict(env or {})

    def __repr__(self) -> str:
        return f"Git({self.root.as_posix()!r})"

    @property
    def git_dir(self) -> Path:
        return self.root / ".git"

    def is_repository(self) -> bool:
        return self.git_dir.is_dir()

    def with_env(self, env: Mapping[str, str]) -> "Git":
        """Return a handle on the same directory with extra environment variables."""

        merged = dict(self._env)
        merged.update(env)
        return Git(self.root, env=merged)

    # ------------------------------------------------------------------ git IO
    def run(
        self,
        *args: str,
        silent: bool = False,
        silence_err: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> GitResult:
        """Execute ``git`` with ``args`` and return the captured result.

        ``silent`` keeps output at DEBUG level unless the command fails.
        ``silence_err`` never reports stderr as a failure signal.
        """

        command = ["git", *args]
        process_env = os.environ.copy()
        process_env.update(self._env)
        if env:
            process_env.update(env)
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
            env=process_env,
        )
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = GitResult(tuple(args), process.returncode, stdout, stderr, process.stdout or b"")
        self._log_result(result, silent=silent, silence_err=silence_err)
        return result

    def execute(
        self,
        *args: str,
        silent: bool = False,
        silence_err: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> GitResult:
        """Execute ``git`` and raise :class:`GitError` on a non-zero exit."""

        result = self.run(*args, silent=silent, silence_err=silence_err, env=env)
        if not result.ok:
            raise GitError(f"git {' '.join(args)} failed ({result.returncode}): {result.message}")
        return result

    def text(self, *args: str, env: Mapping[str, str] | None = None) -> str:
        """Return stdout of a successful command."""

        return self.execute(*args, silent=True, env=env).stdout

    def _log_result(self, result: GitResult, *, silent: bool, silence_err: bool) -> None:
        label = "git " + " ".join(result.args)
        if result.ok:
            level = logging.DEBUG if silent else logging.INFO
            if result.stdout.strip():
                LOGGER.log(level, "%s: %s", label, result.stdout.rstrip())
            if result.stderr.strip():
                LOGGER.debug("%s (stderr): %s", label, result.stderr.rstrip())
            return
        if result.stdout.strip():
            LOGGER.info("%s: %s", label, result.stdout.rstrip())
        if silence_err:
            LOGGER.debug("%s exited with %d: %s", label, result.returncode, result.stderr.rstrip())
        else:
            LOGGER.warning("%s exited with %d: %s", label, result.returncode, result.message)

    # ------------------------------------------------------------ repo setup
    def init(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.execute("init", "--quiet", silent=True)

    def checkout_branch(self, branch: str, start_point: str | None = None) -> None:
        """Create or reset ``branch`` and switch to it (``checkout -B``)."""

        args: List[str] = ["checkout", "-B", branch]
        if start_point:
            args.append(start_point)
        self.execute(*args, silent=True, silence_err=True)

    def reset_hard(self, ref: str = "HEAD") -> GitResult:
        return self.run("reset", "--hard", ref, silent=True, silence_err=True)

    def clean(self) -> GitResult:
        return self.run("clean", "-fxd", silent=True, silence_err=True)

    # -------------------------------------------------------------- remotes
    def remote_replace(self, name: str, url: str) -> None:
        """Drop ``name`` if present and re-add it pointing at ``url``."""

        self.run("remote", "remove", name, silent=True, silence_err=True)
        self.execute("remote", "add", name, url, silent=True)

    def fetch(self, remote: str, ref: str | None = None, *, depth: int | None = None) -> None:
        args: List[str] = ["fetch", remote]
        if depth is not None:
            args.extend(["--depth", str(depth)])
        if ref:
            args.append(ref)
        self.execute(*args, silent=True, silence_err=True)

    # ----------------------------------------------------------------- refs
    def rev_parse(self, ref: str) -> str | None:
        """Return the commit id for ``ref`` or ``None`` when it does not resolve."""

        result = self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", silent=True, silence_err=True)
        if not result.ok:
            return None
        value = result.stdout.strip()
        return value or None

    def has_ref(self, ref: str) -> bool:
        return self.rev_parse(ref) is not None

    def rev_list(self, *args: str) -> List[str]:
        output = self.text("rev-list", *args)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def rev_list_grep(self, pattern: str, revision_range: str, *, max_count: int | None = None) -> List[str]:
        args: List[str] = ["--fixed-strings", f"--grep={pattern}"]
        if max_count is not None:
            args.append(f"--max-count={max_count}")
        args.append(revision_range)
        return self.rev_list(*args)

    def rev_count(self, revision_range: str) -> int:
        result = self.run("rev-list", "--count", revision_range, silent=True, silence_err=True)
        if not result.ok:
            return 0
        try:
            return int(result.stdout.strip() or "0")
        except ValueError:
            return 0

    def tag_force(self, name: str, ref: str = "HEAD") -> None:
        self.execute("tag", "-f", name, ref, silent=True, silence_err=True)

    def tag_delete(self, name: str) -> None:
        self.run("tag", "-d", name, silent=True, silence_err=True)

    def list_tags(self, pattern: str) -> List[str]:
        output = self.text("tag", "-l", pattern)
        return [line.strip() for line in output.splitlines() if line.strip()]

    # -------------------------------------------------------------- commits
    def add_all(self, *pathspec: str) -> None:
        args: List[str] = ["add", "-A"]
        args.extend(pathspec or (".",))
        self.execute(*args, silent=True)

    def commit(self, message: str, identity: CommitIdentity, *, allow_empty: bool = True) -> str:
        """Create a commit with a pinned author/committer identity and return its id."""

        args: List[str] = ["commit", "--quiet", "--no-gpg-sign", "--no-verify", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        self.execute(*args, silent=True, env=identity.environment())
        head = self.rev_parse("HEAD")
        if head is None:
            raise GitError(f"Commit '{message}' did not produce a HEAD in {self.root}")
        return head

    def status_porcelain(self) -> str:
        return self.text("status", "--porcelain")

    def is_tracked(self, path: str, ref: str = "HEAD") -> bool:
        result = self.run("cat-file", "-e", f"{ref}:{path}", silent=True, silence_err=True)
        return result.ok

    # ------------------------------------------------------------- patching
    def apply_check(self, patch: Path) -> GitResult:
        return self.run("apply", "--check", str(patch), silent=True, silence_err=True)

    def apply_3way(self, patches: Sequence[Path], *, disable_rerere: bool = False, silent: bool = True) -> GitResult:
        args: List[str] = []
        if disable_rerere:
            args.extend(["-c", "rerere.enabled=false"])
        args.extend(["apply", "--3way", *[str(patch) for patch in patches]])
        return self.run(*args, silent=silent, silence_err=silent)

    def am_3way(self, mailbox: Path, *, env: Mapping[str, str] | None = None, silent: bool = True) -> GitResult:
        return self.run("am", "--3way", "--ignore-whitespace", "--no-gpg-sign", str(mailbox), silent=silent, env=env)

    def am_abort(self) -> None:
        self.run("am", "--abort", silent=True, silence_err=True)

    def format_patch(self, revision_range: str, output_dir: Path) -> List[Path]:
        """Write one patch per commit in ``revision_range`` using the fixed option set."""

        output = self.text("format-patch", *FORMAT_PATCH_OPTIONS, "-o", str(output_dir), revision_range)
        return [Path(line.strip()) for line in output.splitlines() if line.strip()]

    def diff_staged(self, path: str) -> str:
        return self.text("diff", "--diff-algorithm=myers", "--staged", "--", path)

    def diff_refs_bytes(self, old: str, new: str, *paths: str) -> bytes:
        """Like :meth:`diff_refs` but returns stdout undecoded so file bytes survive."""

        args: List[str] = ["diff", "--diff-algorithm=myers", "--full-index", "--no-color", "--no-ext-diff", old, new]
        if paths:
            args.extend(["--", *paths])
        return self.execute(*args, silent=True).raw_stdout

    def diff_refs(self, old: str, new: str, *paths: str) -> str:
        return self.diff_refs_bytes(old, new, *paths).decode("utf-8", errors="replace")

    def changed_paths(self, old: str, new: str) -> List[str]:
        output = self.text("diff", "--name-only", "--no-renames", "-z", old, new)
        return sorted(entry for entry in output.split("\0") if entry)


__all__ = [
    "CommitIdentity",
    "FORMAT_PATCH_OPTIONS",
    "Git",
    "GitError",
    "GitNotFoundError",
    "GitResult",
    "check_for_git",
]
