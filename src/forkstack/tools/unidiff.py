"""Unified diff parsing shared by the fuzzy patcher and the layer engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List


class PatchError(RuntimeError):
    """Raised when a patch cannot be parsed or applied."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details: dict = dict(details or {})


_DIFF_HEADER = re.compile(r"^diff --git (\S+) (\S+)$")
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)
_MODE_LINE = re.compile(r"^(?P<kind>old mode|new mode|new file mode|deleted file mode) (?P<mode>[0-7]{6})$")
NO_NEWLINE_MARKER = "\\ No newline at end of file"


@dataclass(slots=True)
class HunkLine:
    """Single body line of a hunk: ``op`` is one of ``' '``, ``'-'`` or ``'+'``."""

    op: str
    text: str
    no_newline: bool = False

    def render(self) -> List[str]:
        rendered = [f"{self.op}{self.text}"]
        if self.no_newline:
            rendered.append(NO_NEWLINE_MARKER)
        return rendered


@dataclass(slots=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    section: str = ""
    lines: List[HunkLine] = field(default_factory=list)

    @property
    def old_lines(self) -> List[str]:
        return [line.text for line in self.lines if line.op in (" ", "-")]

    @property
    def new_lines(self) -> List[str]:
        return [line.text for line in self.lines if line.op in (" ", "+")]

    @property
    def context_size(self) -> int:
        return sum(1 for line in self.lines if line.op == " ")

    @property
    def new_ends_without_newline(self) -> bool:
        for line in reversed(self.lines):
            if line.op in (" ", "+"):
                return line.no_newline
        return False

    @property
    def old_ends_without_newline(self) -> bool:
        for line in reversed(self.lines):
            if line.op in (" ", "-"):
                return line.no_newline
        return False

    def header(self) -> str:
        return f"@@ -{_format_range(self.old_start, self.old_count)} +{_format_range(self.new_start, self.new_count)} @@{self.section}"

    def render(self) -> List[str]:
        rendered = [self.header()]
        for line in self.lines:
            rendered.extend(line.render())
        return rendered


@dataclass(slots=True)
class FilePatch:
    """All hunks and metadata a patch carries for one file."""

    old_path: Path | None
    new_path: Path | None
    hunks: List[Hunk] = field(default_factory=list)
    old_mode: str | None = None
    new_mode: str | None = None
    new_file: bool = False
    deleted_file: bool = False
    binary: bool = False

    @property
    def path(self) -> Path:
        candidate = self.new_path or self.old_path
        if candidate is None:
            raise PatchError("Patch section does not name a file.")
        return candidate

    @property
    def is_new(self) -> bool:
        return self.new_file or (self.old_path is None and self.new_path is not None)

    @property
    def is_delete(self) -> bool:
        return self.deleted_file or (self.new_path is None and self.old_path is not None)

    @property
    def mode_changed(self) -> bool:
        return self.old_mode is not None and self.new_mode is not None and self.old_mode != self.new_mode

    def render_header(self) -> List[str]:
        old = f"a/{self.old_path.as_posix()}" if self.old_path else "/dev/null"
        new = f"b/{self.new_path.as_posix()}" if self.new_path else "/dev/null"
        return [f"--- {old}", f"+++ {new}"]


def _format_range(start: int, count: int) -> str:
    if count == 1:
        return str(start)
    return f"{start},{count}"


def normalise_diff_path(entry: str) -> Path | None:
    """Translate diff header operands into repository-relative paths."""
    entry = entry.split("\t", 1)[0].strip()
    if entry == "/dev/null" or not entry:
        return None
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    entry = entry.strip()
    if not entry:
        return None
    return Path(entry)


def validate_paths(paths: Iterable[Path]) -> None:
    """Enforce path safety rules for diff entries."""
    for path in paths:
        if path.is_absolute():
            raise PatchError(f"Absolute paths are not permitted in patches: {path}")
        parts = list(path.parts)
        if any(part == ".." for part in parts):
            raise PatchError(f"Path escaping detected in patch: {path}")
        if parts and parts[0] == ".git":
            raise PatchError("Patches may not target the .git directory.")


def _parse_hunk(lines: List[str], index: int, match: re.Match[str]) -> tuple[Hunk, int]:
    old_count = int(match.group("old_count")) if match.group("old_count") is not None else 1
    new_count = int(match.group("new_count")) if match.group("new_count") is not None else 1
    hunk = Hunk(
        old_start=int(match.group("old_start")),
        old_count=old_count,
        new_start=int(match.group("new_start")),
        new_count=new_count,
        section=match.group("section") or "",
    )
    seen_old = 0
    seen_new = 0
    index += 1
    while index < len(lines) and (seen_old < old_count or seen_new < new_count):
        raw = lines[index]
        if raw.startswith("\\"):
            if hunk.lines:
                hunk.lines[-1].no_newline = True
            index += 1
            continue
        op = raw[:1] if raw else " "
        if op not in (" ", "-", "+"):
            break
        hunk.lines.append(HunkLine(op=op, text=raw[1:]))
        if op in (" ", "-"):
            seen_old += 1
        if op in (" ", "+"):
            seen_new += 1
        index += 1
    if index < len(lines) and lines[index].startswith("\\") and hunk.lines:
        hunk.lines[-1].no_newline = True
        index += 1
    if seen_old != old_count or seen_new != new_count:
        raise PatchError(
            "Patch hunk line count mismatch: "
            f"expected -{old_count}/+{new_count} but saw -{seen_old}/+{seen_new}."
        )
    return hunk, index


def _apply_extended_header(patch: FilePatch, line: str) -> None:
    mode = _MODE_LINE.match(line)
    if mode:
        kind = mode.group("kind")
        if kind == "old mode":
            patch.old_mode = mode.group("mode")
        elif kind == "new mode":
            patch.new_mode = mode.group("mode")
        elif kind == "new file mode":
            patch.new_file = True
            patch.new_mode = mode.group("mode")
        else:
            patch.deleted_file = True
            patch.old_mode = mode.group("mode")
    elif line.startswith("Binary files ") or line == "GIT binary patch":
        patch.binary = True


def parse_patch(text: str) -> List[FilePatch]:
    """Parse unified diff ``text`` into per-file patches.

    Both ``git diff``/``format-patch`` output and bare ``---``/``+++`` diffs are
    accepted. Leading mail headers and commit messages are ignored. Hunk bodies
    are consumed by their header counts, so removed lines that happen to start
    with ``--`` never open a new file section.
    """

    lines = text.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    patches: List[FilePatch] = []
    current: FilePatch | None = None
    saw_paths = False
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("diff --git "):
            header = _DIFF_HEADER.match(line)
            old_path = normalise_diff_path(header.group(1)) if header else None
            new_path = normalise_diff_path(header.group(2)) if header else None
            current = FilePatch(old_path=old_path, new_path=new_path)
            patches.append(current)
            saw_paths = False
            index += 1
            continue
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            if current is None or saw_paths or current.hunks:
                current = FilePatch(old_path=None, new_path=None)
                patches.append(current)
            current.old_path = normalise_diff_path(line[4:])
            current.new_path = normalise_diff_path(lines[index + 1][4:])
            saw_paths = True
            index += 2
            continue
        if line.startswith("@@ ") and current is not None:
            match = _HUNK_HEADER.match(line)
            if not match:
                raise PatchError(f"Malformed hunk header: {line}")
            hunk, index = _parse_hunk(lines, index, match)
            current.hunks.append(hunk)
            continue
        if current is not None and not current.hunks:
            _apply_extended_header(current, line)
        index += 1

    for patch in patches:
        if patch.new_file:
            patch.old_path = None
        if patch.deleted_file:
            patch.new_path = None
    patches = [patch for patch in patches if patch.old_path is not None or patch.new_path is not None]
    validate_paths(patch.path for patch in patches)
    return patches


__all__ = [
    "FilePatch",
    "Hunk",
    "HunkLine",
    "NO_NEWLINE_MARKER",
    "PatchError",
    "normalise_diff_path",
    "parse_patch",
    "validate_paths",
]
