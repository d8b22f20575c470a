"""Apply unified diffs to a directory tree with offset and fuzzy context matching.

Each hunk is located in its target file by trying, in order, an exact match at
the line the hunk header names (adjusted for drift from earlier hunks), an
exact match at the nearest offset, and finally a similarity search that scores
candidate windows line by line. Hunks that cannot be placed are written to a
``.rej`` file instead of being applied.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from typing import Dict, List, Sequence

from .telemetry import emit_event
from .unidiff import FilePatch, Hunk, PatchError, parse_patch

LOGGER = logging.getLogger(__name__)

DEFAULT_MIN_MATCH_SCORE = 0.5


class PatchMode(str, Enum):
    """How far a hunk may move away from the position its header names."""

    EXACT = "EXACT"
    OFFSET = "OFFSET"
    FUZZY = "FUZZY"


class MatchKind(str, Enum):
    """Quality of the match found for a hunk (or a permission-only change)."""

    EXACT = "EXACT"
    OFFSET = "OFFSET"
    FUZZY = "FUZZY"
    ACCESS = "ACCESS"
    FAILED = "FAILED"


@dataclass(slots=True)
class PatchSummary:
    """Aggregated match counters for one patch operation."""

    exact: int = 0
    offset: int = 0
    fuzzy: int = 0
    access: int = 0
    failed: int = 0
    changed_files: int = 0

    def record(self, kind: MatchKind) -> None:
        if kind is MatchKind.EXACT:
            self.exact += 1
        elif kind is MatchKind.OFFSET:
            self.offset += 1
        elif kind is MatchKind.FUZZY:
            self.fuzzy += 1
        elif kind is MatchKind.ACCESS:
            self.access += 1
        else:
            self.failed += 1

    @property
    def total(self) -> int:
        return self.exact + self.offset + self.fuzzy + self.access + self.failed

    @property
    def failure_ratio(self) -> str:
        return f"{self.failed}/{self.total}"

    def to_dict(self) -> dict[str, int]:
        return {
            "exact": self.exact,
            "offset": self.offset,
            "fuzzy": self.fuzzy,
            "access": self.access,
            "failed": self.failed,
            "changed_files": self.changed_files,
            "total": self.total,
        }


@dataclass(slots=True)
class HunkMatch:
    index: int
    kind: MatchKind
    line: int | None = None
    score: float = 1.0


@dataclass(slots=True)
class FilePatchResult:
    """Per-file outcome, in the order patches were processed."""

    patch_file: Path
    path: Path
    matches: List[HunkMatch] = field(default_factory=list)
    changed: bool = False

    @property
    def failed(self) -> bool:
        return any(match.kind is MatchKind.FAILED for match in self.matches)


@dataclass(slots=True)
class PatchOperationResult:
    exit_code: int
    summary: PatchSummary
    files: tuple[FilePatchResult, ...] = ()

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class _FileText:
    """Lines of a target file without their line terminators.

    A file whose every terminated line ends in ``\\r\\n`` is read with the
    ``\\r`` stripped so it compares equal to parsed hunk lines, and is written
    back with ``\\r\\n`` endings.
    """

    lines: List[str]
    trailing_newline: bool = True
    exists: bool = True
    crlf: bool = False

    @classmethod
    def read(cls, path: Path) -> "_FileText":
        if not path.is_file():
            return cls(lines=[], trailing_newline=True, exists=False)
        text = path.read_bytes().decode("utf-8", errors="surrogateescape")
        if not text:
            return cls(lines=[], trailing_newline=False)
        lines = text.split("\n")
        trailing = lines[-1] == ""
        if trailing:
            lines.pop()
        terminated = lines if trailing else lines[:-1]
        crlf = bool(terminated) and all(line.endswith("\r") for line in terminated)
        if crlf:
            lines = [line[:-1] if line.endswith("\r") else line for line in lines]
        return cls(lines=lines, trailing_newline=trailing, crlf=crlf)

    def render(self) -> str:
        if not self.lines:
            return ""
        separator = "\r\n" if self.crlf else "\n"
        text = separator.join(self.lines)
        return text + separator if self.trailing_newline else text


def line_similarity(left: str, right: str) -> float:
    """Similarity of two lines in ``[0, 1]`` ignoring all whitespace."""

    a = "".join(left.split())
    b = "".join(right.split())
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b, autojunk=False).ratio()


def window_score(lines: Sequence[str], start: int, expected: Sequence[str]) -> float:
    """Mean line similarity of ``expected`` laid over ``lines`` at ``start``."""

    if not expected:
        return 1.0
    total = 0.0
    for offset, wanted in enumerate(expected):
        total += line_similarity(lines[start + offset], wanted)
    return total / len(expected)


def _matches_at(lines: Sequence[str], start: int, expected: Sequence[str]) -> bool:
    if start < 0 or start + len(expected) > len(lines):
        return False
    return all(lines[start + offset] == wanted for offset, wanted in enumerate(expected))


class FuzzyPatcher:
    """Apply every ``*.patch`` under ``patches_dir`` to ``base_dir``."""

    def __init__(
        self,
        base_dir: Path | str,
        patches_dir: Path | str,
        *,
        output_dir: Path | str | None = None,
        rejects_dir: Path | str | None = None,
        mode: PatchMode = PatchMode.OFFSET,
        min_score: float = DEFAULT_MIN_MATCH_SCORE,
        ignore_prefixes: Sequence[str] = (".git",),
    ) -> None:
        if not 0.0 <= min_score <= 1.0:
            raise ValueError(f"min_score must be within [0, 1], got {min_score}")
        self.base_dir = Path(base_dir).resolve()
        self.patches_dir = Path(patches_dir).resolve()
        self.output_dir = Path(output_dir).resolve() if output_dir is not None else self.base_dir
        self.rejects_dir = Path(rejects_dir).resolve() if rejects_dir is not None else None
        self.mode = PatchMode(mode)
        self.min_score = min_score
        self.ignore_prefixes = tuple(ignore_prefixes)
        self._rejects: Dict[Path, List[str]] = {}

    # ------------------------------------------------------------------ driver
    def patch_files(self) -> List[Path]:
        if not self.patches_dir.is_dir():
            return []
        return sorted(path for path in self.patches_dir.rglob("*.patch") if path.is_file())

    def operate(self) -> PatchOperationResult:
        self._prepare_output()
        self._rejects = {}
        summary = PatchSummary()
        results: List[FilePatchResult] = []

        for patch_file in self.patch_files():
            text = patch_file.read_text(encoding="utf-8", errors="surrogateescape")
            try:
                file_patches = parse_patch(text)
            except PatchError as error:
                raise PatchError(
                    f"Unable to parse {patch_file}: {error}",
                    details={"patch_file": patch_file.as_posix()},
                ) from error
            for file_patch in file_patches:
                result = self._apply_file_patch(patch_file, file_patch)
                for match in result.matches:
                    summary.record(match.kind)
                if result.changed:
                    summary.changed_files += 1
                results.append(result)

        self._flush_rejects()
        exit_code = 0 if summary.failed == 0 else 1
        LOGGER.info(
            "Patched %d file(s): exact=%d offset=%d fuzzy=%d access=%d failed=%d",
            summary.changed_files,
            summary.exact,
            summary.offset,
            summary.fuzzy,
            summary.access,
            summary.failed,
        )
        emit_event(
            "fuzzy_patch_completed",
            base_dir=self.base_dir,
            patches_dir=self.patches_dir,
            mode=self.mode,
            summary=summary.to_dict(),
        )
        return PatchOperationResult(exit_code=exit_code, summary=summary, files=tuple(results))

    def _prepare_output(self) -> None:
        if self.output_dir == self.base_dir:
            return
        self.output_dir.mkdir(parents=True, exist_ok=True)
        ignored = set(self.ignore_prefixes)

        def _ignore(directory: str, names: List[str]) -> List[str]:
            if Path(directory).resolve() != self.base_dir:
                return []
            return [name for name in names if name in ignored]

        shutil.copytree(self.base_dir, self.output_dir, ignore=_ignore, dirs_exist_ok=True)

    # ------------------------------------------------------------- per file
    def _apply_file_patch(self, patch_file: Path, file_patch: FilePatch) -> FilePatchResult:
        target_path = file_patch.path
        result = FilePatchResult(patch_file=patch_file, path=target_path)
        source = self.output_dir / (file_patch.old_path or target_path)
        destination = self.output_dir / target_path
        current = _FileText.read(source)

        if file_patch.binary:
            LOGGER.warning("%s: binary patches are not supported by the fuzzy patcher", target_path)
            result.matches.append(HunkMatch(index=0, kind=MatchKind.FAILED))
            self._record_reject(file_patch, [], patch_file)
            return result

        if not file_patch.hunks:
            return self._apply_header_only(file_patch, current, destination, result)

        if file_patch.is_new and current.exists:
            return self._apply_new_over_existing(file_patch, current, destination, result, patch_file)

        lines = list(current.lines)
        trailing = current.trailing_newline
        drift = 0
        last_end = 0
        failed: List[Hunk] = []

        for index, hunk in enumerate(file_patch.hunks):
            if not current.exists and hunk.old_count > 0:
                result.matches.append(HunkMatch(index=index, kind=MatchKind.FAILED))
                failed.append(hunk)
                continue
            anchor = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
            located = self._locate(lines, hunk, anchor + drift, last_end)
            if located is None:
                LOGGER.debug("%s: hunk #%d failed to match", target_path, index + 1)
                result.matches.append(HunkMatch(index=index, kind=MatchKind.FAILED))
                failed.append(hunk)
                continue
            position, kind, score = located
            old_length = len(hunk.old_lines)
            touches_end = position + old_length >= len(lines)
            replacement = self._replacement(lines, position, hunk)
            lines[position : position + old_length] = replacement
            if touches_end:
                trailing = not hunk.new_ends_without_newline
            drift = (position - anchor) + (len(replacement) - old_length)
            last_end = position + len(replacement)
            result.matches.append(HunkMatch(index=index, kind=kind, line=position + 1, score=score))
            if kind is not MatchKind.EXACT:
                LOGGER.debug("%s: hunk #%d applied (%s) at line %d", target_path, index + 1, kind.value, position + 1)

        applied = len(failed) < len(file_patch.hunks)
        if applied:
            if file_patch.is_delete and not failed and not lines:
                if source.exists():
                    source.unlink()
                result.changed = True
            else:
                updated = _FileText(lines=lines, trailing_newline=trailing, crlf=current.crlf)
                result.changed = self._write(destination, updated, current)
                if file_patch.old_path and file_patch.new_path and file_patch.old_path != file_patch.new_path:
                    if source.exists() and source != destination:
                        source.unlink()
                        result.changed = True
                if file_patch.new_mode and (file_patch.is_new or file_patch.mode_changed):
                    self._set_mode(destination, file_patch.new_mode)
                    if file_patch.mode_changed:
                        result.matches.append(HunkMatch(index=len(file_patch.hunks), kind=MatchKind.ACCESS))
        if failed:
            self._record_reject(file_patch, failed, patch_file)
        return result

    def _apply_header_only(
        self,
        file_patch: FilePatch,
        current: _FileText,
        destination: Path,
        result: FilePatchResult,
    ) -> FilePatchResult:
        if file_patch.mode_changed and not file_patch.is_new and not file_patch.is_delete:
            if not current.exists:
                result.matches.append(HunkMatch(index=0, kind=MatchKind.FAILED))
                self._record_reject(file_patch, [], result.patch_file)
                return result
            self._set_mode(destination, file_patch.new_mode or "100644")
            result.matches.append(HunkMatch(index=0, kind=MatchKind.ACCESS))
            result.changed = True
            return result
        if file_patch.is_new and not current.exists:
            result.changed = self._write(destination, _FileText(lines=[], trailing_newline=False), current)
            if file_patch.new_mode:
                self._set_mode(destination, file_patch.new_mode)
            result.matches.append(HunkMatch(index=0, kind=MatchKind.EXACT))
            return result
        if file_patch.is_delete and current.exists and not current.lines:
            (self.output_dir / (file_patch.old_path or file_patch.path)).unlink()
            result.changed = True
            result.matches.append(HunkMatch(index=0, kind=MatchKind.EXACT))
        return result

    def _apply_new_over_existing(
        self,
        file_patch: FilePatch,
        current: _FileText,
        destination: Path,
        result: FilePatchResult,
        patch_file: Path,
    ) -> FilePatchResult:
        expected: List[str] = []
        for hunk in file_patch.hunks:
            expected.extend(hunk.new_lines)
        if expected == current.lines:
            result.matches.extend(HunkMatch(index=index, kind=MatchKind.EXACT) for index in range(len(file_patch.hunks)))
            return result
        LOGGER.debug("%s: new-file patch targets an existing file with different content", file_patch.path)
        result.matches.extend(HunkMatch(index=index, kind=MatchKind.FAILED) for index in range(len(file_patch.hunks)))
        self._record_reject(file_patch, list(file_patch.hunks), patch_file)
        return result

    # ------------------------------------------------------------- matching
    def _locate(
        self,
        lines: Sequence[str],
        hunk: Hunk,
        expected: int,
        lower_bound: int,
    ) -> tuple[int, MatchKind, float] | None:
        old = hunk.old_lines
        upper_bound = len(lines) - len(old)
        if upper_bound < lower_bound:
            return None
        expected = min(max(expected, lower_bound), upper_bound)

        if not old:
            return expected, MatchKind.EXACT, 1.0
        if _matches_at(lines, expected, old):
            return expected, MatchKind.EXACT, 1.0
        if self.mode is PatchMode.EXACT:
            return None

        for distance in range(1, max(expected - lower_bound, upper_bound - expected) + 1):
            for candidate in (expected - distance, expected + distance):
                if lower_bound <= candidate <= upper_bound and _matches_at(lines, candidate, old):
                    return candidate, MatchKind.OFFSET, 1.0
        if self.mode is not PatchMode.FUZZY:
            return None

        best_position: int | None = None
        best_score = -1.0
        for candidate in range(lower_bound, upper_bound + 1):
            score = window_score(lines, candidate, old)
            closer = best_position is not None and abs(candidate - expected) < abs(best_position - expected)
            if score > best_score or (score == best_score and closer):
                best_position, best_score = candidate, score
        if best_position is None or best_score < self.min_score:
            return None
        return best_position, MatchKind.FUZZY, best_score

    @staticmethod
    def _replacement(lines: Sequence[str], position: int, hunk: Hunk) -> List[str]:
        replacement: List[str] = []
        cursor = position
        for line in hunk.lines:
            if line.op == " ":
                replacement.append(lines[cursor])
                cursor += 1
            elif line.op == "-":
                cursor += 1
            else:
                replacement.append(line.text)
        return replacement

    # --------------------------------------------------------------- output
    @staticmethod
    def _write(destination: Path, updated: _FileText, previous: _FileText) -> bool:
        rendered = updated.render()
        if previous.exists and rendered == previous.render() and destination.exists():
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(rendered.encode("utf-8", errors="surrogateescape"))
        return True

    @staticmethod
    def _set_mode(path: Path, git_mode: str) -> None:
        if not path.exists():
            return
        current = path.stat().st_mode
        executable = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
        if git_mode.endswith("755"):
            os.chmod(path, current | executable)
        else:
            os.chmod(path, current & ~executable)

    def _record_reject(self, file_patch: FilePatch, hunks: Sequence[Hunk], patch_file: Path) -> None:
        if self.rejects_dir is None:
            return
        entry = self._rejects.get(file_patch.path)
        if entry is None:
            entry = [f"++++ REJECTED PATCH {patch_file.name}", *file_patch.render_header()]
            self._rejects[file_patch.path] = entry
        for hunk in hunks:
            entry.extend(hunk.render())

    def _flush_rejects(self) -> None:
        if self.rejects_dir is None:
            return
        for path, lines in sorted(self._rejects.items(), key=lambda item: item[0].as_posix()):
            reject = self.rejects_dir / f"{path.as_posix()}.rej"
            reject.parent.mkdir(parents=True, exist_ok=True)
            reject.write_text("\n".join(lines) + "\n", encoding="utf-8", errors="surrogateescape")
            LOGGER.info("Wrote rejected hunks for %s to %s", path.as_posix(), reject)


__all__ = [
    "DEFAULT_MIN_MATCH_SCORE",
    "FilePatchResult",
    "FuzzyPatcher",
    "HunkMatch",
    "MatchKind",
    "PatchMode",
    "PatchOperationResult",
    "PatchSummary",
    "line_similarity",
    "window_score",
]
