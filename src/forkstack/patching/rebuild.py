"""Regenerate a layer's patch set from the history of a working tree."""

from __future__ import annotations

import logging
import os
import queue
import re
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence

from ..tools.telemetry import emit_event
from ..tools.vcs import Git, check_for_git
from .layers import BASE_TAG, AmbiguousHistoryError, Layer, StackError

LOGGER = logging.getLogger(__name__)

FILTER_ENV = "FORKSTACK_FILTER_PATCHES"
REVERT_CHUNK_SIZE = 50
NOOP_LINE = re.compile(r"^[+-]index ")

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def filter_patches_from_env(default: bool = True) -> bool:
    raw = os.environ.get(FILTER_ENV)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    LOGGER.warning("Ignoring %s=%r; expected a boolean", FILTER_ENV, raw)
    return default


@dataclass(frozen=True, slots=True)
class RebuildConfig:
    layer: Layer
    identifier: str
    repo: Path
    patches: Path
    filter_patches: bool = field(default_factory=filter_patches_from_env)
    workers: int | None = None

    def __post_init__(self) -> None:
        if self.workers is not None and self.workers < 1:
            raise ValueError(f"workers must be positive, got {self.workers}")


@dataclass(slots=True)
class RebuildResult:
    layer: Layer
    regenerated: int = 0
    kept: int = 0
    filtered: int = 0
    partial: bool = False


def is_noop_diff(text: str) -> bool:
    """True when the only changed lines of ``text`` are ``index`` header lines."""

    for line in text.splitlines():
        if not line.startswith(("+", "-")) or line.startswith(("+++", "---")):
            continue
        if not NOOP_LINE.match(line):
            return False
    return True


def classify_patches(git: Git, names: Sequence[str], *, workers: int | None = None) -> tuple[str, ...]:
    """Return the staged patch files in ``names`` whose changes are no-ops.

    Every file is diffed against the index on a worker thread. Workers only
    read; verdicts are collected once all of them have finished. A file whose
    diff cannot be produced is kept.
    """

    if not names:
        return ()
    verdicts: "queue.SimpleQueue[tuple[str, bool]]" = queue.SimpleQueue()

    def _classify(name: str) -> None:
        verdicts.put((name, is_noop_diff(git.diff_staged(name))))

    with ThreadPoolExecutor(max_workers=workers or os.cpu_count() or 1) as pool:
        futures = {pool.submit(_classify, name): name for name in names}
        for future in as_completed(futures):
            error = future.exception()
            if error is not None:
                LOGGER.warning("Could not classify %s, keeping it: %s", futures[future], error)

    noop: set[str] = set()
    while not verdicts.empty():
        name, unchanged = verdicts.get()
        if unchanged:
            noop.add(name)
    return tuple(sorted(noop))


def revert_patches(git: Git, names: Iterable[str]) -> None:
    ordered = list(names)
    for start in range(0, len(ordered), REVERT_CHUNK_SIZE):
        chunk = ordered[start : start + REVERT_CHUNK_SIZE]
        git.execute("reset", "HEAD", "--", *chunk, silent=True)
        git.execute("checkout", "--", *chunk, silent=True)


def locate_marker(git: Git, layer: Layer, identifier: str) -> str | None:
    """Return the single marker commit of ``layer`` in ``base..HEAD``, if any."""

    pattern = layer.marker_message(identifier)
    revision_range = f"{BASE_TAG}..HEAD"
    matches = git.rev_list_grep(pattern, revision_range)
    if len(matches) > 1:
        raise AmbiguousHistoryError(pattern, len(matches), layer=layer, identifier=identifier)
    if not matches:
        return None
    return git.rev_list_grep(pattern, revision_range, max_count=1)[0]


def retag_markers(git: Git, identifier: str) -> dict[Layer, str | None]:
    """Point every marker layer's tag at its marker commit.

    All markers are located before any tag moves so an ambiguous history
    leaves the tree untouched.
    """

    located = {layer: locate_marker(git, layer, identifier) for layer in Layer.marker_layers()}
    for layer, commit in located.items():
        if commit is not None and layer.tag is not None:
            git.tag_force(layer.tag, commit)
    return located


def rebase_progress(repo: Path) -> tuple[int, int] | None:
    """Return ``(last, next)`` of an interrupted ``git am``, or ``None``."""

    state = repo / ".git" / "rebase-apply"
    if not state.exists():
        return None
    try:
        last = int((state / "last").read_text(encoding="utf-8").strip())
        upcoming = int((state / "next").read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        LOGGER.warning("Unreadable rebase state in %s; keeping all existing patches", state)
        return 0, 1
    return last, upcoming


class PatchLayerRebuilder:
    """Write the commits of one layer back out as a patch set."""

    def __init__(self, config: RebuildConfig) -> None:
        self.config = config
        self.repo = Path(config.repo).resolve()
        self.patches = Path(config.patches).resolve()
        self.git = Git(self.repo)

    def run(self) -> RebuildResult:
        check_for_git()
        cfg = self.config
        if not self.git.is_repository() or not self.git.has_ref(BASE_TAG):
            raise StackError(
                f"{self.repo} has no '{BASE_TAG}' tag",
                layer=cfg.layer,
                identifier=cfg.identifier,
                next_action="run `forkstack apply` to create the tree before rebuilding",
            )

        markers = retag_markers(self.git, cfg.identifier)
        result = RebuildResult(layer=cfg.layer)
        progress = rebase_progress(self.repo)
        # An interrupted am belongs to the base layer until its marker exists, then to features.
        interrupted = Layer.BASE if markers.get(Layer.BASE) is None else Layer.FEATURE
        if progress is not None and cfg.layer is not interrupted:
            progress = None
        self.patches.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Formatting %s patches for %s...", cfg.layer.key, self.repo.name)

        if progress is not None:
            result.partial = True
            LOGGER.warning("Rebase in progress, saving only the patches that were already applied")
            self._drop_applied_prefix(progress)
        else:
            shutil.rmtree(self.patches)
            self.patches.mkdir(parents=True)

        if cfg.layer is Layer.FILE:
            written = self._write_file_patches(markers)
        else:
            written = self._format_commit_patches(markers, rebasing=progress is not None)
        result.regenerated = len(written)

        filtered: tuple[str, ...] = ()
        if cfg.filter_patches:
            filtered = self._filter_noop(written)
        result.filtered = len(filtered)
        result.kept = result.regenerated - result.filtered

        LOGGER.info(
            "Saved modified patches (%d/%d) for %s to %s",
            result.kept,
            result.regenerated,
            cfg.layer.key,
            self.patches,
        )
        emit_event(
            "layer_rebuilt",
            layer=cfg.layer.key,
            identifier=cfg.identifier,
            regenerated=result.regenerated,
            kept=result.kept,
            filtered=result.filtered,
            partial=result.partial,
        )
        return result

    # ---------------------------------------------------------------- saving
    def _existing_patches(self) -> List[Path]:
        pattern = "**/*.patch" if self.config.layer is Layer.FILE else "*.patch"
        return sorted(path for path in self.patches.glob(pattern) if path.is_file())

    def _drop_applied_prefix(self, progress: tuple[int, int]) -> None:
        last, upcoming = progress
        existing = self._existing_patches()
        # Positions are 1-based: patches before ``next`` were committed and get regenerated.
        for position in range(1, min(upcoming, last + 1, len(existing) + 1)):
            existing[position - 1].unlink()

    def _format_commit_patches(self, markers: dict[Layer, str | None], *, rebasing: bool) -> List[Path]:
        layer = self.config.layer
        if layer is Layer.BASE:
            if markers.get(Layer.BASE) is not None:
                revision_range = f"{BASE_TAG}..{Layer.BASE.tag}~1"
            elif rebasing:
                revision_range = f"{BASE_TAG}..HEAD"
            else:
                LOGGER.info("No base marker commit found, nothing to rebuild")
                return []
        else:
            lower = layer.base_tag
            if not self.git.has_ref(lower):
                LOGGER.info("Tag '%s' does not exist, nothing to rebuild", lower)
                return []
            revision_range = f"{lower}..HEAD"

        if self.git.rev_count(revision_range) <= 0:
            LOGGER.info("No commits in %s, nothing to rebuild", revision_range)
            return []
        return self.git.format_patch(revision_range, self.patches)

    def _write_file_patches(self, markers: dict[Layer, str | None]) -> List[Path]:
        if markers.get(Layer.FILE) is None or not self.git.has_ref(Layer.FILE.base_tag):
            LOGGER.info("No file marker commit found, nothing to rebuild")
            return []
        lower, upper = Layer.FILE.base_tag, Layer.FILE.tag or "file"
        written: List[Path] = []
        for path in self.git.changed_paths(lower, upper):
            diff = self.git.diff_refs_bytes(lower, upper, path)
            if not diff.strip():
                continue
            destination = self.patches / f"{path}.patch"
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(diff)
            written.append(destination)
        return written

    # ------------------------------------------------------------- filtering
    def _filter_noop(self, written: Sequence[Path]) -> tuple[str, ...]:
        patch_git = Git(self.patches)
        inside = patch_git.run("rev-parse", "--is-inside-work-tree", silent=True, silence_err=True)
        if not inside.ok or inside.stdout.strip() != "true":
            LOGGER.warning("%s is not inside a git repository, skipping the no-op patch filter", self.patches)
            return ()
        patch_git.execute("add", "-A", ".", silent=True)
        names = [Path(path).resolve().relative_to(self.patches).as_posix() for path in written]
        noop = classify_patches(patch_git, names, workers=self.config.workers)
        if noop:
            revert_patches(patch_git, noop)
            LOGGER.debug("Reverted %d unchanged patch(es)", len(noop))
        return noop


__all__ = [
    "FILTER_ENV",
    "PatchLayerRebuilder",
    "RebuildConfig",
    "RebuildResult",
    "classify_patches",
    "filter_patches_from_env",
    "is_noop_diff",
    "locate_marker",
    "rebase_progress",
    "retag_markers",
    "revert_patches",
]
