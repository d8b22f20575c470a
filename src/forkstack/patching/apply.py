"""Apply one layer of the patch stack to a working tree.

The applier brings the target tree to the layer's base (cloning it from a
source tree or resetting it in place), applies the layer's patch set with the
configured strategy and records the result as a marker commit plus a tag.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import List, Sequence

from ..tools.fuzzy import DEFAULT_MIN_MATCH_SCORE, FuzzyPatcher, PatchMode, PatchSummary
from ..tools.telemetry import emit_event
from ..tools.unidiff import PatchError, parse_patch
from ..tools.vcs import Git, GitError, check_for_git
from .imports import import_library_files
from .layers import (
    FuzzyMatchError,
    Layer,
    LayerApplyError,
    clear_apply_failed,
    mark_apply_failed,
)

LOGGER = logging.getLogger(__name__)

MAIN_BRANCH = "main"
UPSTREAM_REMOTE = "upstream"
HOOK_NAME = "post-rewrite"
CORRUPT_PATCH_SIGNAL = "corrupt patch at line"


class ApplyStrategy(str, Enum):
    MAILBOX = "mailbox"
    GIT_APPLY = "git-apply"
    FUZZY = "fuzzy"


class ApplyState(str, Enum):
    """Progress of a single layer application, in order."""

    IDLE = "idle"
    CLONED = "cloned"
    BASE_CHECKED_OUT = "base_checked_out"
    REMOTES_FETCHED = "remotes_fetched"
    TAGGED = "tagged"
    PATCHES_APPLIED = "patches_applied"
    COMMITTED = "committed"


@dataclass(frozen=True, slots=True)
class LayerApplyConfig:
    """Everything one layer application needs, resolved before it starts."""

    layer: Layer
    identifier: str
    target: Path
    patches: Path | None = None
    rejects: Path | None = None
    source: Path | str | None = None
    source_ref: str = "HEAD"
    strategy: ApplyStrategy = ApplyStrategy.MAILBOX
    move_failed_to_rejects: bool = False
    emit_rejects: bool = True
    additional_remote: str | None = None
    additional_remote_name: str = "old"
    library_imports: Path | None = None
    fuzzy_mode: PatchMode = PatchMode.OFFSET
    min_fuzz: float = DEFAULT_MIN_MATCH_SCORE
    chunk_size: int = 12
    verbose: bool = False
    cache_dir: Path | None = None

    def __post_init__(self) -> None:
        if not self.identifier.strip():
            raise ValueError("identifier must not be empty")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")


@dataclass(slots=True)
class LayerApplyResult:
    layer: Layer
    states: List[ApplyState] = field(default_factory=list)
    strategy: ApplyStrategy | None = None
    applied: int = 0
    rejected: tuple[Path, ...] = ()
    summary: PatchSummary | None = None
    commit: str | None = None

    @property
    def state(self) -> ApplyState:
        return self.states[-1] if self.states else ApplyState.IDLE


def source_url(source: Path | str) -> str:
    """Return a fetchable URL for ``source``; local directories become ``file://`` URIs."""

    if isinstance(source, Path) or "://" not in str(source):
        candidate = Path(source).expanduser()
        if candidate.exists():
            return candidate.resolve().as_uri()
    return str(source)


def recreate_clone_directory(target: Path) -> None:
    """Make ``target`` ready to receive a fresh checkout.

    An existing repository is cleaned and reset so its object store can be
    reused; anything else is emptied or created.
    """

    git = Git(target)
    if git.is_repository():
        git.clean()
        git.reset_hard("HEAD")
        return
    if target.exists():
        for child in target.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
    else:
        target.mkdir(parents=True)


def install_post_rewrite_hook(git: Git) -> Path:
    asset = resources.files("forkstack").joinpath("resources").joinpath(HOOK_NAME + ".sh")
    script = asset.read_text(encoding="utf-8")
    hooks = git.git_dir / "hooks"
    hooks.mkdir(parents=True, exist_ok=True)
    hook = hooks / HOOK_NAME
    hook.write_text(script, encoding="utf-8")
    hook.chmod(hook.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return hook


def collect_patches(directory: Path | None, *, recursive: bool) -> List[Path]:
    if directory is None or not directory.is_dir():
        return []
    pattern = directory.rglob("*.patch") if recursive else directory.glob("*.patch")
    return sorted(path for path in pattern if path.is_file())


def _chunks(items: Sequence[Path], size: int) -> List[Sequence[Path]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


class PatchLayerApplier:
    """Drive one layer from its base tag to a committed, tagged result."""

    def __init__(self, config: LayerApplyConfig) -> None:
        self.config = config
        self.target = Path(config.target).resolve()
        self.git = Git(self.target)
        self._result = LayerApplyResult(layer=config.layer, states=[ApplyState.IDLE])

    def _advance(self, state: ApplyState) -> None:
        self._result.states.append(state)
        LOGGER.debug("%s layer: %s", self.config.layer.title, state.value)

    def _clones_from_source(self) -> bool:
        source = self.config.source
        if source is None:
            return False
        if isinstance(source, Path) or "://" not in str(source):
            candidate = Path(source).expanduser()
            if candidate.exists() and candidate.resolve() == self.target:
                return False
        return True

    # ------------------------------------------------------------------ driver
    def run(self) -> LayerApplyResult:
        check_for_git()
        cfg = self.config
        LOGGER.info("Applying %s patches for %s to %s", cfg.layer.key, cfg.identifier, self.target)

        if self._clones_from_source():
            self._checkout_from_source()
        else:
            self._reset_in_place()
        self._advance(ApplyState.TAGGED)

        strategy = cfg.strategy
        patches = collect_patches(cfg.patches, recursive=strategy is not ApplyStrategy.MAILBOX)
        try:
            if not patches:
                LOGGER.info("No %s patches found in %s", cfg.layer.key, cfg.patches)
            elif strategy is ApplyStrategy.MAILBOX:
                self._apply_mailbox(patches)
            elif strategy is ApplyStrategy.GIT_APPLY and self._should_apply_with_git(patches):
                self._apply_with_git(patches)
            else:
                self._apply_fuzzy()
            self._advance(ApplyState.PATCHES_APPLIED)
            self._commit()
            if self._result.rejected:
                raise LayerApplyError(
                    f"{len(self._result.rejected)} patch(es) failed to apply and were moved to {cfg.rejects}: "
                    + ", ".join(path.as_posix() for path in self._result.rejected),
                    layer=cfg.layer,
                    identifier=cfg.identifier,
                    rejected=self._result.rejected,
                )
        except (LayerApplyError, GitError, PatchError):
            mark_apply_failed(self.target)
            emit_event(
                "layer_apply_failed",
                layer=cfg.layer.key,
                identifier=cfg.identifier,
                strategy=self._result.strategy,
                rejected=self._result.rejected,
            )
            raise

        clear_apply_failed(self.target)
        emit_event(
            "layer_applied",
            layer=cfg.layer.key,
            identifier=cfg.identifier,
            strategy=self._result.strategy,
            applied=self._result.applied,
            commit=self._result.commit,
        )
        LOGGER.info("Applied %d %s patch(es)", self._result.applied, cfg.layer.key)
        return self._result

    # ----------------------------------------------------------------- setup
    def _checkout_from_source(self) -> None:
        cfg = self.config
        assert cfg.source is not None
        recreate_clone_directory(self.target)
        self._advance(ApplyState.CLONED)

        git = self.git
        git.init()
        git.remote_replace(UPSTREAM_REMOTE, source_url(cfg.source))
        git.fetch(UPSTREAM_REMOTE, cfg.source_ref, depth=1)
        git.checkout_branch(MAIN_BRANCH, "FETCH_HEAD")
        self._advance(ApplyState.BASE_CHECKED_OUT)

        if cfg.additional_remote:
            git.remote_replace(cfg.additional_remote_name, source_url(cfg.additional_remote))
            git.fetch(cfg.additional_remote_name)
            self._advance(ApplyState.REMOTES_FETCHED)

        install_post_rewrite_hook(git)
        if cfg.layer is Layer.BASE and cfg.library_imports is not None:
            import_library_files(git, cfg.library_imports, cfg.identifier)
        git.tag_force(cfg.layer.base_tag)

    def _reset_in_place(self) -> None:
        cfg = self.config
        git = self.git
        if not git.is_repository():
            raise LayerApplyError(
                f"{self.target} is not a git repository",
                layer=cfg.layer,
                identifier=cfg.identifier,
                next_action="apply the earlier layers first so the tree exists",
            )
        if not git.has_ref(cfg.layer.base_tag):
            raise LayerApplyError(
                f"Tag '{cfg.layer.base_tag}' does not exist in {self.target}",
                layer=cfg.layer,
                identifier=cfg.identifier,
                next_action=f"apply the layer that produces '{cfg.layer.base_tag}' first",
            )
        if cfg.strategy is ApplyStrategy.MAILBOX:
            git.am_abort()
        if not git.run("checkout", MAIN_BRANCH, silent=True, silence_err=True).ok:
            git.checkout_branch(MAIN_BRANCH)
        git.reset_hard(cfg.layer.base_tag)
        git.clean()
        self._advance(ApplyState.BASE_CHECKED_OUT)

    # ------------------------------------------------------------ strategies
    def _apply_mailbox(self, patches: Sequence[Path]) -> None:
        cfg = self.config
        self._result.strategy = ApplyStrategy.MAILBOX
        self.git.am_abort()
        if cfg.cache_dir is not None:
            cfg.cache_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="forkstack-mailbox-", dir=cfg.cache_dir) as scratch:
            mailbox = Path(scratch)
            (mailbox / "new").mkdir()
            (mailbox / "cur").mkdir()
            for index, patch in enumerate(patches):
                shutil.copyfile(patch, mailbox / "new" / f"{index:05d}-{patch.name}")
            result = self.git.am_3way(
                mailbox,
                env=cfg.layer.identity().committer_environment(),
                silent=not cfg.verbose,
            )
        if not result.ok:
            raise LayerApplyError(
                f"git am stopped while applying {cfg.layer.key} patches: {result.message}",
                layer=cfg.layer,
                identifier=cfg.identifier,
                next_action="resolve the conflicts, run `git am --continue`, then run `forkstack rebuild`",
            )
        self._result.applied = len(patches)

    def _should_apply_with_git(self, patches: Sequence[Path]) -> bool:
        for patch in patches:
            check = self.git.apply_check(patch)
            if CORRUPT_PATCH_SIGNAL in check.stderr:
                LOGGER.warning("%s is not usable by git apply, falling back to the fuzzy patcher", patch.name)
                return False
        return True

    def _apply_with_git(self, patches: Sequence[Path]) -> None:
        cfg = self.config
        self._result.strategy = ApplyStrategy.GIT_APPLY
        if not cfg.move_failed_to_rejects or cfg.rejects is None:
            for chunk in _chunks(patches, cfg.chunk_size):
                result = self.git.apply_3way(chunk, silent=not cfg.verbose)
                if not result.ok:
                    raise LayerApplyError(
                        f"git apply failed for {', '.join(patch.name for patch in chunk)}: {result.message}",
                        layer=cfg.layer,
                        identifier=cfg.identifier,
                    )
            self._result.applied = len(patches)
            return

        assert cfg.patches is not None and cfg.rejects is not None
        rejected: List[Path] = []
        for patch in patches:
            result = self.git.apply_3way([patch], disable_rerere=True, silent=not cfg.verbose)
            if result.ok:
                self._result.applied += 1
                continue
            if result.returncode > 1:
                raise GitError(f"git apply {patch} failed ({result.returncode}): {result.message}")
            relative = patch.relative_to(cfg.patches)
            self._restore_targets(patch, relative)
            rejected.append(self._move_to_rejects(patch, cfg.rejects, relative))
        self._result.rejected = tuple(rejected)

    def _restore_targets(self, patch: Path, relative: Path) -> None:
        try:
            targets = [file_patch.path.as_posix() for file_patch in parse_patch(patch.read_text(encoding="utf-8"))]
        except (PatchError, UnicodeDecodeError):
            targets = []
        if not targets:
            targets = [relative.as_posix()[: -len(".patch")]]
        for target in targets:
            self.git.run("reset", "--", target, silent=True, silence_err=True)
            if self.git.is_tracked(target):
                self.git.run("restore", "--", target, silent=True, silence_err=True)
            else:
                (self.target / target).unlink(missing_ok=True)

    def _move_to_rejects(self, patch: Path, rejects: Path, relative: Path) -> Path:
        destination = rejects / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(os.fspath(patch), os.fspath(destination))
        LOGGER.warning("Moved %s to %s", relative.as_posix(), destination)
        return relative

    def _apply_fuzzy(self) -> None:
        cfg = self.config
        assert cfg.patches is not None
        self._result.strategy = ApplyStrategy.FUZZY
        patcher = FuzzyPatcher(
            self.target,
            cfg.patches,
            rejects_dir=cfg.rejects if cfg.emit_rejects else None,
            mode=cfg.fuzzy_mode,
            min_score=cfg.min_fuzz,
        )
        outcome = patcher.operate()
        self._result.summary = outcome.summary
        self._result.applied = outcome.summary.changed_files
        if not outcome.ok:
            self._commit()
            raise FuzzyMatchError(outcome.summary, layer=cfg.layer, identifier=cfg.identifier)

    # ---------------------------------------------------------------- commit
    def _commit(self) -> None:
        layer = self.config.layer
        if layer.marker is None or layer.tag is None:
            return
        if self._result.state is ApplyState.COMMITTED:
            return
        self.git.add_all()
        self._result.commit = self.git.commit(layer.marker_message(self.config.identifier), layer.identity())
        self.git.tag_force(layer.tag)
        self._advance(ApplyState.COMMITTED)


__all__ = [
    "ApplyState",
    "ApplyStrategy",
    "LayerApplyConfig",
    "LayerApplyResult",
    "PatchLayerApplier",
    "collect_patches",
    "install_post_rewrite_hook",
    "recreate_clone_directory",
    "source_url",
]
