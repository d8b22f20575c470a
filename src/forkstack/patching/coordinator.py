"""Run the layers of a fork's patch stack in order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Sequence

from ..tools.vcs import Git
from .apply import ApplyStrategy, LayerApplyConfig, LayerApplyResult, PatchLayerApplier, collect_patches
from .fixup import fixup_file_patches
from .layers import BASE_TAG, Layer, StackError, apply_failed
from .rebuild import PatchLayerRebuilder, RebuildConfig, RebuildResult, rebase_progress

if TYPE_CHECKING:
    from ..settings import StackSettings

LOGGER = logging.getLogger(__name__)

SCRATCH_DIR_NAME = "layers"


@dataclass(slots=True)
class StackStatus:
    """Snapshot of a working tree as the CLI reports it."""

    work_dir: Path
    exists: bool = False
    tags: Dict[str, str | None] = field(default_factory=dict)
    patch_counts: Dict[Layer, int] = field(default_factory=dict)
    apply_failed: bool = False
    rebase_in_progress: bool = False


class StackCoordinator:
    """Apply, rebuild and fix up the layers configured by :class:`StackSettings`."""

    def __init__(self, settings: "StackSettings") -> None:
        self.settings = settings

    @property
    def read_only(self) -> bool:
        return self.settings.options.read_only

    # ---------------------------------------------------------------- layout
    def patch_dir(self, layer: Layer) -> Path:
        paths = self.settings.paths
        return {
            Layer.BASE: paths.base_patches,
            Layer.FILE: paths.file_patches,
            Layer.FEATURE: paths.feature_patches,
        }[layer]

    def target_for(self, layer: Layer) -> Path:
        if self.read_only and layer is not Layer.FEATURE:
            return self.settings.paths.cache_dir / SCRATCH_DIR_NAME / layer.key
        return self.settings.paths.work_dir

    def strategy_for(self, layer: Layer) -> ApplyStrategy:
        if layer is not Layer.FILE:
            return ApplyStrategy.MAILBOX
        return ApplyStrategy.GIT_APPLY if self.settings.options.git_file_patches else ApplyStrategy.FUZZY

    def apply_config(self, layer: Layer) -> LayerApplyConfig:
        settings = self.settings
        options = settings.options
        source: Path | str | None = None
        source_ref = "HEAD"
        if layer is Layer.BASE:
            source, source_ref = settings.upstream.url, settings.upstream.ref
        elif self.read_only:
            previous = Layer.apply_order()[Layer.apply_order().index(layer) - 1]
            source, source_ref = self.target_for(previous), layer.base_tag

        return LayerApplyConfig(
            layer=layer,
            identifier=settings.identifier,
            target=self.target_for(layer),
            patches=self.patch_dir(layer),
            rejects=settings.paths.rejects,
            source=source,
            source_ref=source_ref,
            strategy=self.strategy_for(layer),
            move_failed_to_rejects=options.move_failed_git_patches_to_rejects,
            emit_rejects=options.emit_rejects,
            additional_remote=options.additional_remote if layer is Layer.BASE else None,
            library_imports=settings.paths.library_imports if layer is Layer.BASE else None,
            fuzzy_mode=options.fuzzy_mode,
            min_fuzz=options.min_fuzz,
            verbose=options.verbose,
            cache_dir=settings.paths.cache_dir,
        )

    @staticmethod
    def _select(layers: Iterable[Layer] | None, order: Sequence[Layer]) -> List[Layer]:
        if layers is None:
            return list(order)
        wanted = set(layers)
        return [layer for layer in order if layer in wanted]

    # ------------------------------------------------------------ operations
    def apply(self, layers: Iterable[Layer] | None = None) -> List[LayerApplyResult]:
        results: List[LayerApplyResult] = []
        for layer in self._select(layers, Layer.apply_order()):
            results.append(PatchLayerApplier(self.apply_config(layer)).run())
        return results

    def rebuild(self, layers: Iterable[Layer] | None = None) -> List[RebuildResult]:
        if self.read_only:
            raise StackError(
                "Patches cannot be rebuilt from a read-only stack",
                identifier=self.settings.identifier,
                next_action="set options.read_only to false and apply again",
            )
        results: List[RebuildResult] = []
        for layer in self._select(layers, Layer.rebuild_order()):
            config = RebuildConfig(
                layer=layer,
                identifier=self.settings.identifier,
                repo=self.settings.work_dir,
                patches=self.patch_dir(layer),
                filter_patches=self.settings.options.filter_patches,
            )
            results.append(PatchLayerRebuilder(config).run())
        return results

    def fixup(self) -> str:
        if self.read_only:
            raise StackError(
                "File patches cannot be fixed up in a read-only stack",
                layer=Layer.FILE,
                identifier=self.settings.identifier,
                next_action="set options.read_only to false and apply again",
            )
        return fixup_file_patches(Git(self.settings.work_dir), self.settings.identifier)

    def status(self) -> StackStatus:
        work_dir = self.settings.work_dir
        git = Git(work_dir)
        status = StackStatus(work_dir=work_dir, exists=git.is_repository())
        status.patch_counts = {
            layer: len(collect_patches(self.patch_dir(layer), recursive=layer is Layer.FILE))
            for layer in Layer.apply_order()
        }
        if not status.exists:
            return status
        for tag in (BASE_TAG, *(layer.tag for layer in Layer.marker_layers() if layer.tag)):
            status.tags[tag] = git.rev_parse(tag)
        status.apply_failed = apply_failed(git.root)
        status.rebase_in_progress = rebase_progress(git.root) is not None
        return status


__all__ = ["StackCoordinator", "StackStatus"]
