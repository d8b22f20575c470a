"""Layer application, regeneration and coordination."""

from .apply import ApplyState, ApplyStrategy, LayerApplyConfig, LayerApplyResult, PatchLayerApplier
from .coordinator import StackCoordinator, StackStatus
from .fixup import fixup_file_patches
from .layers import AmbiguousHistoryError, FuzzyMatchError, Layer, LayerApplyError, StackError
from .rebuild import PatchLayerRebuilder, RebuildConfig, RebuildResult, is_noop_diff

__all__ = [
    "AmbiguousHistoryError",
    "ApplyState",
    "ApplyStrategy",
    "FuzzyMatchError",
    "Layer",
    "LayerApplyConfig",
    "LayerApplyError",
    "LayerApplyResult",
    "PatchLayerApplier",
    "PatchLayerRebuilder",
    "RebuildConfig",
    "RebuildResult",
    "StackCoordinator",
    "StackError",
    "StackStatus",
    "fixup_file_patches",
    "is_noop_diff",
]
