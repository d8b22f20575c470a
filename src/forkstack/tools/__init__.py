"""Git, diff and patching primitives used by the patch stack."""

from .fuzzy import FuzzyPatcher, MatchKind, PatchMode, PatchOperationResult, PatchSummary
from .unidiff import FilePatch, Hunk, PatchError, parse_patch
from .vcs import CommitIdentity, Git, GitError, GitNotFoundError, GitResult, check_for_git

__all__ = [
    "CommitIdentity",
    "FilePatch",
    "FuzzyPatcher",
    "Git",
    "GitError",
    "GitNotFoundError",
    "GitResult",
    "Hunk",
    "MatchKind",
    "PatchError",
    "PatchMode",
    "PatchOperationResult",
    "PatchSummary",
    "check_for_git",
    "parse_patch",
]
