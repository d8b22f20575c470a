"""Layer definitions, fixed commit identities and engine errors."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Sequence

from ..tools.fuzzy import PatchSummary
from ..tools.vcs import CommitIdentity

AUTOMATED_EMAIL = "noreply+automated@forkstack.invalid"
FIXED_TIMESTAMP = "1997-04-20T13:37:42Z"
BASE_TAG = "base"
STATUS_FILE_NAME = "patch-apply-failed"
REBUILD_HINT = "resolve the conflicts in the working tree, then run `forkstack rebuild` to save the result as patches"


class Layer(Enum):
    """One tier of the patch stack, in application order.

    Each member carries ``(key, tag, base_tag, marker, author)``: the tag that
    marks the end of the layer, the tag it is applied on top of, the suffix of
    its synthetic commit message and the author of that commit. The feature
    layer has no synthetic commit, so its tag, marker and author are ``None``.
    """

    BASE = ("base", "patchedBase", BASE_TAG, "Base Patches", "Patched Base")
    FILE = ("file", "file", "patchedBase", "File Patches", "File")
    FEATURE = ("feature", None, "file", None, None)

    def __init__(
        self,
        key: str,
        tag: str | None,
        base_tag: str,
        marker: str | None,
        author: str | None,
    ) -> None:
        self.key = key
        self.tag = tag
        self.base_tag = base_tag
        self.marker = marker
        self.author = author

    @classmethod
    def from_key(cls, key: str) -> "Layer":
        lowered = key.strip().lower()
        for layer in cls:
            if layer.key == lowered:
                return layer
        raise ValueError(f"Unknown layer '{key}'. Expected one of: {', '.join(layer.key for layer in cls)}")

    @classmethod
    def apply_order(cls) -> tuple["Layer", ...]:
        return (cls.BASE, cls.FILE, cls.FEATURE)

    @classmethod
    def rebuild_order(cls) -> tuple["Layer", ...]:
        return tuple(reversed(cls.apply_order()))

    @classmethod
    def marker_layers(cls) -> tuple["Layer", ...]:
        return tuple(layer for layer in cls.apply_order() if layer.marker is not None)

    @property
    def title(self) -> str:
        return self.key.capitalize()

    def marker_message(self, identifier: str) -> str:
        if self.marker is None:
            raise ValueError(f"The {self.key} layer has no marker commit.")
        return f"{identifier} {self.marker}"

    def identity(self) -> CommitIdentity:
        return CommitIdentity(name=self.author or self.title, email=AUTOMATED_EMAIL, timestamp=FIXED_TIMESTAMP)


def automation_identity(name: str) -> CommitIdentity:
    """Fixed identity for automated commits that are not layer markers."""
    return CommitIdentity(name=name, email=AUTOMATED_EMAIL, timestamp=FIXED_TIMESTAMP)


def status_file(repo_root: Path) -> Path:
    return repo_root / ".git" / STATUS_FILE_NAME


def mark_apply_failed(repo_root: Path) -> None:
    marker = status_file(repo_root)
    if marker.parent.is_dir():
        marker.write_text("1", encoding="utf-8")


def clear_apply_failed(repo_root: Path) -> None:
    status_file(repo_root).unlink(missing_ok=True)


def apply_failed(repo_root: Path) -> bool:
    return status_file(repo_root).exists()


class StackError(RuntimeError):
    """Base error for the patch-stack engine.

    ``next_action`` is the concrete step an operator should take next.
    """

    def __init__(
        self,
        message: str,
        *,
        layer: Layer | None = None,
        identifier: str | None = None,
        next_action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.layer = layer
        self.identifier = identifier
        self.next_action = next_action

    def describe(self) -> str:
        parts = []
        if self.identifier or self.layer:
            scope = " ".join(part for part in (self.identifier, self.layer.key if self.layer else None) if part)
            parts.append(f"[{scope}]")
        parts.append(str(self))
        if self.next_action:
            parts.append(f"Next: {self.next_action}.")
        return " ".join(parts)


class LayerApplyError(StackError):
    """A layer could not be applied cleanly."""

    def __init__(
        self,
        message: str,
        *,
        layer: Layer | None = None,
        identifier: str | None = None,
        rejected: Sequence[Path] = (),
        next_action: str | None = REBUILD_HINT,
    ) -> None:
        super().__init__(message, layer=layer, identifier=identifier, next_action=next_action)
        self.rejected = tuple(rejected)


class FuzzyMatchError(LayerApplyError):
    """Some hunks could not be placed by the fuzzy patcher."""

    def __init__(
        self,
        summary: PatchSummary,
        *,
        layer: Layer | None = None,
        identifier: str | None = None,
    ) -> None:
        super().__init__(
            f"Failed to apply {summary.failure_ratio} hunks",
            layer=layer,
            identifier=identifier,
            next_action=(
                "inspect the rejects directory, then either raise the fuzz tolerance "
                "or apply the rejected hunks by hand and run `forkstack rebuild`"
            ),
        )
        self.summary = summary


class AmbiguousHistoryError(StackError):
    """More than one commit carries the same layer marker message."""

    def __init__(self, pattern: str, actual: int, *, layer: Layer | None = None, identifier: str | None = None) -> None:
        super().__init__(
            f"Exceeded the max amount of commits with the identifier: `{pattern}`! Got {actual} commits, expected: 1",
            layer=layer,
            identifier=identifier,
            next_action="clean up the history so only one marker commit remains (for example with an interactive rebase)",
        )
        self.pattern = pattern
        self.expected = 1
        self.actual = actual


__all__ = [
    "AUTOMATED_EMAIL",
    "AmbiguousHistoryError",
    "BASE_TAG",
    "FIXED_TIMESTAMP",
    "FuzzyMatchError",
    "Layer",
    "LayerApplyError",
    "REBUILD_HINT",
    "StackError",
    "apply_failed",
    "automation_identity",
    "clear_apply_failed",
    "mark_apply_failed",
    "status_file",
]
