"""Copy library sources into a freshly checked-out tree before it is tagged."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..tools.vcs import Git
from .layers import automation_identity

LOGGER = logging.getLogger(__name__)

IMPORTS_TAG = "imports"


@dataclass(slots=True)
class ImportResult:
    copied: tuple[Path, ...] = ()
    skipped: tuple[Path, ...] = ()
    commit: str | None = None


def import_library_files(git: Git, imports_dir: Path, identifier: str) -> ImportResult:
    """Copy every file under ``imports_dir`` into the tree and commit the result.

    Files that already exist in the tree were imported by upstream and are left
    untouched.
    """

    source_root = Path(imports_dir).resolve()
    if not source_root.is_dir():
        LOGGER.debug("No library imports at %s", source_root)
        return ImportResult()

    copied: list[Path] = []
    skipped: list[Path] = []
    for source in sorted(path for path in source_root.rglob("*") if path.is_file()):
        relative = source.relative_to(source_root)
        destination = git.root / relative
        if destination.exists():
            skipped.append(relative)
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        copied.append(relative)

    if not copied:
        return ImportResult(skipped=tuple(skipped))

    git.add_all()
    commit = git.commit(f"{identifier} Imports", automation_identity("Imports"))
    git.tag_force(IMPORTS_TAG, commit)
    LOGGER.info("Imported %d library file(s) (%d already present)", len(copied), len(skipped))
    return ImportResult(copied=tuple(copied), skipped=tuple(skipped), commit=commit)


__all__ = ["IMPORTS_TAG", "ImportResult", "import_library_files"]
