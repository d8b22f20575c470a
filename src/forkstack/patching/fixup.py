"""Fold working-tree edits into the file layer's marker commit."""

from __future__ import annotations

import logging

from ..tools.vcs import Git
from .layers import Layer, StackError
from .rebuild import retag_markers

LOGGER = logging.getLogger(__name__)


def fixup_file_patches(git: Git, identifier: str) -> str:
    """Squash every tracked change into the file marker commit and return its new id.

    The change is committed as ``fixup! <marker>`` and folded in with a
    non-interactive autosquash rebase onto ``patchedBase``. Commits above the
    file marker are replayed with the fixed layer identity.
    """

    located = retag_markers(git, identifier)
    if located.get(Layer.FILE) is None or located.get(Layer.BASE) is None:
        raise StackError(
            "No file marker commit to fold changes into",
            layer=Layer.FILE,
            identifier=identifier,
            next_action="run `forkstack apply` so the base and file layers exist",
        )

    git.execute("add", "-u", silent=True)
    staged = git.run("diff", "--cached", "--quiet", silent=True, silence_err=True)
    if staged.ok:
        LOGGER.info("No tracked changes to fold into the file patches")
        return located[Layer.FILE] or ""

    identity = Layer.FILE.identity()
    git.execute(
        "commit",
        "--quiet",
        "--no-gpg-sign",
        "--no-verify",
        f"--fixup={Layer.FILE.tag}",
        silent=True,
        env=identity.environment(),
    )
    environment = {"GIT_SEQUENCE_EDITOR": ":", "GIT_EDITOR": ":", **identity.committer_environment()}
    rebase = git.run(
        "-c",
        "commit.gpgSign=false",
        "rebase",
        "-i",
        "--autosquash",
        Layer.FILE.base_tag,
        env=environment,
    )
    if not rebase.ok:
        raise StackError(
            f"Autosquash rebase onto {Layer.FILE.base_tag} stopped: {rebase.message}",
            layer=Layer.FILE,
            identifier=identifier,
            next_action="resolve the conflicts, run `git rebase --continue`, then run `forkstack rebuild`",
        )

    located = retag_markers(git, identifier)
    commit = located.get(Layer.FILE)
    if commit is None:
        raise StackError(
            "The file marker commit disappeared during the fixup rebase",
            layer=Layer.FILE,
            identifier=identifier,
            next_action="inspect `git reflog` and restore the file marker commit",
        )
    LOGGER.info("Folded tracked changes into %s", Layer.FILE.marker_message(identifier))
    return commit


__all__ = ["fixup_file_patches"]
