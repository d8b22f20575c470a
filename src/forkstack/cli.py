"""CLI commands for applying and rebuilding a fork's patch stack."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, NoReturn, Optional

import typer

from .patching.apply import LayerApplyResult
from .patching.coordinator import StackCoordinator
from .patching.layers import Layer, StackError
from .patching.rebuild import RebuildResult
from .settings import DEFAULT_SETTINGS_NAME, SettingsError, StackSettings, load_settings
from .tools.fuzzy import DEFAULT_MIN_MATCH_SCORE, FuzzyPatcher, PatchMode
from .tools.unidiff import PatchError
from .tools.vcs import GitError

APP_HELP = "Maintain a fork of an upstream repository as layered patch sets."
LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT, force=True)


def _load(config: str, verbose: bool) -> StackSettings:
    """Load settings for a command, turning settings errors into a clean exit."""
    try:
        settings = load_settings(Path(config))
    except SettingsError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    _configure_logging(verbose or settings.options.verbose)
    return settings


def _parse_layers(values: Optional[List[str]]) -> Optional[List[Layer]]:
    if not values:
        return None
    try:
        return [Layer.from_key(value) for value in values]
    except ValueError as error:
        raise typer.BadParameter(str(error)) from error


def _fail(error: Exception) -> NoReturn:
    message = error.describe() if isinstance(error, StackError) else str(error)
    typer.echo(f"Error: {message}")
    raise typer.Exit(code=1) from error


def _render_apply(results: List[LayerApplyResult]) -> None:
    for result in results:
        strategy = result.strategy.value if result.strategy else "none"
        line = f"- {result.layer.title}: applied {result.applied} patch(es) via {strategy}"
        if result.summary is not None:
            summary = result.summary
            line += f" (exact={summary.exact} offset={summary.offset} fuzzy={summary.fuzzy} failed={summary.failed})"
        if result.commit:
            line += f" -> {result.commit[:7]}"
        typer.echo(line)


def _render_rebuild(results: List[RebuildResult]) -> None:
    for result in results:
        suffix = " [partial save]" if result.partial else ""
        typer.echo(
            f"- {result.layer.title}: saved {result.kept}/{result.regenerated} modified patch(es)"
            f", {result.filtered} unchanged{suffix}"
        )


CONFIG_OPTION_HELP = "Path to the forkstack settings file."
LAYER_OPTION_HELP = "Layer to process (base, file, feature). Repeatable; defaults to all layers."


@app.command()
def apply(
    config: str = typer.Option(DEFAULT_SETTINGS_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    layer: Optional[List[str]] = typer.Option(None, "--layer", "-l", help=LAYER_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every git command."),
) -> None:
    """Apply the patch layers on top of a fresh upstream checkout."""
    settings = _load(config, verbose)
    coordinator = StackCoordinator(settings)
    try:
        results = coordinator.apply(_parse_layers(layer))
    except (StackError, GitError, PatchError) as error:
        _fail(error)
    _render_apply(results)
    target = coordinator.target_for(Layer.FEATURE)
    typer.echo(f"Patch stack applied to {target.as_posix()}.")


@app.command()
def rebuild(
    config: str = typer.Option(DEFAULT_SETTINGS_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    layer: Optional[List[str]] = typer.Option(None, "--layer", "-l", help=LAYER_OPTION_HELP),
    filter_patches: Optional[bool] = typer.Option(
        None,
        "--filter/--no-filter",
        help="Discard regenerated patches whose only change is an index line.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every git command."),
) -> None:
    """Save the commits of the working tree back into patch files."""
    settings = _load(config, verbose)
    if filter_patches is not None:
        options = settings.options.model_copy(update={"filter_patches": filter_patches})
        settings = settings.model_copy(update={"options": options})
    try:
        results = StackCoordinator(settings).rebuild(_parse_layers(layer))
    except (StackError, GitError, PatchError) as error:
        _fail(error)
    _render_rebuild(results)


@app.command()
def fixup(
    config: str = typer.Option(DEFAULT_SETTINGS_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every git command."),
) -> None:
    """Fold tracked working-tree changes into the file patches commit."""
    settings = _load(config, verbose)
    try:
        commit = StackCoordinator(settings).fixup()
    except (StackError, GitError) as error:
        _fail(error)
    typer.echo(f"File patches commit is now {commit[:7]}. Run `forkstack rebuild --layer file` to save it.")


@app.command()
def status(
    config: str = typer.Option(DEFAULT_SETTINGS_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
) -> None:
    """Show the layer tags and patch counts of the working tree."""
    settings = _load(config, False)
    try:
        report = StackCoordinator(settings).status()
    except GitError as error:
        _fail(error)
    typer.echo(f"Working tree: {report.work_dir.as_posix()}")
    for layer, count in report.patch_counts.items():
        typer.echo(f"- {layer.title} patches: {count}")
    if not report.exists:
        typer.echo("Working tree has not been created yet. Run `forkstack apply`.")
        return
    for tag, commit in report.tags.items():
        typer.echo(f"- tag {tag}: {commit[:7] if commit else 'missing'}")
    if report.rebase_in_progress:
        typer.echo("A patch application is in progress; resolve it, then run `forkstack rebuild`.")
    if report.apply_failed:
        typer.echo("The last apply failed.")
        raise typer.Exit(code=1)


@app.command()
def patch(
    base_dir: Path = typer.Argument(..., help="Directory the patches apply to."),
    patches_dir: Path = typer.Argument(..., help="Directory containing *.patch files."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the patched tree here instead."),
    rejects: Optional[Path] = typer.Option(None, "--rejects", "-r", help="Directory for .rej files."),
    mode: PatchMode = typer.Option(PatchMode.OFFSET, "--mode", "-m", case_sensitive=False, help="Matching mode."),
    min_fuzz: float = typer.Option(
        DEFAULT_MIN_MATCH_SCORE,
        "--min-fuzz",
        min=0.0,
        max=1.0,
        help="Lowest similarity score a fuzzy match may have.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every hunk placement."),
) -> None:
    """Apply a directory of patches to a plain directory tree."""
    _configure_logging(verbose)
    if not base_dir.is_dir():
        raise typer.BadParameter(f"Base directory not found: {base_dir}")
    patcher = FuzzyPatcher(base_dir, patches_dir, output_dir=output, rejects_dir=rejects, mode=mode, min_score=min_fuzz)
    try:
        outcome = patcher.operate()
    except PatchError as error:
        _fail(error)
    summary = outcome.summary
    typer.echo(
        f"Patched {summary.changed_files} file(s): exact={summary.exact} offset={summary.offset} "
        f"fuzzy={summary.fuzzy} access={summary.access} failed={summary.failed}"
    )
    if not outcome.ok:
        typer.echo(f"Failed to apply {summary.failure_ratio} hunks")
        raise typer.Exit(code=outcome.exit_code)


if __name__ == "__main__":
    app()
