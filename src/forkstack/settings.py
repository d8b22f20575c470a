"""Typed settings loaded from ``forkstack.yaml``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .patching.rebuild import filter_patches_from_env
from .tools.fuzzy import DEFAULT_MIN_MATCH_SCORE, PatchMode

LOGGER = logging.getLogger(__name__)

DEFAULT_SETTINGS_NAME = "forkstack.yaml"


class SettingsError(RuntimeError):
    """Raised when the settings file is missing, unreadable or invalid."""


class SettingsModel(BaseModel):
    """Base model: unknown keys are rejected and loaded settings never change."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class ForkSection(SettingsModel):
    identifier: str = Field(min_length=1)


class UpstreamSection(SettingsModel):
    url: str = Field(min_length=1)
    ref: str = "HEAD"


class PathsSection(SettingsModel):
    work_dir: Path = Path("work")
    cache_dir: Path = Path(".forkstack/cache")
    base_patches: Path = Path("patches/base")
    file_patches: Path = Path("patches/files")
    feature_patches: Path = Path("patches/features")
    rejects: Path = Path("patches/rejects")
    library_imports: Optional[Path] = None

    def resolved(self, root: Path) -> "PathsSection":
        """Return a copy with every relative path anchored at ``root``."""

        updates: Dict[str, Path] = {}
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, Path):
                candidate = value.expanduser()
                updates[name] = candidate if candidate.is_absolute() else (root / candidate).resolve()
        return self.model_copy(update=updates)


class OptionsSection(SettingsModel):
    git_file_patches: bool = False
    move_failed_git_patches_to_rejects: bool = False
    emit_rejects: bool = True
    filter_patches: bool = True
    read_only: bool = False
    verbose: bool = False
    additional_remote: Optional[str] = None
    fuzzy_mode: PatchMode = PatchMode.OFFSET
    min_fuzz: float = Field(default=DEFAULT_MIN_MATCH_SCORE, ge=0.0, le=1.0)


class StackSettings(SettingsModel):
    fork: ForkSection
    upstream: UpstreamSection
    paths: PathsSection = Field(default_factory=PathsSection)
    options: OptionsSection = Field(default_factory=OptionsSection)

    @property
    def identifier(self) -> str:
        return self.fork.identifier

    @property
    def work_dir(self) -> Path:
        return self.paths.work_dir


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SettingsError(f"Settings file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise SettingsError(f"Failed to parse {path}: {error}") from error
    if not isinstance(data, dict):
        raise SettingsError(f"{path} must contain a mapping at the top level.")
    return data


def parse_settings(data: Dict[str, Any], *, root: Path) -> StackSettings:
    """Validate raw settings data and anchor its paths at ``root``."""

    try:
        settings = StackSettings.model_validate(data)
    except ValidationError as error:
        raise SettingsError(f"Invalid settings: {error}") from error

    options = settings.options
    filter_patches = filter_patches_from_env(default=options.filter_patches)
    if filter_patches != options.filter_patches:
        LOGGER.debug("filter_patches overridden by the environment: %s", filter_patches)
        options = options.model_copy(update={"filter_patches": filter_patches})

    root = root.resolve()
    upstream = settings.upstream
    if "://" not in upstream.url and not upstream.url.startswith("git@"):
        local = Path(upstream.url).expanduser()
        local = local if local.is_absolute() else root / local
        if local.exists():
            upstream = upstream.model_copy(update={"url": str(local.resolve())})

    return settings.model_copy(
        update={"paths": settings.paths.resolved(root), "options": options, "upstream": upstream}
    )


def load_settings(path: Path | str = DEFAULT_SETTINGS_NAME) -> StackSettings:
    """Load ``path``; relative paths inside it resolve against its directory."""

    settings_path = Path(path).expanduser().resolve()
    return parse_settings(_read_yaml(settings_path), root=settings_path.parent)


__all__ = [
    "DEFAULT_SETTINGS_NAME",
    "ForkSection",
    "OptionsSection",
    "PathsSection",
    "SettingsError",
    "StackSettings",
    "UpstreamSection",
    "load_settings",
    "parse_settings",
]
