"""TOML-based launch configuration.

Loads ~/.sprout/defaults.toml (global) and sprout.toml (project, or an
explicit path), merges them, and builds an immutable ``Settings`` record.

Example sprout.toml::

    [aws]
    region = "eu-west-1"

    [launch]
    template_name = "scratch-box"
    instance_types = ["c7i.large", "c6i.large"]
    spot = true

    [wait]
    poll_interval = 5
    timeout = 600

    [volume]
    id = "vol-0123456789abcdef0"
    mount_path = "/data"

    [bootstrap]
    user = "alice"
    packages = ["git", "tmux"]
    dotfiles = ["~/.tmux.conf", "~/.gitconfig"]
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from sprout.constants import (
    DEFAULT_DEVICE,
    DEFAULT_MOUNT_PATH,
    DEFAULT_SSH_USER,
    SPROUT_HOME,
)
from sprout.core.exceptions import ConfigurationError, PreconditionError
from sprout.providers.aws.config import AWS
from sprout.types import LaunchTemplate, VolumeAttachment, WaitPolicy

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = SPROUT_HOME / "defaults.toml"
PROJECT_CONFIG_NAME = "sprout.toml"

_SECTIONS = ("aws", "launch", "wait", "volume", "bootstrap")


# =============================================================================
# Sections
# =============================================================================


@dataclass(frozen=True, slots=True)
class VolumeSettings:
    """Persistent EBS volume to attach and mount."""

    id: str | None = None
    device: str = DEFAULT_DEVICE
    mount_path: str = DEFAULT_MOUNT_PATH
    filesystem: str = "ext4"

    def __post_init__(self) -> None:
        if not self.mount_path.startswith("/"):
            raise ConfigurationError(f"volume.mount_path must be an absolute path, got '{self.mount_path}'")

    def attachment(self) -> VolumeAttachment | None:
        return VolumeAttachment(volume_id=self.id, device=self.device) if self.id else None


@dataclass(frozen=True, slots=True)
class BootstrapSettings:
    """First-boot configuration applied over SSH."""

    ssh_user: str = DEFAULT_SSH_USER
    key_path: str | None = None
    user: str | None = None
    shell: str = "/bin/bash"
    packages: tuple[str, ...] = ()
    dotfiles: tuple[str, ...] = ()
    sysctl: tuple[tuple[str, str], ...] = ()
    swap_mb: int = 0


@dataclass(frozen=True, slots=True)
class Settings:
    """Everything a launch needs, merged from files and CLI flags."""

    aws: AWS = field(default_factory=AWS)
    launch: LaunchTemplate | None = None
    wait: WaitPolicy = field(default_factory=WaitPolicy)
    volume: VolumeSettings = field(default_factory=VolumeSettings)
    bootstrap: BootstrapSettings = field(default_factory=BootstrapSettings)


# =============================================================================
# Loading
# =============================================================================


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"{path}: {e}") from e


def load_config(
    path: Path | None = None,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    """Merge global defaults with the project (or explicit) config file."""
    if path is not None and not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")

    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = path or (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    unknown = set(merged) - set(_SECTIONS)
    if unknown:
        raise ConfigurationError(
            f"Unknown config section(s): {', '.join(sorted(unknown))}. Valid: {', '.join(_SECTIONS)}"
        )
    return merged


def _normalize(value: Any) -> Any:
    match value:
        case list():
            return tuple(_normalize(v) for v in value)
        case dict():
            return tuple((str(k), str(v)) for k, v in value.items())
        case _:
            return value


def _build[T](cls: type[T], section: str, raw: RawConfig) -> T:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"[{section}] must be a table")
    valid = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - valid
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{section}]: {', '.join(sorted(unknown))}. Valid: {', '.join(sorted(valid))}"
        )
    try:
        return cls(**{k: _normalize(v) for k, v in raw.items()})
    except PreconditionError as e:
        raise ConfigurationError(f"[{section}] {e}") from e
    except TypeError as e:
        raise ConfigurationError(f"[{section}] {e}") from e


def build_settings(raw: RawConfig) -> Settings:
    raw_launch = raw.get("launch")
    return Settings(
        aws=_build(AWS, "aws", raw.get("aws", {})),
        launch=_build(LaunchTemplate, "launch", raw_launch) if raw_launch else None,
        wait=_build(WaitPolicy, "wait", raw.get("wait", {})),
        volume=_build(VolumeSettings, "volume", raw.get("volume", {})),
        bootstrap=_build(BootstrapSettings, "bootstrap", raw.get("bootstrap", {})),
    )


def load_settings(
    path: Path | None = None,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Settings:
    return build_settings(load_config(path, project_dir=project_dir, global_path=global_path))
