"""TOML-based profile configuration.

Loads ~/.shellfleet/defaults.toml (global) and shellfleet.toml (project),
merges them, and resolves named profiles:

    [profiles.dev]
    region = "eu-west-1"
    username = "ubuntu"
    key_file = "~/.ssh/dev.pem"
    connect_retries = true
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from shellfleet.constants import CONNECT_TIMEOUT, POLL_INTERVAL, WAIT_FOR_RUNNING_TIMEOUT
from shellfleet.exceptions import ConfigurationError
from shellfleet.orchestrator import RunOptions
from shellfleet.providers.aws import MatchBy
from shellfleet.types import Credentials

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".shellfleet" / "defaults.toml"
PROJECT_CONFIG_NAME = "shellfleet.toml"


@dataclass(frozen=True, slots=True)
class Profile:
    """Connection and timing settings for one environment."""

    name: str = "default"
    region: str | None = None
    aws_profile: str | None = None
    match: MatchBy = "security-group"
    username: str = "ec2-user"
    key_file: str | None = None
    password: str | None = None
    wait_timeout: float = WAIT_FOR_RUNNING_TIMEOUT
    poll_interval: float = POLL_INTERVAL
    connect_timeout: float = CONNECT_TIMEOUT
    connect_retries: bool = False
    include_multiple_reservations: bool = False

    def credentials(self) -> Credentials:
        key_file = Path(self.key_file).expanduser() if self.key_file else None
        return Credentials(username=self.username, key_file=key_file, password=self.password)

    def options(self) -> RunOptions:
        return RunOptions(
            wait_timeout=self.wait_timeout,
            poll_interval=self.poll_interval,
            connect_timeout=self.connect_timeout,
            connect_retries=self.connect_retries,
            include_multiple_reservations=self.include_multiple_reservations,
        )


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
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("profiles", {})
    return merged


def _build_profile(name: str, raw: RawConfig) -> Profile:
    known = {f.name for f in fields(Profile)} - {"name"}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(
            f"Profile '{name}' has unknown keys: {', '.join(unknown)}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    if raw.get("match", "security-group") not in ("security-group", "tag"):
        raise ConfigurationError(f"Profile '{name}': match must be 'security-group' or 'tag'")
    return Profile(name=name, **raw)


def resolve_profile(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Profile:
    config = load_config(project_dir=project_dir, global_path=global_path)

    profiles = config["profiles"]
    if name not in profiles:
        if name == "default":
            return Profile()
        raise ConfigurationError(
            f"Profile '{name}' not found. Available: {', '.join(profiles) or 'none'}"
        )

    return _build_profile(name, dict(profiles[name]))
