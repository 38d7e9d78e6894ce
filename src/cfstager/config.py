from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import ArtifactIOError, FormatError


DEFAULT_LIFECYCLE_URL = "https://github.com/dgodd/cfwindowsstager/releases/download/v0.0.1/lifecycle.tar.gz"
LIFECYCLE_FILENAME = ".cfstager.lifecycle.tar.gz"
STATE_DIR_ENV_VARS = ("TEMP", "TMPDIR", "HOME", "HOMEPATH")


@dataclass
class EngineConfig:
    """How to reach the Docker Engine API."""

    base_url: Optional[str] = None
    api_version: str = "1.38"
    timeout: int = 120

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LifecycleConfig:
    """Where the buildpack lifecycle bundle comes from."""

    url: str = DEFAULT_LIFECYCLE_URL
    skip_cert_verify: bool = False


@dataclass
class PathsConfig:
    """Local filesystem layout for cached state."""

    state_dir: Path
    cache_dir: Path
    lifecycle_path: Path


@dataclass
class StagerConfig:
    """Top level configuration consumed by the orchestrator and pipeline."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    paths: PathsConfig = field(default_factory=lambda: build_paths(resolve_state_dir()))
    run_timeout: Optional[float] = None
    always_pull: bool = False
    build_binds: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON serialisable copy of the config for logging."""
        payload = asdict(self)
        payload["paths"] = {
            "state_dir": str(self.paths.state_dir),
            "cache_dir": str(self.paths.cache_dir),
            "lifecycle_path": str(self.paths.lifecycle_path),
        }
        return payload


def resolve_state_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Pick the directory holding the lifecycle bundle and build caches.

    The first non-empty variable out of ``TEMP``, ``TMPDIR``, ``HOME`` and
    ``HOMEPATH`` wins; without any of them the current directory is used.
    """
    env = os.environ if environ is None else environ
    for name in STATE_DIR_ENV_VARS:
        value = env.get(name)
        if value:
            return Path(value)
    return Path.cwd()


def build_paths(state_dir: Path) -> PathsConfig:
    """Construct the default filesystem layout under *state_dir*."""
    state_dir = Path(state_dir)
    return PathsConfig(
        state_dir=state_dir,
        cache_dir=state_dir,
        lifecycle_path=state_dir / LIFECYCLE_FILENAME,
    )


def load_config(path: Optional[Path]) -> StagerConfig:
    """
    Load configuration from *path* if provided, otherwise use the defaults.

    The configuration file is JSON. Unspecified fields fall back to the
    defaults baked into the dataclasses above and unknown keys are ignored.
    Unreadable files raise ``ArtifactIOError``; malformed JSON or a section of
    the wrong shape raises ``FormatError``.
    """
    config = StagerConfig()
    if path is None:
        return config

    try:
        with Path(path).expanduser().open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError as exc:
        raise FormatError("load config", f"{path}: {exc}") from exc
    except OSError as exc:
        raise ArtifactIOError("load config", f"{path}: {exc}") from exc
    if not isinstance(data, dict):
        raise FormatError("load config", f"{path}: expected a JSON object")

    try:
        _apply_config_updates(config, data)
    except (AttributeError, TypeError, ValueError) as exc:
        raise FormatError("load config", f"{path}: {exc}") from exc
    return config


def _apply_config_updates(config: StagerConfig, payload: Dict[str, Any]) -> None:
    """Update *config* in-place using keys from the *payload* dict."""
    if "engine" in payload:
        for key, value in payload["engine"].items():
            if hasattr(config.engine, key):
                setattr(config.engine, key, value)

    if "lifecycle" in payload:
        for key, value in payload["lifecycle"].items():
            if hasattr(config.lifecycle, key):
                setattr(config.lifecycle, key, value)

    if "paths" in payload:
        override = payload["paths"]
        paths = build_paths(Path(override.get("state_dir", config.paths.state_dir)))
        if "cache_dir" in override:
            paths.cache_dir = Path(override["cache_dir"])
        if "lifecycle_path" in override:
            paths.lifecycle_path = Path(override["lifecycle_path"])
        config.paths = paths

    if "run_timeout" in payload:
        timeout = payload["run_timeout"]
        config.run_timeout = float(timeout) if timeout is not None else None
    if "always_pull" in payload:
        config.always_pull = bool(payload["always_pull"])
    if "build_binds" in payload:
        config.build_binds = [str(bind) for bind in payload["build_binds"]]
