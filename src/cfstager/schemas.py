"""Data models shared by the orchestrator and the staging pipeline."""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import FormatError, MissingStartCommand


REMOTE_PREFIXES = ("https://", "http://")


def md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def is_remote_buildpack(locator: str) -> bool:
    return locator.startswith(REMOTE_PREFIXES)


class PipelineState(str, Enum):
    """States the staging pipeline moves through."""

    IDLE = "idle"
    PULLING = "pulling"
    BUILD_PREPARED = "build_prepared"
    BUILD_RUNNING = "build_running"
    BUILD_COMPLETE = "build_complete"
    LAUNCH_PREPARED = "launch_prepared"
    LAUNCH_RUNNING = "launch_running"
    COMMITTED = "committed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.COMMITTED, PipelineState.FAILED)


class StagingRequest(BaseModel):
    """Validated input of one staging run."""

    model_config = ConfigDict(frozen=True)

    image_ref: str = Field(..., min_length=1, description="Reference the staged image is committed as.")
    base_image_ref: str = Field(..., min_length=1, description="Image both staging containers start from.")
    stack: str = Field(..., min_length=1, description="Stack name exported to the lifecycle as CF_STACK.")
    app_path: Path = Field(..., description="Application source directory.")
    buildpacks: List[str] = Field(..., description="Buildpack URLs or local zip paths, in priority order.")

    @field_validator("buildpacks")
    @classmethod
    def _require_buildpacks(cls, value: List[str]) -> List[str]:
        cleaned = [locator.strip() for locator in value if locator and locator.strip()]
        if not cleaned:
            raise ValueError("at least one buildpack is required")
        return cleaned

    @property
    def image_key(self) -> str:
        """Stable key derived from the target image reference."""
        return md5_hex(self.image_ref)

    @property
    def multi_buildpack(self) -> bool:
        return len(self.buildpacks) >= 2

    @property
    def windows(self) -> bool:
        return self.stack.startswith("windows")


class BuildResult(BaseModel):
    """The ``result.json`` document the builder writes."""

    process_types: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def parse(cls, payload: bytes) -> "BuildResult":
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise FormatError("parse result.json", str(exc)) from exc
        if not isinstance(data, dict):
            raise FormatError("parse result.json", "expected a JSON object")
        try:
            return cls.model_validate({"process_types": data.get("process_types") or {}})
        except ValidationError as exc:
            raise FormatError("parse result.json", str(exc)) from exc

    def web_command(self) -> str:
        command = self.process_types.get("web", "").strip()
        if not command:
            raise MissingStartCommand(
                "find start command",
                "result.json has no process_types.web entry; the buildpack produced no start command",
            )
        return command


@dataclass(frozen=True)
class StagedImage:
    """The committed result of a successful run."""

    reference: str
    image_id: str
    start_command: str
