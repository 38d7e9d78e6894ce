from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Optional

from pydantic import ValidationError
from rich.console import Console

from .cache import BuildCacheStore
from .config import EngineConfig, StagerConfig
from .engine import EngineClient
from .errors import ArtifactIOError, FormatError
from .lifecycle import LifecycleBundle
from .pipeline import StagingPipeline
from .schemas import StagedImage, StagingRequest, md5_hex


LOGGER = logging.getLogger("cfstager.orchestrator")

EngineFactory = Callable[[EngineConfig], EngineClient]


def build_request(
    image: str,
    base: str,
    stack: str,
    app: Path,
    buildpacks: Iterable[str],
) -> StagingRequest:
    """Turn operator input into a validated :class:`StagingRequest`."""
    app_path = Path(app).expanduser().resolve()
    if not app_path.is_dir():
        raise ArtifactIOError("resolve app path", f"{app_path} is not a directory")
    try:
        return StagingRequest(
            image_ref=image,
            base_image_ref=base,
            stack=stack,
            app_path=app_path,
            buildpacks=list(buildpacks),
        )
    except ValidationError as exc:
        raise FormatError("validate staging request", str(exc)) from exc


def run_instructions(image_ref: str) -> str:
    """How to run (and stop) the staged image."""
    name = md5_hex(image_ref)
    return (
        "To run:\n"
        f"  docker run --rm --name={name} -d -e PORT=8080 -p 8080:8080 {image_ref}\n"
        "Then to stop:\n"
        f"  docker kill {name}\n"
    )


class RunOrchestrator:
    """Wire configuration and collaborators together for a single staging run."""

    def __init__(
        self,
        config: StagerConfig,
        engine_factory: EngineFactory = EngineClient.from_config,
        console: Optional[Console] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ) -> None:
        self._config = config
        self._engine_factory = engine_factory
        self._console = console or Console()
        self._stdout = stdout
        self._stderr = stderr

    def execute(self, request: StagingRequest) -> StagedImage:
        config = self._config
        LOGGER.info("Staging %s on %s (stack %s)", request.app_path, request.base_image_ref, request.stack)
        LOGGER.debug("Configuration: %s", config.to_dict())

        engine = self._engine_factory(config.engine)
        try:
            pipeline = StagingPipeline(
                engine=engine,
                lifecycle=LifecycleBundle(config.paths.lifecycle_path, config.lifecycle.url),
                cache=BuildCacheStore(config.paths.cache_dir),
                run_timeout=config.run_timeout,
                always_pull=config.always_pull,
                skip_cert_verify=config.lifecycle.skip_cert_verify,
                build_binds=config.build_binds,
                stdout=self._stdout,
                stderr=self._stderr,
                console=self._console,
            )
            staged = pipeline.stage(request)
        finally:
            engine.close()
        LOGGER.info("Committed %s (%s)", staged.reference, staged.image_id)
        return staged
