"""Two-container staging pipeline: build with the builder, commit with the launcher."""
from __future__ import annotations

import logging
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple

from rich.console import Console

from .archive import first_member, make_dir_entry, pack_directory, read_first_member, repack_archive
from .cache import BuildCacheStore
from .engine import EngineClient, display_pull_progress
from .errors import ArtifactIOError, NotFoundError
from .lifecycle import LifecycleBundle, builder_path, launcher_path
from .schemas import BuildResult, PipelineState, StagedImage, StagingRequest, is_remote_buildpack, md5_hex
from .session import ContainerSession


LOGGER = logging.getLogger("cfstager.pipeline")

HOME_DIR = "/home/vcap"
APP_DIR = "/home/vcap/app"
BUILDPACKS_DIR = "/buildpacks"
TMP_DIR = "/tmp"
DROPLET_PATH = "/tmp/droplet"
RESULT_PATH = "/tmp/result.json"
CACHE_PATH = "/tmp/cache"
LAUNCH_PORT = 8080
BUILD_DIRS = (BUILDPACKS_DIR, APP_DIR, TMP_DIR)


def build_command(request: StagingRequest, skip_cert_verify: bool = False) -> List[str]:
    """Builder command line for *request*."""
    command = [
        builder_path(request.stack),
        f"-buildDir={APP_DIR}",
        f"-buildpacksDir={BUILDPACKS_DIR}",
        f"-outputDroplet={DROPLET_PATH}",
        f"-outputMetadata={RESULT_PATH}",
        "-buildpackOrder=" + ",".join(request.buildpacks),
        f"-buildArtifactsCacheDir={CACHE_PATH}",
    ]
    if skip_cert_verify:
        command.append("-skipCertVerify")
    if request.multi_buildpack:
        # detection only works with a single buildpack
        command.append("-skipDetect")
    return command


def launch_command(request: StagingRequest, start_command: str) -> List[str]:
    # the launcher reserves a third positional argument
    return [launcher_path(request.stack), APP_DIR, start_command, ""]


def launch_environment(stack: str) -> List[str]:
    return [
        f"PORT={LAUNCH_PORT}",
        "VCAP_APP_HOST=0.0.0.0",
        f"VCAP_APP_PORT={LAUNCH_PORT}",
        f"CF_STACK={stack}",
    ]


class StagingPipeline:
    """
    Stage one application into an image.

    The pipeline owns a build session and a launch session. The build container
    runs the builder against the app and buildpacks. Its droplet (and build
    cache, when one exists) is handed over, and the launch container, which is
    never started, is committed as the target image. Both containers are
    removed however the run ends. A pipeline instance stages exactly one
    request.
    """

    def __init__(
        self,
        engine: EngineClient,
        lifecycle: LifecycleBundle,
        cache: BuildCacheStore,
        *,
        run_timeout: Optional[float] = None,
        always_pull: bool = False,
        skip_cert_verify: bool = False,
        build_binds: Optional[List[str]] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
        console: Optional[Console] = None,
    ) -> None:
        self._engine = engine
        self._lifecycle = lifecycle
        self._cache = cache
        self._run_timeout = run_timeout
        self._always_pull = always_pull
        self._skip_cert_verify = skip_cert_verify
        self._build_binds = list(build_binds or [])
        self._stdout = stdout
        self._stderr = stderr
        self._console = console or Console()
        self._state = PipelineState.IDLE
        self._history: List[Tuple[PipelineState, str]] = [(PipelineState.IDLE, "")]
        self.failure_reason: Optional[str] = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> List[PipelineState]:
        return [state for state, _ in self._history]

    def stage(self, request: StagingRequest) -> StagedImage:
        if self._state is not PipelineState.IDLE:
            raise RuntimeError("a StagingPipeline stages a single request")
        try:
            with ExitStack() as stack:
                return self._run(request, stack)
        except Exception as exc:
            self._fail(exc)
            raise

    def _run(self, request: StagingRequest, stack: ExitStack) -> StagedImage:
        self._pull(request)

        build = stack.enter_context(ContainerSession(self._engine, "build"))
        self._prepare_build(build, request)
        start_command = self._run_build(build)

        launch = stack.enter_context(ContainerSession(self._engine, "launch"))
        self._prepare_launch(launch, build, request, start_command)
        build.remove()

        # the launch container is committed without being started
        self._transition(PipelineState.LAUNCH_RUNNING, launch.handle.short_id)
        image_id = self._engine.commit(launch.handle.id, request.image_ref)
        self._transition(PipelineState.COMMITTED, request.image_ref)
        return StagedImage(reference=request.image_ref, image_id=image_id, start_command=start_command)

    def _pull(self, request: StagingRequest) -> None:
        self._transition(PipelineState.PULLING, request.base_image_ref)
        if not self._always_pull and self._engine.image_present(request.base_image_ref):
            LOGGER.info("Base image %s already present", request.base_image_ref)
            return
        LOGGER.info("Pulling base image %s", request.base_image_ref)
        display_pull_progress(self._engine.pull(request.base_image_ref), self._console)

    def _prepare_build(self, build: ContainerSession, request: StagingRequest) -> None:
        build.create(
            image=request.base_image_ref,
            command=build_command(request, skip_cert_verify=self._skip_cert_verify),
            env=[f"CF_STACK={request.stack}"],
            working_dir=HOME_DIR,
            binds=self._build_binds or None,
        )
        build.inject_artifact("/", self._lifecycle.open())
        for directory in BUILD_DIRS:
            build.inject_artifact("/", make_dir_entry(directory))
        self._inject_buildpacks(build, request)

        cached = self._cache.open(request.image_ref)
        if cached is not None:
            build.inject_artifact(TMP_DIR + "/", cached)

        build.inject_artifact(APP_DIR, pack_directory(request.app_path))
        self._transition(PipelineState.BUILD_PREPARED, build.handle.short_id)

    def _inject_buildpacks(self, build: ContainerSession, request: StagingRequest) -> None:
        for locator in request.buildpacks:
            if is_remote_buildpack(locator):
                LOGGER.info("Using online buildpack %s", locator)
                continue
            path = Path(locator).expanduser()
            if not path.is_file():
                raise ArtifactIOError("copy buildpacks to container", f"local buildpack {locator} does not exist")
            LOGGER.info("Copying local buildpack %s to the container", locator)
            # the builder looks buildpacks up by the md5 of their locator
            build.inject_artifact(BUILDPACKS_DIR + "/", repack_archive(path, md5_hex(locator) + "/"))

    def _run_build(self, build: ContainerSession) -> str:
        self._transition(PipelineState.BUILD_RUNNING, build.handle.short_id)
        build.run_and_wait(self._out(), self._err(), timeout=self._run_timeout)

        payload = read_first_member(build.extract_artifact(RESULT_PATH), operation="find start command")
        start_command = BuildResult.parse(payload).web_command()
        self._transition(PipelineState.BUILD_COMPLETE, start_command)
        return start_command

    def _prepare_launch(
        self,
        launch: ContainerSession,
        build: ContainerSession,
        request: StagingRequest,
        start_command: str,
    ) -> None:
        launch.create(
            image=request.base_image_ref,
            command=launch_command(request, start_command),
            env=launch_environment(request.stack),
            working_dir=HOME_DIR,
            exposed_ports=[LAUNCH_PORT],
        )
        launch.inject_artifact("/", self._lifecycle.open())

        launch.inject_artifact("/", make_dir_entry(HOME_DIR))
        droplet = first_member(build.extract_artifact(DROPLET_PATH), operation="copy droplet to launch container")
        launch.inject_artifact(HOME_DIR, droplet, allow_overwrite_dir_with_file=True)

        self._persist_cache(build, request)
        self._transition(PipelineState.LAUNCH_PREPARED, launch.handle.short_id)

    def _persist_cache(self, build: ContainerSession, request: StagingRequest) -> None:
        try:
            stream = build.extract_artifact(CACHE_PATH)
        except NotFoundError:
            LOGGER.info("Build left no %s; no cache to keep", CACHE_PATH)
            return
        self._cache.save(request.image_ref, stream)

    def _out(self) -> BinaryIO:
        return self._stdout if self._stdout is not None else sys.stdout.buffer

    def _err(self) -> BinaryIO:
        return self._stderr if self._stderr is not None else sys.stderr.buffer

    def _transition(self, state: PipelineState, detail: str = "") -> None:
        LOGGER.info("%s -> %s %s", self._state.value, state.value, detail)
        self._state = state
        self._history.append((state, detail))

    def _fail(self, exc: BaseException) -> None:
        if self._state.terminal:
            return
        self.failure_reason = str(exc)
        LOGGER.error("Staging failed while %s: %s", self._state.value, exc)
        self._state = PipelineState.FAILED
        self._history.append((PipelineState.FAILED, self.failure_reason))
