from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Union

from .archive import ArtifactStream
from .engine import EngineClient, LogStream
from .errors import EngineError, NonZeroExit, StagingError, StagingTimeout


LOGGER = logging.getLogger("cfstager.session")

KILL_GRACE_SECONDS = 30.0


@dataclass(frozen=True)
class ContainerHandle:
    """Identifier of the one remote container a session owns."""

    id: str
    role: str

    @property
    def short_id(self) -> str:
        return self.id[:12]


class ContainerSession:
    """
    One ephemeral container, from creation to removal.

    The session is used linearly: ``create`` → ``inject_artifact``\\* →
    ``run_and_wait`` (optional) → ``extract_artifact``\\* → ``remove``. Using it
    as a context manager guarantees ``remove`` runs on every exit path.
    """

    def __init__(self, engine: EngineClient, role: str) -> None:
        self._engine = engine
        self._role = role
        self._handle: Optional[ContainerHandle] = None
        self._started = False
        self._removed = False

    @property
    def role(self) -> str:
        return self._role

    @property
    def handle(self) -> ContainerHandle:
        if self._handle is None:
            raise RuntimeError(f"{self._role} container has not been created")
        return self._handle

    @property
    def created(self) -> bool:
        return self._handle is not None

    @property
    def removed(self) -> bool:
        return self._removed

    def __enter__(self) -> "ContainerSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.remove()

    def create(
        self,
        image: str,
        command: List[str],
        env: List[str],
        working_dir: str,
        exposed_ports: Optional[List[Union[int, str]]] = None,
        binds: Optional[List[str]] = None,
    ) -> ContainerHandle:
        if self._handle is not None:
            raise RuntimeError(f"{self._role} container already created ({self._handle.short_id})")
        container_id = self._engine.create_container(
            image=image,
            command=command,
            env=env,
            working_dir=working_dir,
            exposed_ports=exposed_ports,
            binds=binds,
        )
        self._handle = ContainerHandle(id=container_id, role=self._role)
        LOGGER.info("Created %s container %s from %s", self._role, self._handle.short_id, image)
        LOGGER.debug("%s command: %s", self._role, command)
        return self._handle

    def inject_artifact(
        self,
        destination: str,
        stream: ArtifactStream,
        allow_overwrite_dir_with_file: bool = False,
    ) -> None:
        """Unpack the tar *stream* into the container at *destination*."""
        handle = self.handle
        if self._started:
            raise RuntimeError(f"cannot copy into {self._role} container after it has started")
        LOGGER.debug("Copying %s into %s:%s", stream.description, handle.short_id, destination)
        try:
            self._engine.put_archive(
                handle.id,
                destination,
                stream,
                allow_overwrite_dir_with_file=allow_overwrite_dir_with_file,
            )
        finally:
            stream.close()

    def run_and_wait(self, stdout: BinaryIO, stderr: BinaryIO, timeout: Optional[float] = None) -> int:
        """
        Start the container and block until it exits, copying its output.

        Log draining and exit waiting run as two tasks. If the wait reports an
        engine error, the log stream is closed and the error raised without
        waiting for the logs. A normal exit waits for the logs to reach
        end-of-stream first. A non-zero exit status raises ``NonZeroExit``. With a
        *timeout*, an overdue container is killed and ``StagingTimeout`` raised.
        """
        handle = self.handle
        if self._started:
            raise RuntimeError(f"{self._role} container has already been started")
        self._started = True

        self._engine.start(handle.id)
        LOGGER.info("Started %s container %s", self._role, handle.short_id)
        logs = self._engine.attach_logs(handle.id)

        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"cfstager-{self._role}")
        abandoned = False
        try:
            drain = executor.submit(_drain_logs, logs, stdout, stderr)
            waiter = executor.submit(self._engine.wait, handle.id)
            deadline = None if timeout is None else time.monotonic() + timeout

            done, _ = wait([waiter], timeout=timeout)
            if not done:
                abandoned = not self._kill(handle, logs, [waiter, drain])
                raise StagingTimeout("container run", timeout)

            try:
                status = waiter.result()
            except Exception:
                logs.close()
                raise

            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            done, _ = wait([drain], timeout=remaining)
            if not done:
                logs.close()
                raise StagingTimeout(
                    "container logs",
                    timeout,
                    f"container exited but its log stream was still open after {timeout:g}s",
                )
            drain_error = drain.exception()
            if drain_error is not None:
                if isinstance(drain_error, StagingError):
                    raise drain_error
                raise EngineError("container logs", str(drain_error)) from drain_error
        finally:
            executor.shutdown(wait=not abandoned)

        LOGGER.info("%s container %s exited with status %s", self._role, handle.short_id, status)
        if status != 0:
            raise NonZeroExit("container run", status)
        return status

    def _kill(self, handle: ContainerHandle, logs: LogStream, pending: List[Future]) -> bool:
        """Kill an overdue container; True when both tasks wound down."""
        LOGGER.warning("%s container %s timed out; killing it", self._role, handle.short_id)
        try:
            self._engine.kill(handle.id)
        except StagingError as exc:
            LOGGER.warning("Failed to kill %s container %s: %s", self._role, handle.short_id, exc)
        logs.close()
        _, not_done = wait(pending, timeout=KILL_GRACE_SECONDS)
        return not not_done

    def extract_artifact(self, source: str) -> ArtifactStream:
        """Copy *source* out of the container as a tar stream."""
        handle = self.handle
        LOGGER.debug("Copying %s:%s out of the container", handle.short_id, source)
        return self._engine.get_archive(handle.id, source)

    def remove(self) -> None:
        """Best-effort removal; failures are logged and never raised."""
        if self._handle is None:
            return
        if self._removed:
            LOGGER.debug("%s container %s already removed", self._role, self._handle.short_id)
            return
        self._removed = True
        try:
            self._engine.remove_container(self._handle.id)
        except Exception as exc:  # removal must not mask the run outcome
            LOGGER.warning("Failed to remove %s container %s: %s", self._role, self._handle.short_id, exc)
        else:
            LOGGER.info("Removed %s container %s", self._role, self._handle.short_id)


def _drain_logs(logs: LogStream, stdout: BinaryIO, stderr: BinaryIO) -> int:
    written = 0
    for out, err in logs:
        if out:
            stdout.write(out)
            stdout.flush()
            written += len(out)
        if err:
            stderr.write(err)
            stderr.flush()
            written += len(err)
    return written
