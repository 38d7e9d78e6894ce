"""Adapter over the Docker Engine API used by staging sessions.

Only the handful of calls the stager needs are exposed, and every SDK or
transport failure is translated into the :mod:`cfstager.errors` taxonomy so the
pipeline never has to know about ``docker.errors``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Type, Union

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.utils import kwargs_from_env, parse_repository_tag
from rich.console import Console

from .archive import CHUNK_SIZE, ArtifactStream
from .config import EngineConfig
from .errors import EngineError, NotFoundError, StagingError


LOGGER = logging.getLogger("cfstager.engine")

LogFrame = Tuple[Optional[bytes], Optional[bytes]]


@contextmanager
def engine_call(operation: str, not_found: Type[StagingError] = NotFoundError) -> Iterator[None]:
    """Translate docker SDK and transport errors raised inside the block."""
    try:
        yield
    except StagingError:
        raise
    except NotFound as exc:
        raise not_found(operation, _explain(exc)) from exc
    except APIError as exc:
        raise EngineError(operation, _explain(exc)) from exc
    except (DockerException, requests.exceptions.RequestException) as exc:
        raise EngineError(operation, str(exc)) from exc


def _explain(exc: APIError) -> str:
    explanation = getattr(exc, "explanation", None)
    if explanation:
        return str(explanation)
    return str(exc)


class LogStream:
    """Demultiplexed log frames of a running container; closing it detaches."""

    def __init__(self, frames: Iterable[LogFrame]) -> None:
        self._frames = frames

    def __iter__(self) -> Iterator[LogFrame]:
        return iter(self._frames)

    def close(self) -> None:
        close = getattr(self._frames, "close", None)
        if close is not None:
            close()


class EngineClient:
    """
    Sequential facade over :class:`docker.APIClient`.

    The low-level client is used because staging needs things the high-level
    models hide: copy-in with an explicit overwrite policy, demultiplexed
    attach, and commit of a container that was never started.
    """

    def __init__(self, api: docker.APIClient) -> None:
        self._api = api

    @classmethod
    def from_config(cls, config: EngineConfig) -> "EngineClient":
        kwargs: Dict[str, Any] = kwargs_from_env()
        if config.base_url:
            kwargs["base_url"] = config.base_url
        kwargs["version"] = config.api_version
        kwargs["timeout"] = config.timeout
        with engine_call("new docker client", not_found=EngineError):
            api = docker.APIClient(**kwargs)
        LOGGER.debug("Connected to docker engine at %s (API %s)", api.base_url, config.api_version)
        return cls(api)

    @property
    def api(self) -> docker.APIClient:
        return self._api

    def close(self) -> None:
        self._api.close()

    def image_present(self, reference: str) -> bool:
        try:
            with engine_call("inspect image"):
                self._api.inspect_image(reference)
        except NotFoundError:
            return False
        return True

    def pull(self, reference: str) -> Iterator[Dict[str, Any]]:
        """Yield decoded pull progress events; an ``error`` event raises."""
        with engine_call("image pull", not_found=EngineError):
            for event in self._api.pull(reference, stream=True, decode=True):
                if "error" in event:
                    raise EngineError("image pull", str(event.get("error")))
                yield event

    def create_container(
        self,
        image: str,
        command: List[str],
        env: List[str],
        working_dir: str,
        exposed_ports: Optional[List[Union[int, str]]] = None,
        binds: Optional[List[str]] = None,
    ) -> str:
        with engine_call("container create", not_found=EngineError):
            host_config = self._api.create_host_config(binds=binds) if binds else None
            created = self._api.create_container(
                image=image,
                command=command,
                environment=env,
                working_dir=working_dir,
                ports=exposed_ports or None,
                host_config=host_config,
            )
        for warning in created.get("Warnings") or []:
            LOGGER.warning("container create: %s", warning)
        return created["Id"]

    def put_archive(
        self,
        container_id: str,
        path: str,
        data: ArtifactStream,
        allow_overwrite_dir_with_file: bool = False,
    ) -> None:
        # APIClient.put_archive has no way to pass noOverwriteDirNonDir.
        params: Dict[str, Any] = {"path": path}
        if not allow_overwrite_dir_with_file:
            params["noOverwriteDirNonDir"] = "true"
        operation = f"copy to container {path}"
        try:
            with engine_call(operation):
                url = self._api._url("/containers/{0}/archive", container_id)
                response = self._api._put(url, params=params, data=data)
                self._api._raise_for_status(response)
        except EngineError as exc:
            # urllib3 reports an OSError from the body as a dropped connection
            if isinstance(data.error, StagingError):
                raise data.error from exc
            raise

    def start(self, container_id: str) -> None:
        with engine_call("container start", not_found=EngineError):
            self._api.start(container_id)

    def attach_logs(self, container_id: str) -> LogStream:
        with engine_call("container logs", not_found=EngineError):
            frames = self._api.attach(container_id, stdout=True, stderr=True, stream=True, logs=True, demux=True)
        return LogStream(frames)

    def wait(self, container_id: str) -> int:
        with engine_call("container wait", not_found=EngineError):
            result = self._api.wait(container_id, condition="not-running")
        error = result.get("Error") or {}
        if error.get("Message"):
            raise EngineError("container wait", error["Message"])
        return int(result.get("StatusCode", -1))

    def kill(self, container_id: str) -> None:
        with engine_call("container kill", not_found=EngineError):
            self._api.kill(container_id)

    def get_archive(self, container_id: str, path: str) -> ArtifactStream:
        """
        Copy *path* out as a tar stream.

        The stream owns the HTTP response: closing it early, as
        :func:`~cfstager.archive.first_member` does, releases the connection.
        """
        operation = f"copy from container {path}"
        with engine_call(operation):
            url = self._api._url("/containers/{0}/archive", container_id)
            response = self._api._get(url, params={"path": path}, stream=True)
            try:
                self._api._raise_for_status(response)
            except Exception:
                response.close()
                raise

        def chunks() -> Iterator[bytes]:
            with engine_call(operation, not_found=EngineError):
                yield from response.iter_content(chunk_size=CHUNK_SIZE)

        return ArtifactStream(chunks(), description=f"{path} in {container_id[:12]}", on_close=response.close)

    def commit(self, container_id: str, reference: str) -> str:
        repository, tag = parse_repository_tag(reference)
        with engine_call("create image from container", not_found=EngineError):
            result = self._api.commit(container_id, repository=repository, tag=tag or "latest")
        return result["Id"]

    def remove_container(self, container_id: str) -> None:
        with engine_call("container remove"):
            self._api.remove_container(container_id, force=True)


def display_pull_progress(events: Iterable[Dict[str, Any]], console: Optional[Console] = None) -> int:
    """Render pull progress events, returning how many were seen."""
    console = console or Console()
    seen = 0
    for event in events:
        seen += 1
        status = event.get("status", "")
        layer = event.get("id")
        progress = event.get("progress")
        parts = [f"{layer}:" if layer else "", status, progress or ""]
        line = " ".join(part for part in parts if part)
        if not line:
            continue
        if progress:
            LOGGER.debug(line)
        else:
            console.print(line, highlight=False)
    return seen
