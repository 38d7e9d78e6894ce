from __future__ import annotations

import io
import tarfile
import threading
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from cfstager.archive import ArtifactStream
from cfstager.cache import BuildCacheStore
from cfstager.errors import EngineError, NotFoundError
from cfstager.lifecycle import LifecycleBundle


WEB_COMMAND = "bundle exec rackup config.ru -p $PORT"
RESULT_JSON = b'{"process_types": {"web": "bundle exec rackup config.ru -p $PORT"}}'
DROPLET = b"droplet-archive-bytes"
LIFECYCLE = b"lifecycle-bundle-bytes"


def tar_bytes(members: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in members.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def tar_members(data: bytes) -> List[tarfile.TarInfo]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
        return tar.getmembers()


def make_zip(path: Path, entries: Iterable[Tuple[str, bytes, int]]) -> Path:
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content, mode in entries:
            info = zipfile.ZipInfo(name, date_time=(2020, 1, 2, 3, 4, 6))
            info.create_system = 3
            info.external_attr = (0o100000 | mode) << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            archive.writestr(info, content)
    return path


class FakeLogStream:
    """Log frames that, when ``follow`` is set, block until closed."""

    def __init__(self, frames: List[Tuple[Optional[bytes], Optional[bytes]]], follow: bool = False) -> None:
        self._frames = frames
        self._follow = follow
        self.closed = threading.Event()

    def __iter__(self):
        for frame in self._frames:
            if self.closed.is_set():
                return
            yield frame
        if self._follow:
            self.closed.wait(10)

    def close(self) -> None:
        self.closed.set()


@dataclass
class FakeContainer:
    id: str
    image: str
    command: List[str]
    env: List[str]
    working_dir: str
    exposed_ports: Optional[list]
    binds: Optional[List[str]]
    injected: List[Tuple[str, bytes, bool]] = field(default_factory=list)
    started: bool = False
    killed: threading.Event = field(default_factory=threading.Event)
    removed: bool = False

    @property
    def role(self) -> str:
        return "build" if "builder" in self.command[0] else "launch"

    def injected_at(self, path: str) -> List[bytes]:
        return [data for dest, data, _ in self.injected if dest == path]


class FakeEngine:
    """In-memory stand-in for :class:`cfstager.engine.EngineClient`."""

    def __init__(
        self,
        *,
        exit_code: int = 0,
        outputs: Optional[Dict[str, bytes]] = None,
        log_frames: Optional[List[Tuple[Optional[bytes], Optional[bytes]]]] = None,
        follow_logs: bool = False,
        present_images: Iterable[str] = ("cloudfoundry/windows2016fs:1803",),
        wait_error: Optional[Exception] = None,
        hang: bool = False,
        commit_error: Optional[Exception] = None,
        remove_error: Optional[Exception] = None,
    ) -> None:
        self.exit_code = exit_code
        self.outputs = {"/tmp/result.json": RESULT_JSON, "/tmp/droplet": DROPLET} if outputs is None else outputs
        self.log_frames = [(b"-----> Installing\n", None), (None, b"warning: slow\n")] if log_frames is None else log_frames
        self.follow_logs = follow_logs
        self.present_images = set(present_images)
        self.wait_error = wait_error
        self.hang = hang
        self.commit_error = commit_error
        self.remove_error = remove_error
        self.containers: Dict[str, FakeContainer] = {}
        self.order: List[str] = []
        self.pulled: List[str] = []
        self.commits: List[Tuple[str, str]] = []
        self.kills: List[str] = []
        self.removals: List[str] = []
        self.log_streams: List[FakeLogStream] = []
        self.closed = False

    # helpers for assertions
    def by_role(self, role: str) -> FakeContainer:
        matches = [c for c in self.containers.values() if c.role == role]
        assert len(matches) == 1, f"expected one {role} container, found {len(matches)}"
        return matches[0]

    # EngineClient surface
    def image_present(self, reference: str) -> bool:
        return reference in self.present_images

    def pull(self, reference: str):
        self.pulled.append(reference)
        yield {"status": f"Pulling from {reference}"}
        yield {"status": "Downloading", "id": "abc123", "progress": "[==>   ]"}
        yield {"status": "Pull complete", "id": "abc123"}
        self.present_images.add(reference)

    def create_container(self, image, command, env, working_dir, exposed_ports=None, binds=None) -> str:
        if image not in self.present_images:
            raise EngineError("container create", f"No such image: {image}")
        container_id = f"{len(self.containers) + 1:02d}" + "f" * 62
        self.containers[container_id] = FakeContainer(
            id=container_id,
            image=image,
            command=list(command),
            env=list(env),
            working_dir=working_dir,
            exposed_ports=exposed_ports,
            binds=binds,
        )
        self.order.append(f"create:{container_id}")
        return container_id

    def put_archive(self, container_id, path, data: ArtifactStream, allow_overwrite_dir_with_file=False) -> None:
        payload = b"".join(data)
        self.containers[container_id].injected.append((path, payload, allow_overwrite_dir_with_file))

    def start(self, container_id: str) -> None:
        self.containers[container_id].started = True
        self.order.append(f"start:{container_id}")

    def attach_logs(self, container_id: str) -> FakeLogStream:
        stream = FakeLogStream(self.log_frames, follow=self.follow_logs)
        self.log_streams.append(stream)
        return stream

    def wait(self, container_id: str) -> int:
        if self.wait_error is not None:
            raise self.wait_error
        if self.hang:
            self.containers[container_id].killed.wait(10)
            return 137
        return self.exit_code

    def kill(self, container_id: str) -> None:
        self.kills.append(container_id)
        self.containers[container_id].killed.set()

    def get_archive(self, container_id: str, path: str) -> ArtifactStream:
        container = self.containers[container_id]
        if not container.started or path not in self.outputs:
            raise NotFoundError(f"copy from container {path}", f"Could not find the file {path} in container")
        name = path.rstrip("/").rsplit("/", 1)[-1]
        return ArtifactStream.from_bytes(tar_bytes({name: self.outputs[path]}), description=path)

    def commit(self, container_id: str, reference: str) -> str:
        if self.commit_error is not None:
            raise self.commit_error
        self.commits.append((container_id, reference))
        self.order.append(f"commit:{container_id}")
        return "sha256:" + "ab" * 32

    def remove_container(self, container_id: str) -> None:
        self.removals.append(container_id)
        self.order.append(f"remove:{container_id}")
        container = self.containers[container_id]
        if container.removed:
            raise NotFoundError("container remove", f"No such container: {container_id}")
        if self.remove_error is not None:
            raise self.remove_error
        container.removed = True

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def app_dir(tmp_path: Path) -> Path:
    app = tmp_path / "app"
    app.mkdir()
    (app / "config.ru").write_text("run lambda { |env| [200, {}, ['ok']] }\n", encoding="utf-8")
    return app


@pytest.fixture()
def lifecycle_bundle(tmp_path: Path) -> LifecycleBundle:
    path = tmp_path / "state" / ".cfstager.lifecycle.tar.gz"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(LIFECYCLE)
    return LifecycleBundle(path, url="https://example.invalid/lifecycle.tar.gz")


@pytest.fixture()
def cache_store(tmp_path: Path) -> BuildCacheStore:
    return BuildCacheStore(tmp_path / "cache")
