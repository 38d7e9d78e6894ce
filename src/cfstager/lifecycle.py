from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import requests

from .archive import ArtifactStream
from .errors import ArtifactIOError


LOGGER = logging.getLogger("cfstager.lifecycle")

LIFECYCLE_DIR = "/lifecycle"
DOWNLOAD_CHUNK_SIZE = 256 * 1024


def _executable(name: str, stack: str) -> str:
    path = f"{LIFECYCLE_DIR}/{name}"
    if stack.startswith("windows"):
        path += ".exe"
    return path


def builder_path(stack: str) -> str:
    return _executable("builder", stack)


def launcher_path(stack: str) -> str:
    return _executable("launcher", stack)


class LifecycleBundle:
    """
    The tarball holding the builder and launcher binaries.

    It unpacks at ``/`` into ``/lifecycle``. The bundle is downloaded once and
    kept at *path*; later runs reuse the local copy.
    """

    def __init__(
        self,
        path: Path,
        url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
    ) -> None:
        self._path = Path(path)
        self._url = url
        self._session = session or requests.Session()
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    def ensure(self) -> Path:
        """Return the local bundle path, downloading the bundle if it is missing."""
        if self._path.is_file():
            LOGGER.debug("Using cached lifecycle bundle %s", self._path)
            return self._path
        self._download()
        return self._path

    def open(self) -> ArtifactStream:
        return ArtifactStream.from_file(self.ensure(), description="lifecycle bundle")

    def _download(self) -> None:
        LOGGER.info("Downloading lifecycle bundle from %s", self._url)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f"{self._path.name}.", suffix=".part", dir=self._path.parent)
        except OSError as exc:
            raise ArtifactIOError("download lifecycle", f"{self._path.parent}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as handle:
                with self._session.get(self._url, stream=True, timeout=self._timeout) as response:
                    response.raise_for_status()
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
            os.replace(tmp_name, self._path)
        except requests.exceptions.RequestException as exc:
            raise ArtifactIOError("download lifecycle", f"{self._url}: {exc}") from exc
        except OSError as exc:
            raise ArtifactIOError("download lifecycle", f"{self._path}: {exc}") from exc
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        LOGGER.info("Saved lifecycle bundle to %s", self._path)
