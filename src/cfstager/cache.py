from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .archive import ArtifactStream, write_stream
from .errors import ArtifactIOError
from .schemas import md5_hex


LOGGER = logging.getLogger("cfstager.cache")


class BuildCacheStore:
    """
    At most one build-artifact cache tarball per target image, on local disk.

    Entries are keyed by the md5 of the image reference. Writes go through a
    temporary file and a rename, but nothing is locked: two runs staging the
    same image at once are not supported.
    """

    def __init__(self, cache_dir: Path) -> None:
        self._cache_dir = Path(cache_dir)

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @staticmethod
    def key(image_ref: str) -> str:
        return md5_hex(image_ref)

    def path_for(self, image_ref: str) -> Path:
        return self._cache_dir / f"cfstager.{self.key(image_ref)}.tar"

    def open(self, image_ref: str) -> Optional[ArtifactStream]:
        """Return the cached tarball for *image_ref*, or None if there is none."""
        path = self.path_for(image_ref)
        if not path.is_file():
            LOGGER.info("No build cache for %s yet", image_ref)
            return None
        LOGGER.info("Reusing build cache %s", path)
        return ArtifactStream.from_file(path, description=f"build cache {path.name}")

    def save(self, image_ref: str, stream: ArtifactStream) -> Path:
        path = self.path_for(image_ref)
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=self._cache_dir)
            os.close(fd)
        except OSError as exc:
            stream.close()
            raise ArtifactIOError("save build cache", f"{self._cache_dir}: {exc}") from exc

        try:
            size = write_stream(stream, tmp_name)
            os.replace(tmp_name, path)
        except ArtifactIOError:
            raise
        except OSError as exc:
            raise ArtifactIOError("save build cache", f"{path}: {exc}") from exc
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        LOGGER.info("Saved build cache %s (%d bytes)", path, size)
        return path
