"""Tar stream helpers used to move files in and out of staging containers.

The container engine only speaks tar on its copy endpoints, so everything that
crosses the boundary (the app tree, zipped buildpacks, the droplet) is turned
into an :class:`ArtifactStream` first.
"""

from __future__ import annotations

import io
import logging
import os
import queue
import tarfile
import threading
import time
import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator, Optional, Union

from .errors import ArtifactIOError, FormatError, NotFoundError, StreamConsumedError


LOGGER = logging.getLogger("cfstager.archive")

CHUNK_SIZE = 64 * 1024
PIPE_DEPTH = 16
DIR_MODE = 0o755
FILE_MODE = 0o644

_UNIX_CREATORS = {3, 19}
_MSDOS_CREATORS = {0, 11, 14}
_MSDOS_READONLY = 0x01

PathLike = Union[str, "os.PathLike[str]"]


class ArtifactStream:
    """
    Lazy, single-pass sequence of byte chunks holding a tar archive (or, for
    :func:`first_member`, a single file's contents).

    The stream can be iterated once, which is what the engine upload wants, or
    read through :meth:`read`, which is what :mod:`tarfile` wants. It cannot be
    restarted: iterating it a second time raises :class:`StreamConsumedError`.

    The first exception raised by the chunk source is kept on :attr:`error`.
    An HTTP client consuming the stream may wrap it in a transport error, and
    the uploader uses the recorded one to report the real cause.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        description: str = "artifact",
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self.description = description
        self._chunks: Iterator[bytes] = iter(chunks)
        self._on_close = on_close
        self._buffer = bytearray()
        self._iterated = False
        self._read_started = False
        self._eof = False
        self._closed = False
        self.error: Optional[BaseException] = None

    @classmethod
    def from_bytes(cls, data: bytes, description: str = "buffer") -> "ArtifactStream":
        return cls([bytes(data)], description=description)

    @classmethod
    def from_file(cls, path: PathLike, description: Optional[str] = None) -> "ArtifactStream":
        """Open *path* now and stream it in chunks; the handle closes with the stream."""
        try:
            handle = open(path, "rb")
        except OSError as exc:
            raise ArtifactIOError("open artifact", f"{path}: {exc}") from exc
        return cls(_read_chunks(handle), description=description or str(path), on_close=handle.close)

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[bytes]:
        if self._iterated or self._read_started:
            raise StreamConsumedError(f"{self.description} has already been consumed")
        self._iterated = True
        return self._iterate()

    def _iterate(self) -> Iterator[bytes]:
        try:
            for chunk in self._chunks:
                if chunk:
                    yield chunk
            self._eof = True
        except Exception as exc:
            self._record(exc)
            raise
        finally:
            self.close()

    def read(self, size: Optional[int] = -1) -> bytes:
        if self._iterated:
            raise StreamConsumedError(f"{self.description} is being consumed by iteration")
        self._read_started = True
        if size is None or size < 0:
            while not self._eof:
                self._fill()
            data = bytes(self._buffer)
            self._buffer.clear()
            return data
        while len(self._buffer) < size and not self._eof:
            self._fill()
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def _fill(self) -> None:
        if self._closed:
            self._eof = True
            return
        try:
            self._buffer.extend(next(self._chunks))
        except StopIteration:
            self._eof = True
            self.close()
        except Exception as exc:
            self._record(exc)
            raise

    def _record(self, exc: BaseException) -> None:
        if self.error is None:
            self.error = exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close_chunks = getattr(self._chunks, "close", None)
        try:
            if close_chunks is not None:
                close_chunks()
        finally:
            if self._on_close is not None:
                self._on_close()

    def __enter__(self) -> "ArtifactStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ArtifactStream({self.description!r})"


def _read_chunks(handle: BinaryIO) -> Iterator[bytes]:
    with handle:
        while True:
            block = handle.read(CHUNK_SIZE)
            if not block:
                return
            yield block


class _PipeCancelled(Exception):
    """Raised inside a producer thread once the consumer has gone away."""


_EOF = object()


class _PipeWriter:
    """Write-only file object that hands chunks to a bounded queue."""

    def __init__(self, pipe: "queue.Queue[object]", cancelled: threading.Event) -> None:
        self._pipe = pipe
        self._cancelled = cancelled

    def write(self, data: bytes) -> int:
        if data:
            self.put(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def put(self, item: object) -> None:
        while True:
            if self._cancelled.is_set():
                raise _PipeCancelled()
            try:
                self._pipe.put(item, timeout=0.1)
                return
            except queue.Full:
                continue


def _piped_stream(
    produce: Callable[[_PipeWriter], None],
    description: str,
    release: Optional[Callable[[], None]] = None,
) -> ArtifactStream:
    """
    Run *produce* on a worker thread and expose what it writes as a stream.

    The queue is bounded, so the producer never gets more than ``PIPE_DEPTH``
    chunks ahead of the consumer. Errors raised by the producer are re-raised
    on the consumer side. Closing the stream early cancels the producer.
    """
    pipe: "queue.Queue[object]" = queue.Queue(maxsize=PIPE_DEPTH)
    cancelled = threading.Event()
    writer = _PipeWriter(pipe, cancelled)
    thread = threading.Thread(target=lambda: _run_producer(produce, writer), name="cfstager-pipe", daemon=True)
    state = {"started": False}

    def consume() -> Iterator[bytes]:
        state["started"] = True
        thread.start()
        while True:
            item = pipe.get()
            if item is _EOF:
                return
            if isinstance(item, Exception):
                raise item
            yield item  # type: ignore[misc]

    def cancel() -> None:
        cancelled.set()
        if state["started"]:
            thread.join()
        if release is not None:
            release()

    return ArtifactStream(consume(), description=description, on_close=cancel)


def _run_producer(produce: Callable[[_PipeWriter], None], writer: _PipeWriter) -> None:
    try:
        produce(writer)
    except _PipeCancelled:
        return
    except Exception as exc:  # handed over to the consumer thread
        try:
            writer.put(exc)
        except _PipeCancelled:
            LOGGER.debug("Producer failed after the consumer went away: %s", exc)
        return
    try:
        writer.put(_EOF)
    except _PipeCancelled:
        return


def pack_directory(path: PathLike) -> ArtifactStream:
    """Tar up the tree under *path* with paths relative to it, keeping file modes."""
    root = Path(path)
    if not root.is_dir():
        raise ArtifactIOError("pack directory", f"{root} is not a directory")
    if not os.access(root, os.R_OK | os.X_OK):
        raise ArtifactIOError("pack directory", f"{root} is not readable")

    def produce(out: _PipeWriter) -> None:
        with tarfile.open(fileobj=out, mode="w|", format=tarfile.PAX_FORMAT) as tar:
            for entry in _walk(root):
                arcname = entry.relative_to(root).as_posix()
                try:
                    tar.add(str(entry), arcname=arcname, recursive=False)
                except OSError as exc:
                    raise ArtifactIOError("pack directory", f"{entry}: {exc}") from exc

    return _piped_stream(produce, description=f"directory {root}")


def _walk(root: Path) -> Iterator[Path]:
    def _raise(exc: OSError) -> None:
        raise ArtifactIOError("pack directory", f"{exc.filename}: {exc.strerror}") from exc

    for current, dirs, files in os.walk(root, onerror=_raise):
        dirs.sort()
        base = Path(current)
        for name in dirs:
            yield base / name
        for name in sorted(files):
            yield base / name


def zip_entry_mode(info: zipfile.ZipInfo) -> int:
    """Permission bits for a zip entry, following how the archive was created."""
    if info.create_system in _UNIX_CREATORS:
        mode = (info.external_attr >> 16) & 0o7777
        if mode:
            return mode
    elif info.create_system in _MSDOS_CREATORS:
        if info.is_dir():
            return 0o777
        return 0o444 if info.external_attr & _MSDOS_READONLY else 0o666
    return DIR_MODE if info.is_dir() else FILE_MODE


def _tarinfo_for(info: zipfile.ZipInfo, prefix: str) -> tarfile.TarInfo:
    member = tarfile.TarInfo(name=prefix + info.filename)
    member.mode = zip_entry_mode(info)
    member.mtime = int(time.mktime(info.date_time + (0, 0, -1)))
    if info.is_dir():
        member.type = tarfile.DIRTYPE
        member.size = 0
    else:
        member.size = info.file_size
    return member


def repack_archive(path: PathLike, prefix: str) -> ArtifactStream:
    """
    Re-emit every entry of the zip at *path* as a tar entry named
    ``prefix + name``.

    Sizes are the uncompressed sizes and modes come from the zip's external
    attributes. The prefix keeps buildpacks copied into one shared directory
    from colliding.
    """
    source = Path(path)
    try:
        archive = zipfile.ZipFile(source)
    except zipfile.BadZipFile as exc:
        raise FormatError("repack archive", f"{source}: {exc}") from exc
    except OSError as exc:
        raise ArtifactIOError("repack archive", f"{source}: {exc}") from exc

    def produce(out: _PipeWriter) -> None:
        with tarfile.open(fileobj=out, mode="w|", format=tarfile.PAX_FORMAT) as tar:
            for info in archive.infolist():
                member = _tarinfo_for(info, prefix)
                if member.isdir():
                    tar.addfile(member)
                    continue
                try:
                    with archive.open(info) as handle:
                        tar.addfile(member, handle)
                except (zipfile.BadZipFile, EOFError, zlib.error) as exc:
                    raise FormatError("repack archive", f"{source}!{info.filename}: {exc}") from exc
                except OSError as exc:
                    raise ArtifactIOError("repack archive", f"{source}!{info.filename}: {exc}") from exc

    return _piped_stream(produce, description=f"zip {source}", release=archive.close)


def make_dir_entry(path: str) -> ArtifactStream:
    """Single-entry tar holding an empty directory at *path* with mode 0755."""
    member = tarfile.TarInfo(name=path.lstrip("/"))
    member.type = tarfile.DIRTYPE
    member.mode = DIR_MODE
    member.mtime = int(time.time())
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.addfile(member)
    return ArtifactStream.from_bytes(buffer.getvalue(), description=f"directory entry {path}")


def first_member(stream: ArtifactStream, operation: str = "read archive") -> ArtifactStream:
    """
    Return the contents of the first regular file in the tar *stream*.

    Copy-out of a single path yields a tar holding just that path, so this is
    how a file pulled out of a container is unwrapped. The source stream is
    closed when the returned stream is closed or exhausted.
    """
    try:
        tar = tarfile.open(fileobj=stream, mode="r|")
        member = next(iter(tar), None)
    except tarfile.TarError as exc:
        stream.close()
        raise FormatError(operation, f"{stream.description}: {exc}") from exc
    except Exception:
        stream.close()
        raise

    if member is None or not member.isfile():
        tar.close()
        stream.close()
        found = "nothing" if member is None else f"non-file entry {member.name!r}"
        raise NotFoundError(operation, f"expected a file in {stream.description}, found {found}")

    handle = tar.extractfile(member)

    def release() -> None:
        tar.close()
        stream.close()

    def chunks() -> Iterator[bytes]:
        try:
            while True:
                block = handle.read(CHUNK_SIZE)
                if not block:
                    return
                yield block
        except tarfile.TarError as exc:
            raise FormatError(operation, f"{member.name}: {exc}") from exc

    return ArtifactStream(chunks(), description=member.name, on_close=release)


def read_first_member(stream: ArtifactStream, operation: str = "read archive") -> bytes:
    """Buffer the whole of :func:`first_member`; meant for small metadata files."""
    with first_member(stream, operation=operation) as content:
        return content.read()


def write_stream(stream: ArtifactStream, destination: PathLike) -> int:
    """Drain *stream* into *destination*, returning the number of bytes written."""
    written = 0
    try:
        with open(destination, "wb") as handle:
            for chunk in stream:
                handle.write(chunk)
                written += len(chunk)
    except OSError as exc:
        raise ArtifactIOError("write artifact", f"{destination}: {exc}") from exc
    finally:
        stream.close()
    return written
