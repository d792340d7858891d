"""Filesystem capability used by the data directory.

Every component that touches the data directory goes through a
:class:`Filesystem` rather than calling :mod:`os` directly. Production code
uses :class:`LocalFilesystem`; tests can swap in :class:`MemoryFilesystem` to
exercise the registry deterministically without a real disk.

Error semantics mirror the operating system: missing paths raise
:class:`FileNotFoundError`, exclusive creation of an existing entry raises
:class:`FileExistsError`, and so on.
"""
from __future__ import annotations

import io
import os
import posixpath
import secrets
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Protocol

StrPath = str | os.PathLike[str]


@dataclass(frozen=True, slots=True)
class FileInfo:
    """Subset of ``stat`` information the registry relies upon."""

    name: str
    is_dir: bool
    size: int = 0


class Filesystem(Protocol):
    """Narrow filesystem interface injected into the data directory."""

    def stat(self, path: StrPath) -> FileInfo:
        """Return information for *path* or raise ``FileNotFoundError``."""
        ...

    def exists(self, path: StrPath) -> bool:
        """Return ``True`` when *path* exists."""
        ...

    def mkdir(self, path: StrPath, *, mode: int = 0o755) -> None:
        """Create a single directory, failing when it already exists."""
        ...

    def makedirs(self, path: StrPath, *, mode: int = 0o755) -> None:
        """Create *path* and any missing parents (no error if present)."""
        ...

    def open(self, path: StrPath) -> BinaryIO:
        """Open *path* for binary reading."""
        ...

    def create(self, path: StrPath, *, exclusive: bool = False) -> BinaryIO:
        """Open *path* for binary writing, truncating or creating it."""
        ...

    def rename(self, source: StrPath, destination: StrPath) -> None:
        """Atomically replace *destination* with *source*."""
        ...

    def remove(self, path: StrPath) -> None:
        """Remove a single file."""
        ...

    def rmtree(self, path: StrPath) -> None:
        """Remove *path* recursively; missing paths are ignored."""
        ...

    def read_dir(self, path: StrPath) -> list[FileInfo]:
        """Return the entries of directory *path* sorted by name."""
        ...


class LocalFilesystem:
    """:class:`Filesystem` backed by the host operating system."""

    def stat(self, path: StrPath) -> FileInfo:
        """Return information for *path*."""
        target = Path(path)
        result = target.stat()
        return FileInfo(name=target.name, is_dir=target.is_dir(), size=result.st_size)

    def exists(self, path: StrPath) -> bool:
        """Return ``True`` when *path* exists."""
        return Path(path).exists()

    def mkdir(self, path: StrPath, *, mode: int = 0o755) -> None:
        """Create a single directory, failing when it already exists."""
        Path(path).mkdir(mode=mode)

    def makedirs(self, path: StrPath, *, mode: int = 0o755) -> None:
        """Create *path* and any missing parents."""
        Path(path).mkdir(mode=mode, parents=True, exist_ok=True)

    def open(self, path: StrPath) -> BinaryIO:
        """Open *path* for binary reading."""
        return Path(path).open("rb")

    def create(self, path: StrPath, *, exclusive: bool = False) -> BinaryIO:
        """Open *path* for binary writing."""
        return Path(path).open("xb" if exclusive else "wb")

    def rename(self, source: StrPath, destination: StrPath) -> None:
        """Atomically replace *destination* with *source*."""
        os.replace(source, destination)

    def remove(self, path: StrPath) -> None:
        """Remove a single file."""
        Path(path).unlink()

    def rmtree(self, path: StrPath) -> None:
        """Remove *path* recursively; missing paths are ignored."""
        target = Path(path)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
            return
        target.unlink(missing_ok=True)

    def read_dir(self, path: StrPath) -> list[FileInfo]:
        """Return the entries of directory *path* sorted by name."""
        entries: list[FileInfo] = []
        with os.scandir(path) as iterator:
            for entry in iterator:
                is_dir = entry.is_dir(follow_symlinks=False)
                size = 0 if is_dir else entry.stat(follow_symlinks=False).st_size
                entries.append(FileInfo(name=entry.name, is_dir=is_dir, size=size))
        entries.sort(key=lambda info: info.name)
        return entries


class _MemoryWriter(io.BytesIO):
    """Write handle that publishes its buffer to the owning filesystem on close."""

    def __init__(self, owner: MemoryFilesystem, key: PurePosixPath) -> None:
        super().__init__()
        self._owner = owner
        self._key = key

    def close(self) -> None:
        if not self.closed:
            self._owner._commit(self._key, self.getvalue())
        super().close()


class MemoryFilesystem:
    """In-memory :class:`Filesystem` used by the test-suite.

    Directories and files live in two maps keyed by normalised POSIX paths.
    The root directory always exists. A file created for writing becomes
    visible immediately (empty) and receives its content when the handle is
    closed.
    """

    def __init__(self) -> None:
        """Initialise an empty tree containing only ``/``."""
        self._dirs: set[PurePosixPath] = {PurePosixPath("/")}
        self._files: dict[PurePosixPath, bytes] = {}
        self._mutex = threading.RLock()

    # ------------------------------------------------------------------
    def stat(self, path: StrPath) -> FileInfo:
        """Return information for *path*."""
        key = _key(path)
        with self._mutex:
            if key in self._dirs:
                return FileInfo(name=key.name, is_dir=True)
            if key in self._files:
                return FileInfo(name=key.name, is_dir=False, size=len(self._files[key]))
        raise FileNotFoundError(2, "No such file or directory", str(path))

    def exists(self, path: StrPath) -> bool:
        """Return ``True`` when *path* exists."""
        key = _key(path)
        with self._mutex:
            return key in self._dirs or key in self._files

    def mkdir(self, path: StrPath, *, mode: int = 0o755) -> None:  # noqa: ARG002
        """Create a single directory, failing when it already exists."""
        key = _key(path)
        with self._mutex:
            if key in self._dirs or key in self._files:
                raise FileExistsError(17, "File exists", str(path))
            self._require_parent(key, path)
            self._dirs.add(key)

    def makedirs(self, path: StrPath, *, mode: int = 0o755) -> None:  # noqa: ARG002
        """Create *path* and any missing parents."""
        key = _key(path)
        with self._mutex:
            for candidate in [*reversed(key.parents), key]:
                if candidate in self._files:
                    raise NotADirectoryError(20, "Not a directory", str(candidate))
                self._dirs.add(candidate)

    def open(self, path: StrPath) -> BinaryIO:
        """Open *path* for binary reading."""
        key = _key(path)
        with self._mutex:
            if key in self._dirs:
                raise IsADirectoryError(21, "Is a directory", str(path))
            if key not in self._files:
                raise FileNotFoundError(2, "No such file or directory", str(path))
            return io.BytesIO(self._files[key])

    def create(self, path: StrPath, *, exclusive: bool = False) -> BinaryIO:
        """Open *path* for binary writing."""
        key = _key(path)
        with self._mutex:
            if key in self._dirs:
                raise IsADirectoryError(21, "Is a directory", str(path))
            if exclusive and key in self._files:
                raise FileExistsError(17, "File exists", str(path))
            self._require_parent(key, path)
            self._files[key] = b""
        return _MemoryWriter(self, key)

    def rename(self, source: StrPath, destination: StrPath) -> None:
        """Atomically replace *destination* with *source*."""
        src = _key(source)
        dst = _key(destination)
        with self._mutex:
            if src not in self._files:
                raise FileNotFoundError(2, "No such file or directory", str(source))
            if dst in self._dirs:
                raise IsADirectoryError(21, "Is a directory", str(destination))
            self._require_parent(dst, destination)
            self._files[dst] = self._files.pop(src)

    def remove(self, path: StrPath) -> None:
        """Remove a single file."""
        key = _key(path)
        with self._mutex:
            if key in self._dirs:
                raise IsADirectoryError(21, "Is a directory", str(path))
            if key not in self._files:
                raise FileNotFoundError(2, "No such file or directory", str(path))
            del self._files[key]

    def rmtree(self, path: StrPath) -> None:
        """Remove *path* recursively; missing paths are ignored."""
        key = _key(path)
        with self._mutex:
            self._files = {
                name: data
                for name, data in self._files.items()
                if name != key and key not in name.parents
            }
            if key == PurePosixPath("/"):
                self._dirs = {key}
                return
            self._dirs = {
                name for name in self._dirs if name != key and key not in name.parents
            }

    def read_dir(self, path: StrPath) -> list[FileInfo]:
        """Return the entries of directory *path* sorted by name."""
        key = _key(path)
        with self._mutex:
            if key in self._files:
                raise NotADirectoryError(20, "Not a directory", str(path))
            if key not in self._dirs:
                raise FileNotFoundError(2, "No such file or directory", str(path))
            entries = [
                FileInfo(name=name.name, is_dir=True)
                for name in self._dirs
                if name.parent == key and name != key
            ]
            entries.extend(
                FileInfo(name=name.name, is_dir=False, size=len(data))
                for name, data in self._files.items()
                if name.parent == key
            )
        entries.sort(key=lambda info: info.name)
        return entries

    # Internal helpers -------------------------------------------------
    def _require_parent(self, key: PurePosixPath, original: StrPath) -> None:
        if key.parent not in self._dirs:
            raise FileNotFoundError(2, "No such file or directory", str(original))

    def _commit(self, key: PurePosixPath, data: bytes) -> None:
        with self._mutex:
            self._files[key] = data


def _key(path: StrPath) -> PurePosixPath:
    text = posixpath.normpath("/" + os.fspath(path).lstrip("/"))
    return PurePosixPath(text)


def read_file(fs: Filesystem, path: StrPath) -> bytes:
    """Return the full content of *path*."""
    with fs.open(path) as handle:
        return handle.read()


def write_file(
    fs: Filesystem,
    path: StrPath,
    data: bytes,
    *,
    exclusive: bool = False,
    atomic: bool = False,
) -> None:
    """Write *data* to *path*.

    With ``atomic=True`` the content is written to a sibling temporary file
    first and renamed over *path*, so readers never observe a partial file.
    """
    if not atomic:
        with fs.create(path, exclusive=exclusive) as handle:
            handle.write(data)
        return

    target = Path(path)
    tmp_path = target.with_name(f".{target.name}.{secrets.token_hex(4)}.tmp")
    try:
        with fs.create(tmp_path, exclusive=True) as handle:
            handle.write(data)
        fs.rename(tmp_path, target)
    finally:
        if fs.exists(tmp_path):
            fs.remove(tmp_path)


__all__ = [
    "FileInfo",
    "Filesystem",
    "LocalFilesystem",
    "MemoryFilesystem",
    "read_file",
    "write_file",
]
