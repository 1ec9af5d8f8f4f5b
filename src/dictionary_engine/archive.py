"""Archive reader: ZIP and tar containers with lazily materialized members."""

from __future__ import annotations

import io
import logging
import tarfile
import zipfile
import zlib
from collections.abc import Iterator
from typing import Callable

from dictionary_engine.exceptions import ArchiveReadError

logger = logging.getLogger(__name__)

_NESTED_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2")


class LazyBytes:
    """A member payload that is only read when :meth:`read` is called."""

    __slots__ = ("name", "size", "_loader")

    def __init__(self, name: str, size: int, loader: Callable[[], bytes]) -> None:
        self.name = name
        self.size = size
        self._loader = loader

    def read(self) -> bytes:
        try:
            return self._loader()
        except (
            zipfile.BadZipFile,
            tarfile.TarError,
            zlib.error,
            NotImplementedError,
            OSError,
            EOFError,
        ) as e:
            raise ArchiveReadError(f"Failed to read member {self.name!r}: {e}") from e

    def __repr__(self) -> str:
        return f"LazyBytes({self.name!r}, size={self.size})"


class Archive:
    """Uniform view over a ZIP or tar container."""

    def __init__(self, members: dict[str, LazyBytes], kind: str) -> None:
        self._members = members
        self.kind = kind

    def names(self) -> list[str]:
        return list(self._members)

    def entries(self) -> Iterator[tuple[str, LazyBytes]]:
        yield from self._members.items()

    def __contains__(self, name: str) -> bool:
        return name in self._members

    def __len__(self) -> int:
        return len(self._members)

    def get(self, name: str) -> LazyBytes | None:
        return self._members.get(name)

    def read(self, name: str) -> bytes:
        member = self._members.get(name)
        if member is None:
            raise ArchiveReadError(f"No member named {name!r} in archive")
        return member.read()

    def open_nested(self, name: str) -> Archive:
        """Open a member that is itself an archive (e.g. ``*.res.zip``)."""
        return open_archive(self.read(name), unwrap=False)


def open_archive(data: bytes, *, unwrap: bool = True) -> Archive:
    """Open ``data`` as a ZIP or tar archive.

    With ``unwrap`` set, an archive whose only member is itself an archive
    is opened transparently and the inner archive is returned.
    """
    if not data:
        raise ArchiveReadError("Archive is empty")

    if zipfile.is_zipfile(io.BytesIO(data)):
        archive = _open_zip(data)
    else:
        archive = _open_tar(data)

    if unwrap and len(archive) == 1:
        (name,) = archive.names()
        if name.lower().endswith(_NESTED_SUFFIXES):
            logger.debug(f"Descending into nested archive {name!r}")
            return open_archive(archive.read(name), unwrap=True)
    return archive


def _open_zip(data: bytes) -> Archive:
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveReadError(f"Not a readable ZIP archive: {e}") from e

    members: dict[str, LazyBytes] = {}
    for info in zf.infolist():
        if info.is_dir():
            continue
        members[info.filename] = LazyBytes(
            info.filename,
            info.file_size,
            lambda n=info.filename: zf.read(n),
        )
    return Archive(members, "zip")


def _open_tar(data: bytes) -> Archive:
    try:
        tf = tarfile.open(fileobj=io.BytesIO(data), mode="r:*")
    except (tarfile.TarError, OSError, EOFError) as e:
        raise ArchiveReadError(f"Not a readable archive: {e}") from e

    members: dict[str, LazyBytes] = {}
    for info in tf.getmembers():
        if not info.isfile():
            continue
        members[info.name] = LazyBytes(
            info.name,
            info.size,
            lambda i=info: _read_tar_member(tf, i),
        )
    return Archive(members, "tar")


def _read_tar_member(tf: tarfile.TarFile, info: tarfile.TarInfo) -> bytes:
    fh = tf.extractfile(info)
    if fh is None:
        raise ArchiveReadError(f"Member {info.name!r} is not a regular file")
    with fh:
        return fh.read()


def basename(name: str) -> str:
    """Member name without any directory prefix."""
    return name.rsplit("/", 1)[-1]
