from __future__ import annotations

import io
import logging
import os
import stat
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, BinaryIO, Iterable, Iterator, Union

from .errors import InvalidPackageError

logger = logging.getLogger(__name__)

ArchiveSource = Union[str, os.PathLike, bytes, BinaryIO]

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    is_dir: bool
    size: int
    compressed_size: int
    external_attr: int
    date_time: tuple[int, int, int, int, int, int]

    @property
    def raw_mode(self) -> int:
        return (self.external_attr >> 16) & 0xFFFF

    @property
    def mode(self) -> int:
        """Permission bits from the upper 16 attribute bits, with defaults."""
        bits = self.raw_mode & 0o777
        if bits:
            return bits
        return DEFAULT_DIR_MODE if self.is_dir else DEFAULT_FILE_MODE

    @property
    def is_symlink(self) -> bool:
        return stat.S_ISLNK(self.raw_mode)


class SkillArchive:
    """Read-only view over a zip archive of a skill."""

    def __init__(self, zf: zipfile.ZipFile, *, source: str) -> None:
        self._zf = zf
        self.source = source
        self._infos = {info.filename: info for info in zf.infolist()}
        self.entries: tuple[ArchiveEntry, ...] = tuple(
            ArchiveEntry(
                path=info.filename,
                is_dir=info.is_dir(),
                size=info.file_size,
                compressed_size=info.compress_size,
                external_attr=info.external_attr,
                date_time=info.date_time,
            )
            for info in zf.infolist()
        )

    def __enter__(self) -> "SkillArchive":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._zf.close()

    def names(self) -> list[str]:
        return [e.path for e in self.entries]

    def get(self, path: str) -> ArchiveEntry | None:
        for e in self.entries:
            if e.path == path:
                return e
        return None

    def open(self, path: str) -> IO[bytes]:
        info = self._infos.get(path)
        if info is None:
            raise KeyError(path)
        return self._zf.open(info, "r")

    def read(self, path: str) -> bytes:
        info = self._infos.get(path)
        if info is None:
            raise KeyError(path)
        try:
            return self._zf.read(info)
        except (zipfile.BadZipFile, OSError, EOFError) as e:
            raise InvalidPackageError(f"Failed to read {path!r} from archive: {e}") from e

    def read_text(self, path: str) -> str | None:
        if path not in self._infos:
            return None
        return self.read(path).decode("utf-8", errors="replace")

    def root_directory(self) -> str | None:
        roots: set[str] = set()
        for e in self.entries:
            if not e.path:
                continue
            if "/" not in e.path:
                return None
            roots.add(e.path.split("/", 1)[0])
        if len(roots) != 1:
            return None
        root = roots.pop()
        return root or None

    def files(self) -> Iterator[ArchiveEntry]:
        return (e for e in self.entries if not e.is_dir)

    def total_uncompressed_size(self) -> int:
        return sum(e.size for e in self.files())

    def file_count(self) -> int:
        return sum(1 for _ in self.files())

    def verify_integrity(self) -> None:
        """Inflate every member and check its CRC."""
        try:
            bad = self._zf.testzip()
        except (zipfile.BadZipFile, NotImplementedError, RuntimeError, OSError, EOFError, ValueError) as e:
            raise InvalidPackageError(f"Invalid or corrupted package: {self.source}: {e}") from e
        if bad is not None:
            raise InvalidPackageError(f"Invalid or corrupted package: {self.source}: bad CRC for {bad!r}")


def open_archive(source: ArchiveSource, *, verify: bool = True) -> SkillArchive:
    """Open a zip for reading.

    With ``verify=False`` only the central directory is read; call
    ``SkillArchive.verify_integrity`` once the declared sizes have been
    checked against resource limits.
    """
    if isinstance(source, (bytes, bytearray)):
        fp: str | BinaryIO = io.BytesIO(bytes(source))
        label = "<bytes>"
    elif isinstance(source, (str, os.PathLike)):
        path = Path(source)
        if not path.is_file():
            raise InvalidPackageError(f"Package file not found: {path}")
        fp = str(path)
        label = str(path)
    else:
        fp = source
        label = getattr(source, "name", "<stream>")

    try:
        zf = zipfile.ZipFile(fp, "r")
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError, ValueError) as e:
        raise InvalidPackageError(f"Invalid or corrupted package: {label}: {e}") from e

    archive = SkillArchive(zf, source=label)
    if verify:
        try:
            archive.verify_integrity()
        except InvalidPackageError:
            archive.close()
            raise
    logger.debug("Opened archive %s with %d entries", label, len(archive.entries))
    return archive


def write_archive(dest: str | os.PathLike | BinaryIO, members: Iterable[tuple[Path, str]]) -> int:
    """Write ``(path, arcname)`` pairs into a new deflated zip.

    ``zipfile`` records ``st_mode`` in the external attributes, so permission
    bits survive. Returns the number of regular files written.
    """
    count = 0
    target = os.fspath(dest) if isinstance(dest, (str, os.PathLike)) else dest
    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, arcname in members:
            if path.is_dir():
                zf.write(path, arcname=arcname.rstrip("/") + "/")
                continue
            zf.write(path, arcname=arcname)
            count += 1
    return count
