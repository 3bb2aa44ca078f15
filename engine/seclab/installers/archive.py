"""Archive extraction that refuses to write outside the target directory."""

from __future__ import annotations

import tarfile
import zipfile
from pathlib import Path, PurePosixPath

from ..common import log_quiet
from ..errors import InstallError, UnsafeArchiveError

TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar")


def is_archive(path: Path) -> bool:
    name = path.name.lower()
    return name.endswith(".zip") or name.endswith(TAR_SUFFIXES)


def _safe_target(dest: Path, member: str) -> Path:
    """Resolve *member* under *dest*, raising if it would land elsewhere."""
    posix = PurePosixPath(member.replace("\\", "/"))
    if posix.is_absolute() or (posix.parts and posix.parts[0].endswith(":")):
        raise UnsafeArchiveError(f"Absolute path in archive: {member}")
    target = (dest / Path(*posix.parts)).resolve() if posix.parts else dest.resolve()
    root = dest.resolve()
    if target != root and root not in target.parents:
        raise UnsafeArchiveError(f"Archive member escapes target directory: {member}")
    return target


def extract_zip(archive: Path, dest: Path) -> list[str]:
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive) as zf:
        names = zf.namelist()
        for name in names:
            _safe_target(dest, name)
        zf.extractall(dest)
    return names


def extract_tar(archive: Path, dest: Path) -> list[str]:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive) as tf:
        members = tf.getmembers()
        for m in members:
            target = _safe_target(dest, m.name)
            if m.issym() or m.islnk():
                link = m.linkname if m.islnk() else str(PurePosixPath(m.name).parent / m.linkname)
                _safe_target(dest, link)
            elif m.isdev() or m.isfifo():
                raise UnsafeArchiveError(f"Device or FIFO member in archive: {m.name}")
            log_quiet(f"extract {m.name} -> {target}")
        if hasattr(tarfile, "data_filter"):
            tf.extractall(dest, members=members, filter="data")
        else:
            tf.extractall(dest, members=members)
    return [m.name for m in members]


def extract_archive(archive: Path, dest: Path) -> Path:
    """Extract a zip or tarball into *dest* and return the content root.

    GitHub archives wrap everything in one ``owner-repo-sha/`` directory; when
    the extraction yields exactly one top-level directory, that directory is
    returned instead of *dest*.
    """
    name = archive.name.lower()
    if name.endswith(".zip"):
        extract_zip(archive, dest)
    elif name.endswith(TAR_SUFFIXES):
        extract_tar(archive, dest)
    else:
        raise InstallError(f"Unsupported archive type: {archive.name}")
    return content_root(dest)


def content_root(dest: Path) -> Path:
    entries = [p for p in dest.iterdir() if not p.name.startswith("__MACOSX")]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest
