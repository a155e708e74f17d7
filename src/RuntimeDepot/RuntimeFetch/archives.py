"""Safe extraction of zip and tar runtime archives.

Members are validated before anything touches the target: absolute paths,
``..`` components and symlinks pointing outside the extraction root are
rejected.  Extraction writes into a ``.partial`` sibling that is renamed over
the target only once every member was written, so a failed or cancelled
unpack never leaves a half-populated runtime directory behind.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import stat
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterator, List, Optional, Tuple

from .cancellation import CancellationToken
from .errors import UnpackError
from .fs import fsync_directory, remove_tree

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.archives")

PARTIAL_SUFFIX = ".partial"
_COPY_BUFFER = 1 << 16

__all__ = ["UnpackOptions", "unpack_archive", "PARTIAL_SUFFIX"]


@dataclass(frozen=True)
class UnpackOptions:
    """Rewrites applied while unpacking.

    Attributes:
        strip_leading_directory: Drop the single top-level directory shared by
            every member (``jdk-21.0.2+13/bin/java`` becomes ``bin/java``).
        strip_non_owner_writable: Clear group and other write permission bits.
    """

    strip_leading_directory: bool = False
    strip_non_owner_writable: bool = False


@dataclass(frozen=True)
class _Member:
    name: PurePosixPath
    kind: str  # "file", "dir", "symlink" or "hardlink"
    mode: Optional[int]
    link: Optional[str] = None


def _validate_member_path(member_name: str) -> PurePosixPath:
    """Validate archive member paths to prevent traversal attacks."""

    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute():
        raise UnpackError(f"unsafe absolute path in archive: {member_name}")
    parts = [part for part in relative.parts if part not in {"", "."}]
    if not parts:
        raise UnpackError(f"empty path in archive: {member_name}")
    if ".." in parts:
        raise UnpackError(f"unsafe path in archive: {member_name}")
    return PurePosixPath(*parts)


def _strip_leading(members: List[_Member]) -> List[_Member]:
    tops = {member.name.parts[0] for member in members}
    if len(tops) != 1:
        raise UnpackError("archive has no single leading directory to strip")
    (top,) = tops
    stripped: List[_Member] = []
    for member in members:
        if len(member.name.parts) == 1:
            if member.kind != "dir":
                raise UnpackError(f"leading entry {top!r} is not a directory")
            continue
        link = member.link
        if member.kind == "hardlink" and link is not None:
            link_path = _validate_member_path(link)
            if link_path.parts[0] == top and len(link_path.parts) > 1:
                link = str(PurePosixPath(*link_path.parts[1:]))
        stripped.append(
            _Member(PurePosixPath(*member.name.parts[1:]), member.kind, member.mode, link)
        )
    return stripped


def _check_symlink(member: _Member) -> None:
    assert member.link is not None
    if posixpath.isabs(member.link):
        raise UnpackError(f"symlink {member.name} points to an absolute path")
    resolved = posixpath.normpath(posixpath.join(str(member.name.parent), member.link))
    if resolved == ".." or resolved.startswith("../"):
        raise UnpackError(f"symlink {member.name} escapes the target directory")


def _effective_mode(mode: Optional[int], options: UnpackOptions) -> Optional[int]:
    if mode is None:
        return None
    mode = stat.S_IMODE(mode)
    if options.strip_non_owner_writable:
        mode &= ~(stat.S_IWGRP | stat.S_IWOTH)
    return mode


# --- format readers -------------------------------------------------------------


def _zip_members(archive: zipfile.ZipFile) -> List[_Member]:
    members: List[_Member] = []
    for info in archive.infolist():
        name = _validate_member_path(info.filename)
        unix_mode = (info.external_attr >> 16) & 0xFFFF
        if info.is_dir():
            kind, link = "dir", None
        elif unix_mode and stat.S_ISLNK(unix_mode):
            kind, link = "symlink", archive.read(info).decode("utf-8")
        else:
            kind, link = "file", None
        members.append(_Member(name, kind, unix_mode or None, link))
    return members


def _tar_members(archive: tarfile.TarFile) -> List[_Member]:
    members: List[_Member] = []
    for info in archive.getmembers():
        name = _validate_member_path(info.name)
        if info.isdir():
            members.append(_Member(name, "dir", info.mode))
        elif info.issym():
            members.append(_Member(name, "symlink", None, info.linkname))
        elif info.islnk():
            members.append(_Member(name, "hardlink", info.mode, info.linkname))
        elif info.isreg():
            members.append(_Member(name, "file", info.mode))
        else:
            LOGGER.debug(
                "skipping special archive member",
                extra={"stage": "unpack", "member": info.name},
            )
    return members


def _open_archive(archive: Path) -> Tuple[str, object]:
    if zipfile.is_zipfile(archive):
        return "zip", zipfile.ZipFile(archive)
    try:
        return "tar", tarfile.open(archive, "r:*")
    except tarfile.TarError as exc:
        raise UnpackError(f"{archive} is neither a zip nor a tar archive: {exc}") from exc


# --- extraction -----------------------------------------------------------------


def _copy_stream(source, target_path: Path, token: Optional[CancellationToken]) -> None:
    with target_path.open("wb") as target:
        for chunk in iter(lambda: source.read(_COPY_BUFFER), b""):
            if token is not None:
                token.raise_if_cancelled("unpack")
            target.write(chunk)


def _iter_sources(kind: str, handle, members: List[_Member], originals: List[str]) -> Iterator:
    for member, original in zip(members, originals):
        if member.kind != "file":
            yield member, None
            continue
        if kind == "zip":
            with handle.open(original, "r") as source:
                yield member, source
        else:
            source = handle.extractfile(original)
            if source is None:
                raise UnpackError(f"cannot read archive member {original}")
            with source:
                yield member, source


def _original_names(kind: str, handle) -> List[str]:
    if kind == "zip":
        return [info.filename for info in handle.infolist()]
    return [
        info.name
        for info in handle.getmembers()
        if info.isdir() or info.issym() or info.islnk() or info.isreg()
    ]


def _extract(
    archive: Path,
    root: Path,
    options: UnpackOptions,
    token: Optional[CancellationToken],
) -> int:
    kind, handle = _open_archive(archive)
    with handle:  # type: ignore[attr-defined]
        members = _zip_members(handle) if kind == "zip" else _tar_members(handle)  # type: ignore[arg-type]
        originals = _original_names(kind, handle)
        if options.strip_leading_directory:
            kept = {id(member) for member in members if len(member.name.parts) > 1}
            originals = [orig for member, orig in zip(members, originals) if id(member) in kept]
            members = _strip_leading(members)

        directory_modes: List[Tuple[Path, int]] = []
        count = 0
        for member, source in _iter_sources(kind, handle, members, originals):
            if token is not None:
                token.raise_if_cancelled("unpack")
            target = root.joinpath(*member.name.parts)
            mode = _effective_mode(member.mode, options)
            if member.kind == "dir":
                target.mkdir(parents=True, exist_ok=True)
                if mode is not None:
                    directory_modes.append((target, mode | stat.S_IRWXU))
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if member.kind == "symlink":
                _check_symlink(member)
                os.symlink(member.link, target)  # type: ignore[arg-type]
            elif member.kind == "hardlink":
                link_source = root.joinpath(*_validate_member_path(member.link or "").parts)
                if not link_source.is_file():
                    raise UnpackError(f"hard link {member.name} refers to a missing member")
                shutil.copy2(link_source, target)
            else:
                _copy_stream(source, target, token)
                if mode is not None:
                    os.chmod(target, mode)
            count += 1

        # Directories last so read-only ones do not block their own contents.
        for directory, mode in reversed(directory_modes):
            os.chmod(directory, mode)
    return count


def unpack_archive(
    archive: Path,
    target: Path,
    options: UnpackOptions = UnpackOptions(),
    *,
    token: Optional[CancellationToken] = None,
) -> Path:
    """Extract ``archive`` into ``target`` and return ``target``.

    Raises:
        UnpackError: If the target is a non-empty directory or a file, the
            archive is unreadable, or a member is unsafe.
        OperationCancelledError: If ``token`` is cancelled; nothing is left behind.
    """

    target = Path(target)
    if target.exists() and (not target.is_dir() or any(target.iterdir())):
        raise UnpackError(f"unpack target {target} exists and is not an empty directory")
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_name(target.name + PARTIAL_SUFFIX)
    remove_tree(partial)
    partial.mkdir()
    try:
        count = _extract(archive, partial, options, token)
    except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError) as exc:
        remove_tree(partial)
        raise UnpackError(f"cannot unpack {archive}: {exc}") from exc
    except BaseException:
        remove_tree(partial)
        raise
    if target.exists():
        target.rmdir()
    os.replace(partial, target)
    fsync_directory(target.parent)
    LOGGER.info(
        "archive unpacked",
        extra={"stage": "unpack", "archive": str(archive), "target": str(target), "members": count},
    )
    return target
