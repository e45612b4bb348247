"""
Filesystem side of a transfer: building manifests from local paths and
mapping received manifest entries safely under the destination root.
"""

import logging
import os
from pathlib import Path, PurePosixPath, PureWindowsPath

from transfer.errors import UnsafePathError
from transfer.models import FileEntry, ManifestEntry

logger = logging.getLogger(__name__)


def entry_for_file(path: str | os.PathLike) -> FileEntry:
    path = Path(path)
    return FileEntry(
        name=path.name,
        size=path.stat().st_size,
        is_directory=False,
        path=str(path.resolve()),
    )


def scan_directory(root: str | os.PathLike, prefix: str = "") -> list[FileEntry]:
    """
    Recursively list a directory as manifest-ready entries.

    Relative paths are computed against ``root`` (optionally under
    ``prefix``). A directory always comes before anything inside it.
    """
    root = Path(root).resolve()
    entries: list[FileEntry] = []

    def walk(directory: Path) -> None:
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            relative = PurePosixPath(prefix, *child.relative_to(root).parts)
            if child.is_dir() and not child.is_symlink():
                entries.append(FileEntry(
                    name=child.name,
                    size=0,
                    is_directory=True,
                    path=str(child),
                    relative_path=str(relative),
                ))
                walk(child)
            elif child.is_file():
                entries.append(FileEntry(
                    name=child.name,
                    size=child.stat().st_size,
                    is_directory=False,
                    path=str(child),
                    relative_path=str(relative),
                ))
            else:
                logger.debug(f"Skipping special file {child}")

    walk(root)
    return entries


def entries_from_paths(paths) -> list[FileEntry]:
    """Expand a mixed selection of files and folders; folders keep their own name."""
    entries: list[FileEntry] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            entries.append(FileEntry(
                name=path.name,
                is_directory=True,
                path=str(path.resolve()),
                relative_path=path.name,
            ))
            entries.extend(scan_directory(path, prefix=path.name))
        elif path.is_file():
            entries.append(entry_for_file(path))
        else:
            logger.warning(f"Skipping invalid path: {path}")
    return entries


def sanitize_relative_path(entry: ManifestEntry) -> PurePosixPath:
    """
    Turn a manifest entry's path into a safe relative path.

    Raises ``UnsafePathError`` for absolute paths, drive letters and any
    parent-directory segment.
    """
    raw = (entry.relative_path or entry.name).replace("\\", "/")
    if "\x00" in raw:
        raise UnsafePathError(f"Path contains a NUL byte: {raw!r}")
    if raw.startswith("/") or PureWindowsPath(raw).drive:
        raise UnsafePathError(f"Absolute path not allowed: {raw!r}")

    parts = [p for p in raw.split("/") if p not in ("", ".")]
    if not parts:
        raise UnsafePathError(f"Empty path: {raw!r}")
    if ".." in parts:
        raise UnsafePathError(f"Parent directory traversal not allowed: {raw!r}")
    return PurePosixPath(*parts)


def resolve_destination(root: Path, entry: ManifestEntry) -> Path:
    """Absolute destination for ``entry``; never outside ``root``."""
    root = Path(root).resolve()
    destination = (root / sanitize_relative_path(entry)).resolve()
    if not destination.is_relative_to(root):
        # e.g. a symlink inside the destination pointing elsewhere
        raise UnsafePathError(f"Path escapes destination root: {entry.relative_path or entry.name!r}")
    return destination


def unique_path(path: Path) -> Path:
    """``path`` itself if free, else the first free ``name (n).ext`` beside it."""
    if not path.exists():
        return path
    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem} ({counter}){path.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1
