"""Map a local directory tree onto object keys.

Files are selected with shell-style globs, matched against both the
path relative to the directory (with ``/`` separators) and the bare
file name.
"""

import fnmatch
import os
from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class DirectoryEntry:
    """One local file and the key it uploads to."""

    path: str
    key: str
    size: int


def normalize_prefix(prefix: Optional[str]) -> str:
    """Turn ``/a\\b/`` style input into ``a/b/``, or '' for no prefix."""
    if not prefix:
        return ""
    parts = [p for p in prefix.replace("\\", "/").split("/") if p]
    return "/".join(parts) + "/" if parts else ""


def matches_any(relative_path: str, patterns: Iterable[str]) -> bool:
    name = relative_path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatchcase(relative_path, pattern) or fnmatch.fnmatchcase(name, pattern)
        for pattern in patterns
    )


def plan_directory_upload(
    directory: str,
    prefix: Optional[str] = None,
    recursive: bool = True,
    flatten: bool = False,
    max_depth: Optional[int] = None,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> list[DirectoryEntry]:
    """List the files to upload from ``directory`` and their keys.

    Args:
        directory: Root of the tree to upload.
        prefix: Key prefix the tree is placed under.
        recursive: Descend into subdirectories.
        flatten: Key each file by its name alone instead of its
                 relative path.
        max_depth: Deepest subdirectory level to include, 0 being the
                   top directory. None means no limit.
        include: Keep only files matching one of these globs.
        exclude: Drop files matching any of these globs.

    Returns:
        Entries sorted by key.

    Raises:
        NotADirectoryError: If ``directory`` is not a directory.
        ValueError: If two files map to the same key.
    """
    if not os.path.isdir(directory):
        raise NotADirectoryError(f"Not a directory: {directory}")
    if max_depth is not None and max_depth < 0:
        raise ValueError("max_depth must not be negative")

    include = list(include)
    exclude = list(exclude)
    key_prefix = normalize_prefix(prefix)
    if not recursive:
        max_depth = 0

    entries: dict[str, DirectoryEntry] = {}
    for root, dirs, files in os.walk(directory):
        relative_root = os.path.relpath(root, directory)
        depth = 0 if relative_root == "." else relative_root.count(os.sep) + 1
        if max_depth is not None and depth >= max_depth:
            dirs[:] = []
        dirs.sort()

        for name in sorted(files):
            path = os.path.join(root, name)
            if not os.path.isfile(path):
                continue
            relative = name if depth == 0 else f"{relative_root.replace(os.sep, '/')}/{name}"
            if include and not matches_any(relative, include):
                continue
            if exclude and matches_any(relative, exclude):
                continue

            key = key_prefix + (name if flatten else relative)
            if key in entries:
                raise ValueError(
                    f"{path} and {entries[key].path} would both upload to {key}"
                )
            entries[key] = DirectoryEntry(path=path, key=key, size=os.path.getsize(path))

    return [entries[key] for key in sorted(entries)]
