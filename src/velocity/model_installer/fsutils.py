"""Filesystem helpers shared by the installer stages.

File placement follows a fixed three-tier policy when the target exists:

1. atomic replace (``os.replace``)
2. remove the target, then move
3. move under a uniquely suffixed name next to the target

so a single colliding file never aborts a multi-file install.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

METADATA_NAMES = frozenset({"__MACOSX"})


def is_metadata_name(name: str) -> bool:
    """Platform metadata entries (``__MACOSX``, dotfiles) are never payload."""
    return name.startswith(".") or name in METADATA_NAMES


def visible_children(directory: Path) -> Iterator[Path]:
    """Sorted children of ``directory`` skipping metadata entries."""
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError:
        return
    for entry in entries:
        if not is_metadata_name(entry.name):
            yield entry


def is_safe_relative_path(name: str) -> bool:
    """Reject absolute paths, drive letters and parent traversal."""
    normalized = name.replace("\\", "/")
    path = PurePosixPath(normalized)
    if path.is_absolute() or normalized.startswith("/"):
        return False
    if path.parts and path.parts[0].endswith(":"):
        return False
    return ".." not in path.parts


def is_within(path: Path, root: Path) -> bool:
    """True when ``path`` resolves to ``root`` or somewhere below it."""
    return path.resolve().is_relative_to(root.resolve())


def unique_sibling(target: Path) -> Path:
    """``name.dup_<hex>.ext`` next to ``target``."""
    token = uuid.uuid4().hex
    if target.suffix:
        return target.with_name(f"{target.stem}.dup_{token}{target.suffix}")
    return target.with_name(f"{target.name}.dup_{token}")


def place_file(source: Path, target: Path) -> Path:
    """Move ``source`` to ``target`` applying the collision policy.

    Returns the path the file actually landed at.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    if not target.exists():
        try:
            shutil.move(str(source), str(target))
        except OSError:
            shutil.copy2(source, target)
            remove_quietly(source)
        return target

    try:
        os.replace(source, target)
        return target
    except OSError as exc:
        logger.warning("Atomic replace of %s failed (%s); retrying", target, exc)

    try:
        remove_path(target)
        shutil.move(str(source), str(target))
        return target
    except OSError as exc:
        logger.warning("Remove-then-move of %s failed (%s)", target, exc)

    fallback = unique_sibling(target)
    shutil.move(str(source), str(fallback))
    logger.warning("Stored colliding file as %s", fallback.name)
    return fallback


def claim_file(source: Path, target: Path) -> Path:
    """Duplicate ``source`` into a caller owned ``target`` (copy, then move).

    The source is gone afterwards either way.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.copyfile(source, target)
    except OSError as exc:
        logger.debug("Copy of %s failed (%s); moving instead", source, exc)
        shutil.move(str(source), str(target))
        return target
    remove_quietly(source)
    return target


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree; errors propagate."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def remove_quietly(path: Path | None) -> None:
    """Best-effort cleanup used on exit paths."""
    if path is None:
        return
    try:
        if path.exists() or path.is_symlink():
            remove_path(path)
    except OSError as exc:
        logger.debug("Could not remove %s: %s", path, exc)


def copy_item(source: Path, target: Path) -> None:
    """Copy a file or directory tree to ``target``, replacing what is there."""
    if target.exists() or target.is_symlink():
        remove_path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, target, symlinks=True)
    else:
        shutil.copy2(source, target)


def copy_children(source: Path, destination: Path) -> int:
    """Copy every visible child of ``source`` into ``destination`` (overwriting).

    Individual failures are logged and skipped; returns the number copied.
    """
    destination.mkdir(parents=True, exist_ok=True)
    copied = 0
    for child in visible_children(source):
        try:
            copy_item(child, destination / child.name)
            copied += 1
        except OSError as exc:
            logger.warning("Skipping %s during copy: %s", child, exc)
    return copied


def directory_size(root: Path) -> int:
    """Sum of regular file sizes below ``root``."""
    total = 0
    for path in _walk_files(root):
        try:
            total += path.stat().st_size
        except OSError:
            continue
    return total


def _walk_files(root: Path) -> Iterable[Path]:
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            path = Path(dirpath) / name
            if path.is_file() and not path.is_symlink():
                yield path
