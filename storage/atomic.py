"""
Atomic file writing with fsync so readers never see a half-written PEM.

Pattern:
  1. Stage every file as a temp file in the target's own directory
  2. fsync each temp file
  3. os.replace() each one into place (atomic on POSIX filesystems)

Staging all files before replacing any of them means a failure while writing
leaves every existing artifact untouched.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Iterable, NamedTuple, Optional


class StagedFile(NamedTuple):
    target: Path
    temp: Path


def stage_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> StagedFile:
    """Write *content* to a fsynced temp file next to *path* and return it unpublished."""
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target so the final rename stays on one filesystem
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        if mode is not None:
            os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        _discard(Path(temp_path))
        raise
    return StagedFile(path, Path(temp_path))


def publish(staged: Iterable[StagedFile]) -> None:
    """Rename staged files into place in the given order."""
    for item in staged:
        os.replace(item.temp, item.target)
    _fsync_dirs({item.target.parent for item in staged})


def discard(staged: Iterable[StagedFile]) -> None:
    for item in staged:
        _discard(item.temp)


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """Atomically replace *path* with *content*."""
    staged = stage_bytes(path, content, mode)
    try:
        publish([staged])
    except BaseException:
        _discard(staged.temp)
        raise


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8", mode: Optional[int] = None) -> None:
    atomic_write_bytes(path, content.encode(encoding), mode)


def atomic_write_many(files: list[tuple[Path, bytes, Optional[int]]]) -> None:
    """
    Stage all *files* first, then publish them in list order.

    If any staging step fails, every temp file written so far is removed and
    no target is replaced.
    """
    staged: list[StagedFile] = []
    try:
        for path, content, mode in files:
            staged.append(stage_bytes(path, content, mode))
    except BaseException:
        discard(staged)
        raise
    try:
        publish(staged)
    except BaseException:
        discard(s for s in staged if s.temp.exists())
        raise


# ─── Internal ──────────────────────────────────────────────────────────────────


def _discard(temp: Path) -> None:
    try:
        os.unlink(temp)
    except OSError:
        pass


def _fsync_dirs(dirs: set[Path]) -> None:
    # Persist the rename itself; not every platform allows opening a directory.
    for d in dirs:
        try:
            fd = os.open(str(d), os.O_RDONLY)
        except OSError:
            continue
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)
