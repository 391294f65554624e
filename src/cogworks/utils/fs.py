"""
cogworks — filesystem utilities

File: src/cogworks/utils/fs.py

Purpose
- Atomic file replacement and advisory locking for the filesystem artifact store.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Exclusive locks serialize read-modify-write sequences across processes.

Non-functional requirements
- Standard library only; POSIX advisory locks via ``fcntl``.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "exclusive_lock",
    "read_text_if_exists",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    Readers observe either the previous content or the new content, never a
    partially written file.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data.encode(encoding) if isinstance(data, str) else data

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


@contextmanager
def exclusive_lock(lock_path: PathLike) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``lock_path`` for the duration of the block."""

    path = Path(lock_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def read_text_if_exists(path: PathLike, *, encoding: str = "utf-8") -> str | None:
    target = Path(path)
    try:
        return target.read_text(encoding=encoding)
    except FileNotFoundError:
        return None


def _fsync_directory(path: Path) -> None:
    try:
        dir_fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        with contextlib.suppress(OSError):
            os.fsync(dir_fd)
    finally:
        os.close(dir_fd)
