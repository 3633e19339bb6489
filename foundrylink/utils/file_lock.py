"""Locked, atomic JSON file helpers."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Generator, Iterator, TextIO

from foundrylink.utils.platform import HAS_FCNTL


@contextlib.contextmanager
def file_lock(file_handle: TextIO, exclusive: bool = True) -> Generator[None, None, None]:
    """Acquire a file lock, with fallback for systems without fcntl."""
    if not HAS_FCNTL:
        yield
        return

    import fcntl

    lock_type = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    try:
        fcntl.flock(file_handle.fileno(), lock_type)
        yield
    finally:
        with contextlib.suppress(OSError):
            fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextlib.contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Exclusive lock on a sibling `.lock` file to coordinate cross-process writers."""
    lock_file = lock_path_for(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with lock_file.open("a+", encoding="utf-8") as handle:
        with file_lock(handle, exclusive=True):
            yield


def serialize_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_text_atomic(path: Path, content: str, *, temp_prefix: str = ".foundrylink_") -> None:
    """Write to a temporary file in the same directory, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=temp_prefix, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            os.chmod(temp_path, os.stat(path).st_mode)
        os.replace(temp_path, path)
    finally:
        try:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
        except OSError:
            pass
