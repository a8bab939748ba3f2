"""
File helpers for plan directories.

The manifest is only ever replaced whole through ``safe_write`` so a crash
mid-write leaves either the previous manifest or the new one on disk.
"""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """A file could not be read or written."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """mkdir -p; returns the directory as a Path."""
    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"Cannot create directory {directory}: {e}")
    return directory


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace ``path`` with ``content`` atomically.

    Writes a hidden temp file next to the target, fsyncs it and renames it
    over the target. On failure the temp file is removed and the target is
    untouched.

    Raises:
        FileSystemError: The directory or the file could not be written.
    """
    target = Path(path)
    ensure_dir(target.parent)

    try:
        # Temp file must live on the target's filesystem for os.replace
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    except OSError as e:
        raise FileSystemError(f"Cannot write {target}: {e}")

    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as tmp:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, target)
    except BaseException as e:
        Path(tmp_name).unlink(missing_ok=True)
        if isinstance(e, OSError):
            raise FileSystemError(f"Cannot write {target}: {e}")
        raise


def file_exists(path: str | Path) -> bool:
    return Path(path).is_file()


def dir_exists(path: str | Path) -> bool:
    return Path(path).is_dir()


def read_bytes(path: str | Path) -> bytes:
    """
    Read a file as raw bytes, leaving decoding to the caller.

    Raises:
        FileSystemError: Missing, not a regular file or unreadable.
    """
    source = Path(path)
    if not source.exists():
        raise FileSystemError(f"File not found: {source}")
    if not source.is_file():
        raise FileSystemError(f"Not a file: {source}")

    try:
        return source.read_bytes()
    except OSError as e:
        raise FileSystemError(f"Cannot read {source}: {e}")


def to_kebab_case(title: str) -> str:
    """
    Folder name for a feature title.

    "Add OAuth: Login Flow!" -> "add-oauth-login-flow"
    """
    slug = re.sub(r"[^a-z0-9\s-]", "", title.lower())
    slug = re.sub(r"[\s-]+", "-", slug)
    return slug.strip("-")
