"""Utility modules for plan-guard."""

from plan_guard.utils.fs import (
    FileSystemError,
    dir_exists,
    ensure_dir,
    file_exists,
    read_bytes,
    safe_write,
    to_kebab_case,
)

__all__ = [
    "FileSystemError",
    "dir_exists",
    "ensure_dir",
    "file_exists",
    "read_bytes",
    "safe_write",
    "to_kebab_case",
]
