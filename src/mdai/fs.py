# mdai: Filesystem helpers: POSIX path normalization, the project-root traversal guard and atomic text writes.

import os
import pathlib
import shutil
from typing import Optional

from .errors import PathEscape


def normalize_path(p: str) -> str:
    """Normalize a filesystem path to POSIX-style string (forward slashes)."""
    return str(pathlib.PurePath(p.strip()).as_posix())


def safe_abs(root: pathlib.Path, rel: str) -> pathlib.Path:
    """
    Resolve a project-relative path and reject escapes outside root.

    Absolute inputs are accepted only when they land inside root. The root
    itself is not a valid target for a file operation.
    """
    root = root.resolve()
    abs_path = (root / rel).resolve()
    try:
        abs_path.relative_to(root)
    except ValueError:
        raise PathEscape(f"Path escapes project root: {rel}")
    if abs_path == root:
        raise PathEscape(f"Path resolves to the project root: {rel!r}")
    return abs_path


def rel_posix(root: pathlib.Path, abs_path: pathlib.Path) -> str:
    """Return abs_path relative to root as a POSIX string."""
    return abs_path.relative_to(root.resolve()).as_posix()


def read_text(path: pathlib.Path) -> str:
    """Read a UTF-8 text file."""
    with path.open("r", encoding="utf-8", newline="") as f:
        return f.read()


def write_text_atomic(path: pathlib.Path, content: str) -> None:
    """Atomically replace path with content (UTF-8) via a temp file in the same directory.

    An existing file keeps its permission bits.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with tmp.open("w", encoding="utf-8", newline="") as f:
            f.write(content)
        if path.exists():
            shutil.copymode(path, tmp)
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink()


def mtime_of(path: pathlib.Path) -> Optional[int]:
    """Return the file's modification time in nanoseconds, or None if it does not exist."""
    try:
        return path.stat().st_mtime_ns
    except FileNotFoundError:
        return None
