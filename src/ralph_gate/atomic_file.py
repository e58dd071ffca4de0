"""Atomic file replacement for loop state records.

A state record is written to a sibling temp file, flushed to disk, and then
renamed over the target. ``os.replace`` is atomic on POSIX when both paths
live on the same filesystem, so a reader (the next hook invocation, possibly
in a fresh process) only ever sees the old record or the new one.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict


def _temp_path_for(path: Path) -> Path:
    # Keep the full name so ``a.json`` and ``a.local.md`` never share a temp file.
    return path.with_name(path.name + ".tmp")


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``content`` in a single rename.

    Args:
        path: Target file path
        content: Text content to write
        encoding: File encoding (default: utf-8)

    Raises:
        OSError: If the temp file cannot be written or renamed. The temp file
            is removed before the error propagates.
    """
    temp_path = _temp_path_for(path)
    try:
        with open(temp_path, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, data: Dict[str, Any], indent: int = 2) -> None:
    """Serialize ``data`` as JSON and write it atomically.

    Raises:
        TypeError: If data is not JSON-serializable (nothing is written)
        OSError: If write or rename fails
    """
    content = json.dumps(data, indent=indent, ensure_ascii=False) + "\n"
    atomic_write_text(path, content)
