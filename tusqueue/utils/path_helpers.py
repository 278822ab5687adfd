"""Local path normalisation and filename helpers."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.-]")
_MAX_NAME_LENGTH = 120


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def safe_filename(value: str) -> str:
    """Return *value* with every character outside ``[A-Za-z0-9.-]`` replaced.

    The result is safe to use as a single path component on every platform.
    An empty input yields ``"_"``.
    """
    cleaned = _UNSAFE_CHARS.sub("_", value)[:_MAX_NAME_LENGTH]
    if cleaned in ("", ".", ".."):
        logger.debug("safe_filename: %r collapsed to placeholder", value)
        return "_"
    return cleaned


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()
