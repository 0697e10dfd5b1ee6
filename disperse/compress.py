"""Compression of finished files for Disperse.

Each asset may ask for ``gz`` and/or ``br`` siblings. A request can carry a
size condition ``"(min,max)"`` (``*`` for no upper bound); files outside the
range are left uncompressed.
"""

from __future__ import annotations

import gzip
import math
import re
from pathlib import Path

import brotli

from .models import CompressFormat
from .settings import ConfigurationError

SIZE_RANGE = re.compile(r"\(\s*(\d+)\s*,\s*(\d+|\*)\s*\)")

EXTENSIONS = {"gz": ".gz", "br": ".br"}


class CompressError(ConfigurationError):
    """Error raised for an unknown compression format."""


def find_format(compress: list[CompressFormat] | None, format: str) -> CompressFormat | None:
    """Return the first request for ``format``, if any."""
    for item in compress or []:
        if item.format == format:
            return item
    return None


def get_size_range(value: str) -> tuple[int, float]:
    """Parse ``"(min,max)"``; unparseable values mean no limit."""
    match = SIZE_RANGE.search(value)
    if not match:
        return 0, math.inf
    upper = match.group(2)
    return int(match.group(1)), math.inf if upper == "*" else int(upper)


def within_size_range(path: Path, condition: str | None) -> bool:
    """Check a file against a size condition.

    An empty file is outside every bounded range.
    """
    if not condition:
        return True
    minimum, maximum = get_size_range(condition)
    if minimum <= 0 and maximum == math.inf:
        return True
    try:
        size = path.stat().st_size
    except OSError:
        return False
    return size != 0 and minimum <= size <= maximum


def compress_file(
    path: Path,
    fmt: CompressFormat,
    mime_type: str | None = None,
    gzip_level: int = 9,
    brotli_quality: int = 11,
) -> Path | None:
    """Write a compressed sibling of ``path``.

    Args:
        path: File to compress.
        fmt: The request; its ``level`` overrides the configured default.
        mime_type: Selects brotli's text mode for ``text/*``.
        gzip_level: Default gzip level.
        brotli_quality: Default brotli quality.

    Returns:
        Path of the compressed file, or None when the size condition skipped it.

    Raises:
        CompressError: If the format is not ``gz`` or ``br``.
    """
    if fmt.format not in EXTENSIONS:
        raise CompressError(f"Unsupported compression format: {fmt.format}")
    if not within_size_range(path, fmt.condition):
        return None
    data = path.read_bytes()
    target = path.with_name(path.name + EXTENSIONS[fmt.format])
    if fmt.format == "gz":
        level = fmt.level if fmt.level is not None else gzip_level
        target.write_bytes(gzip.compress(data, compresslevel=max(0, min(level, 9))))
    else:
        quality = fmt.level if fmt.level is not None else brotli_quality
        mode = brotli.MODE_TEXT if (mime_type or "").startswith("text/") else brotli.MODE_GENERIC
        target.write_bytes(brotli.compress(data, mode=mode, quality=max(0, min(quality, 11))))
    return target
