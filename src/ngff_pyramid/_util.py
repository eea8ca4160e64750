from __future__ import annotations

import os
import re
import string
import warnings
from typing import TYPE_CHECKING

from ._errors import MalformedAttributesWarning

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from pydantic import ValidationError

KEY_DELIMITER = "/"
LABELS_SEGMENT = "labels"
_STORE_SUFFIX = ".zarr"
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def join_key(*parts: str) -> str:
    """Join key segments with the store delimiter, dropping empty segments."""
    return KEY_DELIMITER.join(p.strip(KEY_DELIMITER) for p in parts if p.strip("/"))


def split_key(key: str) -> list[str]:
    return [p for p in key.split(KEY_DELIMITER) if p]


def is_label_path(key: str) -> bool:
    """Return True if any segment of `key` is a ``labels`` group."""
    return LABELS_SEGMENT in split_key(key.replace(os.sep, KEY_DELIMITER))


def is_zarr_path(path: str | os.PathLike[str]) -> bool:
    """Return True if `path` points into a zarr store."""
    return _STORE_SUFFIX in os.fspath(path).lower()


def find_store_root(path: str | os.PathLike[str]) -> str:
    """Return `path` truncated after its first segment ending in ``.zarr``.

    Paths that do not contain such a segment are returned unchanged (without a
    trailing delimiter).
    """
    path_str = os.fspath(path).replace(os.sep, KEY_DELIMITER)
    parts = path_str.split(KEY_DELIMITER)
    for i, part in enumerate(parts):
        if part.lower().endswith(_STORE_SUFFIX):
            return KEY_DELIMITER.join(parts[: i + 1])
    return path_str.rstrip(KEY_DELIMITER) or path_str


def env_flag(name: str, default: bool) -> bool:
    """Read a boolean switch from the environment."""
    if (value := os.getenv(name)) is None:
        return default
    return value.strip().lower() not in _FALSE_STRINGS


# ---------------------- row letters ----------------------


def row_letter(index: int) -> str:
    """Return the plate row name for a zero-based row index.

    Uses bijective base-26: ``0 -> "A"``, ``25 -> "Z"``, ``26 -> "AA"``.
    """
    if index < 0:
        raise ValueError(f"Row index must be non-negative, got {index}")
    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = string.ascii_uppercase[rem] + letters
    return letters


def row_index_from_letter(letters: str) -> int:
    """Inverse of :func:`row_letter` (case-insensitive)."""
    if not letters or not letters.isalpha() or not letters.isascii():
        raise ValueError(f"Not a plate row name: {letters!r}")
    n = 0
    for ch in letters.upper():
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


# ---------------------- key ordering ----------------------

_DIGITS = re.compile(r"^\d+$")


def natural_sort_key(key: str) -> tuple:
    """Sort key for group keys.

    Keys with fewer segments sort first. Segment by segment, integers sort
    before text, integers compare numerically and text compares lexically.
    """
    parts = split_key(key)
    return (
        len(parts),
        tuple((0, int(p), "") if _DIGITS.match(p) else (1, 0, p) for p in parts),
    )


def reorder_group_keys(
    keys: Iterable[str], preferred: Sequence[str] | None = None
) -> list[str]:
    """Order group keys naturally, honouring an explicit series order if given.

    When every entry of `preferred` is among `keys`, those come first in the
    given order, followed by the remaining keys in natural order.  Otherwise
    `preferred` is ignored with a warning.
    """
    ordered = sorted(set(keys), key=natural_sort_key)
    if not preferred:
        return ordered
    missing = [p for p in preferred if p not in ordered]
    if missing:
        warnings.warn(
            f"Declared series order refers to unknown groups {missing}; "
            "falling back to natural key order.",
            MalformedAttributesWarning,
            stacklevel=2,
        )
        return ordered
    head = list(dict.fromkeys(preferred))
    return head + [k for k in ordered if k not in set(head)]


def warn_malformed(where: str, what: str, exc: ValidationError | None = None) -> None:
    """Emit a MalformedAttributesWarning for an attribute block."""
    detail = ""
    if exc is not None:
        errors = exc.errors()
        detail = "; ".join(
            f"{'.'.join(str(x) for x in e['loc'])}: {e['msg']}" for e in errors[:3]
        )
        if len(errors) > 3:
            detail += f" (+{len(errors) - 3} more)"
        detail = f": {detail}"
    warnings.warn(
        f"Ignoring malformed {what!r} attributes at {where or '<root>'!r}{detail}",
        MalformedAttributesWarning,
        stacklevel=3,
    )
