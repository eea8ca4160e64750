"""Exceptions and warnings raised by ngff_pyramid.

Every exception also derives from the matching builtin, so callers that
only know about ``FileNotFoundError`` or ``ValueError`` still catch them.
"""

from __future__ import annotations

__all__ = [
    "DimensionMismatchError",
    "MalformedAttributesWarning",
    "NgffPyramidError",
    "NoArrayOpenError",
    "QuickReadShapeWarning",
    "RegionOutOfBoundsError",
    "StorageIOError",
    "StoreKeyNotFoundError",
    "UnsupportedDataTypeError",
]


class NgffPyramidError(Exception):
    """Base class for all errors raised by this package."""


class StoreKeyNotFoundError(NgffPyramidError, FileNotFoundError):
    """A key, array or group is absent from the store."""

    def __init__(self, key: str, message: str | None = None) -> None:
        self.key = key
        super().__init__(message or f"No such key in store: {key!r}")


class StorageIOError(NgffPyramidError, OSError):
    """The storage backend failed while listing, reading or writing."""


class DimensionMismatchError(NgffPyramidError, ValueError):
    """Sizes for the canonical X, Y, Z, C and T axes cannot be determined."""


class RegionOutOfBoundsError(NgffPyramidError, IndexError):
    """A read or write region extends past the declared array shape."""

    def __init__(
        self,
        shape: tuple[int, ...],
        offset: tuple[int, ...],
        array_shape: tuple[int, ...],
    ) -> None:
        self.shape = shape
        self.offset = offset
        self.array_shape = array_shape
        super().__init__(
            f"Region with offset {offset} and shape {shape} exceeds array "
            f"shape {array_shape}"
        )


class UnsupportedDataTypeError(NgffPyramidError, ValueError):
    """The array element type has no pixel type equivalent."""


class NoArrayOpenError(NgffPyramidError, RuntimeError):
    """An array operation was requested while no array is open."""


class MalformedAttributesWarning(UserWarning):
    """An attribute block was present but could not be interpreted.

    The block's contribution is skipped and the attribute walk continues.
    """


class QuickReadShapeWarning(UserWarning):
    """A resolution level did not have the shape assumed by quick read."""
