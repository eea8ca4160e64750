"""Canonical 5D shapes, plane indexing and pixel unpacking.

Native arrays are stored outermost axis first, e.g. ``(t, c, z, y, x)``.
Dimension order strings list axes innermost first, so the same layout has
dimension order ``"XYZCT"`` and the letter at position ``k`` of a dimension
order describes native axis ``4 - k`` once the shape is padded to five
dimensions.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Literal

import numpy as np

from ._errors import (
    DimensionMismatchError,
    RegionOutOfBoundsError,
    UnsupportedDataTypeError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "DEFAULT_DIMENSION_ORDER",
    "ArrayDescriptor",
    "CanonicalShape",
    "PixelType",
    "native_region",
    "plane_to_zct",
    "to_5d",
    "to_original_rank",
    "unpack_to_buffer",
    "zct_to_plane",
]

CANONICAL_RANK = 5
DEFAULT_DIMENSION_ORDER = "XYZCT"
_LETTERS = frozenset("XYZCT")

ByteOrder = Literal["little", "big"]


class PixelType(str, Enum):
    """Element types a pyramid level may hold."""

    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @classmethod
    def from_dtype(cls, dtype: np.dtype | str) -> PixelType:
        name = np.dtype(dtype).name
        try:
            return cls(name)
        except ValueError:
            raise UnsupportedDataTypeError(
                f"Unsupported element type {name!r}; expected one of "
                f"{[p.value for p in cls]}"
            ) from None

    @property
    def bytes_per_pixel(self) -> int:
        return np.dtype(self.value).itemsize

    @property
    def is_floating_point(self) -> bool:
        return self in (PixelType.FLOAT32, PixelType.FLOAT64)


def byte_order_of(dtype: np.dtype) -> ByteOrder:
    """Return the byte order of `dtype` as ``"little"`` or ``"big"``."""
    if dtype.byteorder == ">":
        return "big"
    if dtype.byteorder == "=":
        return sys.byteorder  # type: ignore[return-value]
    return "little"


@dataclass(frozen=True, slots=True)
class ArrayDescriptor:
    """Shape, chunking and element type of one open array."""

    shape: tuple[int, ...]
    chunk_shape: tuple[int, ...]
    dtype: np.dtype
    byte_order: ByteOrder

    @property
    def pixel_type(self) -> PixelType:
        return PixelType.from_dtype(self.dtype)

    @property
    def little_endian(self) -> bool:
        return self.byte_order == "little"


# ---------------------- rank normalization ----------------------


def to_5d(shape: Sequence[int]) -> tuple[int, int, int, int, int]:
    """Right-align `shape` into five dimensions, padding with leading ones."""
    if len(shape) > CANONICAL_RANK:
        raise DimensionMismatchError(
            f"Arrays of rank {len(shape)} are not supported (maximum is 5)"
        )
    return (1,) * (CANONICAL_RANK - len(shape)) + tuple(shape)  # type: ignore[return-value]


def to_original_rank(shape: Sequence[int], rank: int) -> tuple[int, ...]:
    """Drop the leading padding added by :func:`to_5d`."""
    if not 0 <= rank <= CANONICAL_RANK:
        raise ValueError(f"rank must be between 0 and 5, got {rank}")
    return tuple(shape[len(shape) - rank :]) if rank else ()


def _check_order(order: str) -> str:
    order = order.upper()
    if len(order) != CANONICAL_RANK or set(order) != _LETTERS:
        raise DimensionMismatchError(
            f"Dimension order must be a permutation of 'XYZCT', got {order!r}"
        )
    return order


@dataclass(frozen=True, slots=True)
class CanonicalShape:
    """Normalized ``(T, C, Z, Y, X)`` sizes plus a dimension order string."""

    size_t: int
    size_c: int
    size_z: int
    size_y: int
    size_x: int
    dimension_order: str = DEFAULT_DIMENSION_ORDER

    def __post_init__(self) -> None:
        object.__setattr__(self, "dimension_order", _check_order(self.dimension_order))

    @classmethod
    def from_native(
        cls, shape: Sequence[int], dimension_order: str | None = None
    ) -> CanonicalShape:
        """Build the canonical shape of an array with native `shape`.

        Parameters
        ----------
        shape : Sequence[int]
            Native array shape, outermost axis first, rank <= 5.
        dimension_order : str, optional
            Innermost-first axis letters.  Defaults to ``"XYZCT"``.
        """
        order = _check_order(dimension_order or DEFAULT_DIMENSION_ORDER)
        shape5 = to_5d(shape)
        sizes = {letter: shape5[CANONICAL_RANK - 1 - i] for i, letter in enumerate(order)}
        return cls(
            size_t=sizes["T"],
            size_c=sizes["C"],
            size_z=sizes["Z"],
            size_y=sizes["Y"],
            size_x=sizes["X"],
            dimension_order=order,
        )

    def size_of(self, letter: str) -> int:
        return {
            "T": self.size_t,
            "C": self.size_c,
            "Z": self.size_z,
            "Y": self.size_y,
            "X": self.size_x,
        }[letter.upper()]

    @property
    def image_count(self) -> int:
        """Number of 2D planes, ``Z * C * T``."""
        return self.size_z * self.size_c * self.size_t

    def as_tuple(self) -> tuple[int, int, int, int, int]:
        return (self.size_t, self.size_c, self.size_z, self.size_y, self.size_x)


# ---------------------- planes and regions ----------------------


def _plane_axes(order: str) -> list[str]:
    return [letter for letter in order if letter in "ZCT"]


def plane_to_zct(plane: int, shape: CanonicalShape) -> tuple[int, int, int]:
    """Decompose a plane index into ``(z, c, t)``.

    The first of Z, C and T in the dimension order varies fastest.
    """
    if not 0 <= plane < shape.image_count:
        raise IndexError(
            f"Plane index {plane} out of range for {shape.image_count} planes"
        )
    coords: dict[str, int] = {}
    rem = plane
    for letter in _plane_axes(shape.dimension_order):
        rem, coords[letter] = divmod(rem, shape.size_of(letter))
    return coords["Z"], coords["C"], coords["T"]


def zct_to_plane(z: int, c: int, t: int, shape: CanonicalShape) -> int:
    """Inverse of :func:`plane_to_zct`."""
    coords = {"Z": z, "C": c, "T": t}
    plane = 0
    stride = 1
    for letter in _plane_axes(shape.dimension_order):
        size = shape.size_of(letter)
        if not 0 <= coords[letter] < size:
            raise IndexError(f"{letter}={coords[letter]} out of range (size {size})")
        plane += coords[letter] * stride
        stride *= size
    return plane


def native_region(
    dimension_order: str,
    z: int,
    c: int,
    t: int,
    x: int,
    y: int,
    w: int,
    h: int,
    rank: int = CANONICAL_RANK,
) -> tuple[tuple[int, ...], tuple[int, ...]]:
    """Compute the native ``(shape, offset)`` of a single-plane region.

    Y and X occupy the two innermost native axes; Z, C and T are placed at
    native position ``4 - dimension_order.index(letter)``.  The result is
    trimmed to `rank` when the array has fewer than five dimensions.
    """
    order = _check_order(dimension_order)
    shape = [1, 1, 1, h, w]
    offset = [0, 0, 0, y, x]
    offset[CANONICAL_RANK - 1 - order.index("Z")] = z
    offset[CANONICAL_RANK - 1 - order.index("C")] = c
    offset[CANONICAL_RANK - 1 - order.index("T")] = t
    if rank < CANONICAL_RANK:
        dropped = CANONICAL_RANK - rank
        if any(offset[:dropped]):
            raise RegionOutOfBoundsError(tuple(shape), tuple(offset), (1,) * dropped)
        return to_original_rank(shape, rank), to_original_rank(offset, rank)
    return tuple(shape), tuple(offset)


def unpack_to_buffer(
    data: np.ndarray,
    buf: bytearray | memoryview | None = None,
    *,
    little_endian: bool,
) -> bytes | bytearray | memoryview:
    """Serialize `data` row-major with the requested byte order.

    Each element is written at its natural width.  Floating point values keep
    their IEEE-754 bit patterns.

    Parameters
    ----------
    data : np.ndarray
        Native element buffer as returned by an array read.
    buf : bytearray or memoryview, optional
        Destination.  Filled from offset 0 and returned if given; must hold at
        least ``data.nbytes`` bytes.
    little_endian : bool
        Byte order of the output.
    """
    target = data.dtype.newbyteorder("<" if little_endian else ">")
    payload = np.ascontiguousarray(data).astype(target, copy=False).tobytes(order="C")
    if buf is None:
        return payload
    # sized in bytes whatever the item size of the caller's view
    view = memoryview(buf).cast("B")
    if view.nbytes < len(payload):
        raise ValueError(
            f"Buffer of {view.nbytes} bytes is too small for {len(payload)} bytes"
        )
    view[: len(payload)] = payload
    return buf
