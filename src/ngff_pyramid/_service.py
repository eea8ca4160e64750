"""Single-handle array service used by the pyramid reader.

:class:`ChunkedArrayService` keeps at most one zarr array open.  Opening
another path replaces the handle; every shape/type query refers to that
array.  Group and array attributes can be read at any time without affecting
the open handle.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

import numpy as np

from . import _zarr
from ._errors import NoArrayOpenError
from ._shape import ArrayDescriptor, PixelType, byte_order_of
from ._storage import KeyValueStore, open_store
from ._util import KEY_DELIMITER

if TYPE_CHECKING:
    import os
    from collections.abc import Mapping, Sequence

    import zarr
    from typing_extensions import Self

__all__ = ["ArraySource", "AttributeSource", "ChunkedArrayService"]

logger = logging.getLogger(__name__)


@runtime_checkable
class AttributeSource(Protocol):
    """Read access to the attribute maps and node keys of a store."""

    def get_group_attributes(self, path: str) -> dict[str, Any]: ...
    def get_array_attributes(self, path: str) -> dict[str, Any]: ...
    def get_group_keys(self, path: str) -> list[str]: ...
    def get_array_keys(self, path: str) -> list[str]: ...


@runtime_checkable
class ArraySource(AttributeSource, Protocol):
    """Everything :class:`~ngff_pyramid.PyramidReader` needs from a service.

    Attribute access plus pixel access through one open array handle.
    """

    @property
    def store(self) -> KeyValueStore: ...
    def open(self, path: str) -> None: ...
    @property
    def shape(self) -> tuple[int, ...]: ...
    @property
    def chunk_shape(self) -> tuple[int, ...]: ...
    @property
    def pixel_type(self) -> PixelType: ...
    @property
    def byte_order(self) -> Literal["little", "big"]: ...
    @property
    def descriptor(self) -> ArrayDescriptor: ...
    def read(self, shape: Sequence[int], offset: Sequence[int]) -> np.ndarray: ...
    def close(self) -> None: ...


class ChunkedArrayService:
    """Open, inspect and read zarr v2 arrays below a store root.

    Parameters
    ----------
    root : str or os.PathLike
        Store root: a local directory or an ``https://host/bucket/...`` root.
        Paths given to the service may be relative to the root, or absolute
        paths that start with it.
    store : KeyValueStore, optional
        Backend to use instead of the one derived from `root`.
    """

    def __init__(
        self, root: str | os.PathLike[str], store: KeyValueStore | None = None
    ) -> None:
        self._store = store if store is not None else open_store(root)
        self._root = str(root).rstrip(KEY_DELIMITER)
        self._array: zarr.Array | None = None
        self._path: str | None = None

    # ---------------- paths ----------------

    @property
    def store(self) -> KeyValueStore:
        return self._store

    @property
    def root(self) -> str:
        return self._root

    def relative_key(self, path: str | os.PathLike[str]) -> str:
        """Return `path` relative to the store root."""
        path_str = str(path).replace("\\", KEY_DELIMITER)
        for root in (self._root, self._store.root):
            if root and (path_str == root or path_str.startswith(root + "/")):
                path_str = path_str[len(root) :]
                break
        return path_str.strip(KEY_DELIMITER)

    # ---------------- array handle ----------------

    def open(self, path: str | os.PathLike[str]) -> None:
        """Open the array at `path`, replacing any open array.

        Raises
        ------
        StoreKeyNotFoundError
            If no array exists at `path`.
        """
        key = self.relative_key(path)
        self._array = self._path = None
        self._array = _zarr.open_array(self._store, key)
        self._path = key
        logger.debug("Opened array %r %s", key, self._array.shape)

    def is_open(self) -> bool:
        return self._array is not None

    @property
    def current_path(self) -> str | None:
        return self._path

    def _require_array(self) -> zarr.Array:
        if self._array is None:
            raise NoArrayOpenError("No array is open; call open(path) first")
        return self._array

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self._require_array().shape)

    @property
    def chunk_shape(self) -> tuple[int, ...]:
        return tuple(self._require_array().chunks)

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self._require_array().dtype)

    @property
    def pixel_type(self) -> PixelType:
        return PixelType.from_dtype(self.dtype)

    @property
    def byte_order(self) -> Literal["little", "big"]:
        return byte_order_of(self.dtype)

    @property
    def descriptor(self) -> ArrayDescriptor:
        dtype = self.dtype
        return ArrayDescriptor(
            shape=self.shape,
            chunk_shape=self.chunk_shape,
            dtype=dtype,
            byte_order=byte_order_of(dtype),
        )

    def read(self, shape: Sequence[int], offset: Sequence[int]) -> np.ndarray:
        """Read a region of the open array into a native-typed buffer.

        Raises
        ------
        RegionOutOfBoundsError
            If ``offset + shape`` exceeds the array shape.
        """
        arr = self._require_array()
        region = _zarr.region_selection(shape, offset, arr.shape, self._path or "")
        if 0 in tuple(shape):
            return np.empty(tuple(shape), dtype=self.dtype)
        return np.asarray(arr[region])

    def write(
        self,
        data: Any,
        shape: Sequence[int] | None = None,
        offset: Sequence[int] | None = None,
    ) -> None:
        """Write `data` into the open array at `offset`.

        If `shape` is given, flat `data` is reshaped to it first.  Partially
        covered chunks are read, updated and rewritten.
        """
        target = self._require_array()
        values = np.asarray(data, dtype=self.dtype)
        if shape is not None:
            values = values.reshape(tuple(shape))
        if offset is None:
            offset = (0,) * values.ndim
        region = _zarr.region_selection(
            values.shape, offset, target.shape, self._path or ""
        )
        if values.size:
            target[region] = values
        logger.debug("Wrote %s at offset %s into %r", values.shape, offset, self._path)

    # ---------------- attributes and keys ----------------

    def get_group_attributes(self, path: str = "") -> dict[str, Any]:
        return _zarr.read_attributes(self._store, self.relative_key(path))

    def get_array_attributes(self, path: str = "") -> dict[str, Any]:
        return _zarr.read_attributes(self._store, self.relative_key(path))

    def get_group_keys(self, path: str = "") -> list[str]:
        """Keys (relative to `path`) of every group below `path`."""
        return self._child_keys(path, _zarr.ZGROUP)

    def get_array_keys(self, path: str = "") -> list[str]:
        """Keys (relative to `path`) of every array below `path`."""
        return self._child_keys(path, _zarr.ZARRAY)

    def _child_keys(self, path: str, suffix: str) -> list[str]:
        prefix = self.relative_key(path)
        keys = self._store.list_keys_with_suffix(suffix, prefix)
        if not prefix:
            return keys
        cut = len(prefix) + 1
        return [k[cut:] for k in keys if k.startswith(prefix + "/")]

    # ---------------- creation ----------------

    def create_group(
        self, path: str = "", attributes: Mapping[str, Any] | None = None
    ) -> None:
        _zarr.create_group(self._store, self.relative_key(path), attributes)

    def create_array(
        self,
        path: str,
        shape: Sequence[int],
        chunks: Sequence[int] | None = None,
        dtype: Any = "<u2",
        **kwargs: Any,
    ) -> None:
        """Create an array at `path` and make it the open array."""
        key = self.relative_key(path)
        self._array = _zarr.create_array(
            self._store, key, shape, chunks, dtype, **kwargs
        )
        self._path = key

    def write_attributes(self, path: str, attributes: Mapping[str, Any]) -> None:
        _zarr.write_attributes(self._store, self.relative_key(path), attributes)

    # ---------------- lifecycle ----------------

    def close(self) -> None:
        """Release the open array and the storage backend."""
        self._array = self._path = None
        self._store.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ChunkedArrayService({self._root!r}, open={self.current_path!r})"
