"""zarr v2 nodes on top of a :class:`KeyValueStore`.

Arrays are opened and written with zarr-python through
:class:`KeyValueZarrStore`, which exposes any :class:`KeyValueStore` (local
directory or object store) as a zarr store.  Group and attribute documents
are small JSON files and are read and written directly.
"""

from __future__ import annotations

import json
import logging
import posixpath
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Literal

import numpy as np
import zarr
from numcodecs import get_codec
from zarr.abc.store import (
    OffsetByteRequest,
    RangeByteRequest,
    Store,
    SuffixByteRequest,
)

from ._errors import RegionOutOfBoundsError, StoreKeyNotFoundError
from ._util import join_key, warn_malformed

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Sequence

    from numcodecs.abc import Codec
    from zarr.abc.store import ByteRequest
    from zarr.core.buffer import Buffer, BufferPrototype

    from ._storage import KeyValueStore

__all__ = [
    "ZARRAY",
    "ZATTRS",
    "ZGROUP",
    "KeyValueZarrStore",
    "create_array",
    "create_group",
    "open_array",
    "read_attributes",
    "region_selection",
    "write_attributes",
]

logger = logging.getLogger(__name__)

ZGROUP = ".zgroup"
ZARRAY = ".zarray"
ZATTRS = ".zattrs"


# ---------------------- attribute documents ----------------------


def _parse_attributes(raw: bytes | None, path: str) -> dict[str, Any]:
    if raw is None:
        return {}
    try:
        attrs = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        warn_malformed(path, f"{ZATTRS} ({e})")
        return {}
    if not isinstance(attrs, dict):
        warn_malformed(path, ZATTRS)
        return {}
    return attrs


def read_attributes(store: KeyValueStore, path: str) -> dict[str, Any]:
    """Return the ``.zattrs`` map of the node at `path`.

    A missing document yields an empty map.  A document that is not a JSON
    object is reported with a warning and also treated as empty.
    """
    return _parse_attributes(store.get(join_key(path, ZATTRS)), path)


def write_attributes(store: KeyValueStore, path: str, attrs: Mapping[str, Any]) -> None:
    store.write_bytes(join_key(path, ZATTRS), _dump_json(dict(attrs)))


def create_group(
    store: KeyValueStore, path: str, attributes: Mapping[str, Any] | None = None
) -> None:
    """Write a ``.zgroup`` (and optionally ``.zattrs``) at `path`."""
    store.write_bytes(join_key(path, ZGROUP), _dump_json({"zarr_format": 2}))
    if attributes:
        write_attributes(store, path, attributes)


def _dump_json(obj: Any) -> bytes:
    return json.dumps(obj, indent=2).encode("utf-8")


# ---------------------- zarr store adapter ----------------------


def _byte_slice(data: bytes, byte_range: ByteRequest | None) -> bytes:
    if byte_range is None:
        return data
    if isinstance(byte_range, RangeByteRequest):
        return data[byte_range.start : byte_range.end]
    if isinstance(byte_range, OffsetByteRequest):
        return data[byte_range.offset :]
    if isinstance(byte_range, SuffixByteRequest):
        return data[-byte_range.suffix :] if byte_range.suffix else b""
    raise TypeError(f"Unexpected byte range {byte_range!r}")


class KeyValueZarrStore(Store):
    """A zarr store that reads and writes through a :class:`KeyValueStore`.

    Attribute documents that are not a JSON object are served as ``{}`` (with
    a warning), so a damaged ``.zattrs`` never prevents an array from opening.

    Parameters
    ----------
    kv : KeyValueStore
        The backing store.
    read_only : bool, optional
        Defaults to the backing store's own ``read_only`` flag.
    """

    def __init__(self, kv: KeyValueStore, *, read_only: bool | None = None) -> None:
        super().__init__(read_only=kv.read_only if read_only is None else read_only)
        self._kv = kv

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    def with_read_only(self, read_only: bool = False) -> KeyValueZarrStore:
        return type(self)(self._kv, read_only=read_only)

    def __eq__(self, value: object) -> bool:
        return isinstance(value, KeyValueZarrStore) and value._kv is self._kv

    def __hash__(self) -> int:
        return hash(id(self._kv))

    def __repr__(self) -> str:
        return f"KeyValueZarrStore({self._kv!r})"

    @property
    def supports_writes(self) -> bool:
        return not self.read_only

    @property
    def supports_deletes(self) -> bool:
        return not self.read_only

    @property
    def supports_partial_writes(self) -> bool:
        return False

    @property
    def supports_listing(self) -> bool:
        return True

    async def get(
        self,
        key: str,
        prototype: BufferPrototype,
        byte_range: ByteRequest | None = None,
    ) -> Buffer | None:
        if (data := self._kv.get(key)) is None:
            return None
        if posixpath.basename(key) == ZATTRS:
            data = _dump_json(_parse_attributes(data, posixpath.dirname(key)))
        return prototype.buffer.from_bytes(_byte_slice(data, byte_range))

    async def get_partial_values(
        self,
        prototype: BufferPrototype,
        key_ranges: Iterable[tuple[str, ByteRequest | None]],
    ) -> list[Buffer | None]:
        return [await self.get(key, prototype, rng) for key, rng in key_ranges]

    async def exists(self, key: str) -> bool:
        return self._kv.exists(key)

    async def set(self, key: str, value: Buffer) -> None:
        self._check_writable()
        self._kv.write_bytes(key, value.to_bytes())

    async def set_if_not_exists(self, key: str, value: Buffer) -> None:
        if not self._kv.exists(key):
            await self.set(key, value)

    async def delete(self, key: str) -> None:
        self._check_writable()
        self._kv.delete(key)

    async def set_partial_values(
        self, key_start_values: Iterable[tuple[str, int, Any]]
    ) -> None:
        raise NotImplementedError("Partial writes are not supported")

    async def list(self) -> AsyncIterator[str]:
        for key in sorted(self._kv.iter_object_keys()):
            yield key

    async def list_prefix(self, prefix: str) -> AsyncIterator[str]:
        for key in sorted(self._kv.iter_object_keys()):
            if key.startswith(prefix):
                yield key

    async def list_dir(self, prefix: str) -> AsyncIterator[str]:
        base = prefix.rstrip("/")
        seen: set[str] = set()
        for key in sorted(self._kv.iter_object_keys(base)):
            child = (key[len(base) + 1 :] if base else key).split("/", 1)[0]
            if child and child not in seen:
                seen.add(child)
                yield child


# ---------------------- arrays ----------------------


def open_array(store: KeyValueStore, path: str) -> zarr.Array:
    """Open the zarr v2 array at `path`.

    The array is writable unless `store` is read-only.

    Raises
    ------
    StoreKeyNotFoundError
        If there is no ``.zarray`` document at `path`.
    """
    if not store.exists(join_key(path, ZARRAY)):
        raise StoreKeyNotFoundError(
            path, f"No zarr array found at {path!r} (missing {ZARRAY})"
        )
    return zarr.open_array(
        store=KeyValueZarrStore(store),
        path=path,
        mode="r" if store.read_only else "r+",
        zarr_format=2,
    )


def create_array(
    store: KeyValueStore,
    path: str,
    shape: Sequence[int],
    chunks: Sequence[int] | None = None,
    dtype: Any = "<u2",
    *,
    compressor: Codec | Mapping[str, Any] | None = None,
    fill_value: Any = 0,
    order: Literal["C", "F"] = "C",
    dimension_separator: Literal[".", "/"] = "/",
    attributes: Mapping[str, Any] | None = None,
) -> zarr.Array:
    """Create (or replace) a zarr v2 array at `path` and return it."""
    if isinstance(compressor, Mapping):
        compressor = get_codec(dict(compressor))
    arr = zarr.create_array(
        store=KeyValueZarrStore(store),
        name=path or None,
        shape=tuple(shape),
        chunks=tuple(chunks if chunks is not None else shape),
        dtype=np.dtype(dtype),
        compressors=compressor,
        fill_value=fill_value,
        order=order,
        zarr_format=2,
        chunk_key_encoding={"name": "v2", "separator": dimension_separator},
        attributes=dict(attributes) if attributes else None,
        overwrite=True,
    )
    logger.debug("Created array %r shape=%s chunks=%s", path, arr.shape, arr.chunks)
    return arr


def region_selection(
    shape: Sequence[int],
    offset: Sequence[int],
    array_shape: Sequence[int],
    path: str = "",
) -> tuple[slice, ...]:
    """Return the slices selecting `shape` at `offset` inside `array_shape`.

    Raises
    ------
    ValueError
        If the region rank does not match the array rank.
    RegionOutOfBoundsError
        If ``offset + shape`` exceeds the array shape in any dimension.
    """
    ndim = len(array_shape)
    if len(shape) != ndim or len(offset) != ndim:
        raise ValueError(
            f"Region rank ({len(shape)}, {len(offset)}) does not match "
            f"array rank {ndim} at {path!r}"
        )
    for size, off, extent in zip(shape, offset, array_shape):
        if size < 0 or off < 0 or off + size > extent:
            raise RegionOutOfBoundsError(
                tuple(shape), tuple(offset), tuple(array_shape)
            )
    return tuple(slice(off, off + size) for size, off in zip(shape, offset))
