"""Pyramid reader: series/resolution selection and tiled pixel reads.

Opening a store performs a single attribute walk (root group first, then every
group key in series order) that feeds the multiscale and plate resolvers,
then opens each resolution array once to learn its shape.  Afterwards reads
only reopen an array when the selected path differs from the one last opened.
"""

from __future__ import annotations

import json
import logging
import posixpath
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from ._base import _BaseModel
from ._errors import (
    NoArrayOpenError,
    QuickReadShapeWarning,
    RegionOutOfBoundsError,
)
from ._label import ImageLabel, LabelSource, LabelsGroup
from ._multiscale import MultiscaleResolver, SeriesResolutionTable, order_array_paths
from ._omero import Omero
from ._options import ReaderOptions
from ._plate import PlateLayout, PlateResolver, WellSample
from ._service import ChunkedArrayService
from ._shape import (
    CanonicalShape,
    PixelType,
    native_region,
    plane_to_zct,
    unpack_to_buffer,
)
from ._util import find_store_root, is_label_path, reorder_group_keys, warn_malformed

if TYPE_CHECKING:
    import os
    from collections.abc import Callable, Iterator, Mapping

    import numpy as np
    from typing_extensions import Self

    from ._service import ArraySource

__all__ = [
    "STRUCTURAL_FILES",
    "AttributeAnnotation",
    "CoreEntry",
    "PyramidReader",
    "ReaderPhase",
    "ReaderState",
    "open_pyramid",
]

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=_BaseModel)

STRUCTURAL_FILES = frozenset(
    {".zarray", ".zattrs", ".zgroup", "zarr.json", "METADATA.ome.xml"}
)
# bioformats2raw records the original series order here
_BF2RAW_GROUP = "OME"


class ReaderPhase(str, Enum):
    CLOSED = "closed"
    SERIES_SELECTED = "series_selected"
    ARRAY_OPEN = "array_open"


@dataclass(slots=True)
class ReaderState:
    """Logical selection of a reader and the path it last opened."""

    series: int = 0
    resolution: int = 0
    last_opened_path: str | None = None
    initialized: bool = False

    @property
    def phase(self) -> ReaderPhase:
        if not self.initialized:
            return ReaderPhase.CLOSED
        if self.last_opened_path is None:
            return ReaderPhase.SERIES_SELECTED
        return ReaderPhase.ARRAY_OPEN


@dataclass(frozen=True, slots=True)
class CoreEntry:
    """Everything known about one resolution-level array."""

    path: str
    shape: CanonicalShape
    native_rank: int
    chunk_shape: tuple[int, ...]
    pixel_type: PixelType
    little_endian: bool
    series_index: int
    resolution_index: int
    resolution_count: int


@dataclass(frozen=True, slots=True)
class AttributeAnnotation:
    """A group or array attribute map serialized as JSON."""

    id: str
    path: str
    value: str


class PyramidReader:
    """Read tiles from the resolution pyramids of an OME-NGFF store.

    Parameters
    ----------
    options : ReaderOptions, optional
        Reader options.  Keyword arguments are used to build one if not given.
    service_factory : Callable[[str], ArraySource], optional
        Creates the array service for a store root.  Any object satisfying
        :class:`ArraySource` works; defaults to :class:`ChunkedArrayService`.
    **kwargs
        Fields of :class:`ReaderOptions`.

    Examples
    --------
    >>> with PyramidReader() as reader:  # doctest: +SKIP
    ...     reader.open("/data/image.zarr")
    ...     reader.set_resolution(1)
    ...     tile = reader.read_array(0, x=0, y=0, w=256, h=256)
    """

    def __init__(
        self,
        options: ReaderOptions | None = None,
        service_factory: Callable[[str], ArraySource] | None = None,
        **kwargs: Any,
    ) -> None:
        self.options = options if options is not None else ReaderOptions(**kwargs)
        self._service_factory = service_factory or ChunkedArrayService
        self._service: ArraySource | None = None
        self.state = ReaderState()
        self._reset()

    def _reset(self) -> None:
        self._root: str | None = None
        self._resolver = MultiscaleResolver()
        self._core: list[CoreEntry] = []
        self._series: list[list[int]] = []
        self._series_of_path: dict[str, int] = {}
        self._plate_resolver: PlateResolver | None = None
        self._omero: dict[str, Omero] = {}
        self._image_labels: dict[str, ImageLabel] = {}
        self._labels: dict[str, list[str]] = {}
        self._label_sources: dict[str, list[LabelSource]] = {}
        self._annotations: list[AttributeAnnotation] = []

    # ---------------- lifecycle ----------------

    def open(self, path: str | os.PathLike[str]) -> None:
        """Open the store containing `path` and build all derived tables.

        Raises
        ------
        StoreKeyNotFoundError
            If a declared resolution array does not exist.
        DimensionMismatchError
            If canonical sizes cannot be determined for an array.
        """
        if self._service is not None:
            self.close()
        self._root = find_store_root(path)
        store_root = self.options.alt_store or self._root
        logger.debug("Opening %r (storage root %r)", self._root, store_root)
        self._service = self._service_factory(store_root)
        try:
            self._initialize(self._service)
        except BaseException:
            self.close()
            raise
        self.state.initialized = True

    def close(self) -> None:
        """Release the array handle and storage backend and clear all tables."""
        if self._service is not None:
            self._service.close()
            self._service = None
        self._reset()
        self.state = ReaderState()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ---------------- initialization ----------------

    def _initialize(self, svc: ArraySource) -> None:
        pending_plates: list[tuple[str, Mapping[str, Any]]] = []

        def visit(key: str, attrs: Mapping[str, Any]) -> None:
            if self.options.include_labels or not is_label_path(key):
                self._resolver.add_group(key, attrs)
                if "plate" in attrs:
                    pending_plates.append((key, attrs))
            self._parse_display_metadata(key, attrs)
            self._annotate(key, attrs)

        if root_attrs := svc.get_group_attributes(""):
            visit("", root_attrs)
        for key in self._ordered_group_keys(svc):
            if attrs := svc.get_group_attributes(key):
                visit(key, attrs)

        array_keys = svc.get_array_keys("")
        for key in array_keys:
            if attrs := svc.get_array_attributes(key):
                self._annotate(key, attrs)

        paths = [
            k for k in array_keys if self.options.include_labels or not is_label_path(k)
        ]
        paths = order_array_paths(paths, self._resolver.table)
        self._build_core(svc, paths)

        self._plate_resolver = PlateResolver(
            svc, self._resolver.table, self._series_of_path
        )
        for key, attrs in pending_plates:
            self._plate_resolver.add_group(key, attrs)

        logger.debug(
            "Found %d series (%d arrays), %d plates",
            len(self._series),
            len(self._core),
            len(self._plate_resolver.plates),
        )

    def _ordered_group_keys(self, svc: ArraySource) -> list[str]:
        keys = svc.get_group_keys("")
        preferred = None
        if _BF2RAW_GROUP in keys:
            series = svc.get_group_attributes(_BF2RAW_GROUP).get("series")
            if isinstance(series, list) and all(isinstance(s, str) for s in series):
                preferred = series
        return reorder_group_keys(keys, preferred)

    def _parse_display_metadata(self, key: str, attrs: Mapping[str, Any]) -> None:
        if (omero := _validate_block(Omero, attrs, "omero", key)) is not None:
            self._omero[key] = omero
        label = _validate_block(ImageLabel, attrs, "image-label", key)
        if label is not None:
            self._image_labels[key] = label
        if (group := _validate_block(LabelsGroup, attrs, "labels", key)) is not None:
            self._labels[key] = group.labels
        if (raw := attrs.get("source")) is not None:
            items = raw if isinstance(raw, list) else [raw]
            try:
                self._label_sources[key] = [LabelSource.model_validate(s) for s in items]
            except ValidationError as e:
                warn_malformed(key, "source", e)

    def _annotate(self, key: str, attrs: Mapping[str, Any]) -> None:
        if not self.options.save_attributes:
            return
        n = len(self._annotations)
        self._annotations.append(
            AttributeAnnotation(
                id=f"Annotation:{n}", path=key, value=json.dumps(attrs, indent=2)
            )
        )

    def _build_core(self, svc: ArraySource, paths: list[str]) -> None:
        table = self._resolver.table
        groups = self._group_series(paths, table)
        reference: dict[int, CoreEntry] = {}

        for series_paths in groups:
            series_index = len(self._series)
            indices: list[int] = []
            for r, path in enumerate(series_paths):
                ref = reference.get(r) if self.options.quick_read else None
                if is_label_path(path):
                    ref = None
                entry = self._describe(
                    svc, path, ref, series_index, r, len(series_paths)
                )
                if not is_label_path(path):
                    reference.setdefault(r, entry)
                indices.append(len(self._core))
                self._core.append(entry)
                self._series_of_path[path] = series_index
            self._series.append(indices)

    def _group_series(
        self, paths: list[str], table: SeriesResolutionTable
    ) -> list[list[str]]:
        """Split the ordered path list into per-series runs."""
        if self.options.flatten_resolutions:
            return [[p] for p in paths]
        groups: list[list[str]] = []
        last: int | None = None
        for path in paths:
            s = table.series_of.get(path)
            if s is not None and s == last:
                groups[-1].append(path)
            else:
                groups.append([path])
            last = s
        return groups

    def _describe(
        self,
        svc: ArraySource,
        path: str,
        reference: CoreEntry | None,
        series_index: int,
        resolution_index: int,
        resolution_count: int,
    ) -> CoreEntry:
        order = self._resolver.table.dimension_order(path)
        if reference is not None and not self.options.verify_quick_read:
            return CoreEntry(
                path=path,
                shape=CanonicalShape.from_native(
                    _native_shape(reference), order or reference.shape.dimension_order
                ),
                native_rank=reference.native_rank,
                chunk_shape=reference.chunk_shape,
                pixel_type=reference.pixel_type,
                little_endian=reference.little_endian,
                series_index=series_index,
                resolution_index=resolution_index,
                resolution_count=resolution_count,
            )

        svc.open(path)
        self.state.last_opened_path = path
        desc = svc.descriptor
        entry = CoreEntry(
            path=path,
            shape=CanonicalShape.from_native(desc.shape, order),
            native_rank=len(desc.shape),
            chunk_shape=desc.chunk_shape,
            pixel_type=desc.pixel_type,
            little_endian=desc.little_endian,
            series_index=series_index,
            resolution_index=resolution_index,
            resolution_count=resolution_count,
        )
        if reference is not None and (
            _native_shape(reference) != desc.shape
            or reference.pixel_type != entry.pixel_type
        ):
            warnings.warn(
                f"Quick read assumed {path!r} has shape {_native_shape(reference)} "
                f"({reference.pixel_type.value}), but it is {desc.shape} "
                f"({entry.pixel_type.value}).",
                QuickReadShapeWarning,
                stacklevel=4,
            )
        return entry

    # ---------------- selection ----------------

    def _require_open(self) -> ArraySource:
        if self._service is None:
            raise NoArrayOpenError("No store is open; call open(path) first")
        return self._service

    @property
    def series_count(self) -> int:
        return len(self._series)

    @property
    def resolution_count(self) -> int:
        """Number of resolution levels of the selected series."""
        self._require_open()
        if not self._series:
            return 0
        return len(self._series[self.state.series])

    def set_series(self, series: int, reopen: bool = False) -> None:
        """Select `series` (at full resolution).

        The array is opened lazily on the next read unless `reopen` is True.
        """
        self._require_open()
        if not 0 <= series < self.series_count:
            raise IndexError(f"Series {series} out of range ({self.series_count})")
        self.state.series = series
        self.state.resolution = 0
        if reopen:
            self._ensure_open()

    def set_resolution(self, resolution: int, reopen: bool = False) -> None:
        """Select a resolution level of the current series (0 is largest)."""
        if not 0 <= resolution < self.resolution_count:
            raise IndexError(
                f"Resolution {resolution} out of range ({self.resolution_count})"
            )
        self.state.resolution = resolution
        if reopen:
            self._ensure_open()

    @property
    def series(self) -> int:
        return self.state.series

    @property
    def resolution(self) -> int:
        return self.state.resolution

    @property
    def core(self) -> list[CoreEntry]:
        return list(self._core)

    def core_entry(self) -> CoreEntry:
        """The selected resolution level."""
        self._require_open()
        return self._core[self._series[self.state.series][self.state.resolution]]

    @property
    def current_path(self) -> str:
        return self.core_entry().path

    @property
    def core_shape(self) -> CanonicalShape:
        return self.core_entry().shape

    @property
    def pixel_type(self) -> PixelType:
        return self.core_entry().pixel_type

    @property
    def little_endian(self) -> bool:
        return self.core_entry().little_endian

    @property
    def image_count(self) -> int:
        return self.core_shape.image_count

    def image_name(self, series: int | None = None) -> str:
        """Path of the full-resolution array of `series` (default: selected)."""
        self._require_open()
        s = self.state.series if series is None else series
        return self._core[self._series[s][0]].path

    def _ensure_open(self) -> None:
        svc = self._require_open()
        path = self.current_path
        if self.state.last_opened_path != path:
            svc.open(path)
            self.state.last_opened_path = path

    # ---------------- pixels ----------------

    def read_array(self, plane: int, x: int, y: int, w: int, h: int) -> np.ndarray:
        """Read a ``(h, w)`` tile of `plane` from the selected resolution.

        Raises
        ------
        RegionOutOfBoundsError
            If the tile extends past the plane.
        IndexError
            If `plane` is not a valid plane index.
        """
        entry = self.core_entry()
        shape = entry.shape
        z, c, t = plane_to_zct(plane, shape)
        if min(x, y, w, h) < 0 or x + w > shape.size_x or y + h > shape.size_y:
            raise RegionOutOfBoundsError(
                (h, w), (y, x), (shape.size_y, shape.size_x)
            )
        native_shape, offset = native_region(
            shape.dimension_order, z, c, t, x, y, w, h, entry.native_rank
        )
        self._ensure_open()
        data = self._require_open().read(native_shape, offset)
        return data.reshape(h, w)

    def read_region(
        self,
        plane: int,
        x: int,
        y: int,
        w: int,
        h: int,
        buf: bytearray | memoryview | None = None,
    ) -> bytes | bytearray | memoryview:
        """Read a tile and serialize it in the array's byte order.

        The result holds ``w * h * bytes_per_pixel`` bytes, row-major.  If `buf`
        is given it is filled and returned.
        """
        data = self.read_array(plane, x, y, w, h)
        return unpack_to_buffer(data, buf, little_endian=self.little_endian)

    def read_plane(
        self, plane: int, buf: bytearray | memoryview | None = None
    ) -> bytes | bytearray | memoryview:
        shape = self.core_shape
        return self.read_region(plane, 0, 0, shape.size_x, shape.size_y, buf)

    @property
    def optimal_tile_width(self) -> int:
        chunks = self.core_entry().chunk_shape
        return chunks[-1] if chunks else 1

    @property
    def optimal_tile_height(self) -> int:
        chunks = self.core_entry().chunk_shape
        return chunks[-2] if len(chunks) > 1 else 1

    # ---------------- files ----------------

    def iter_used_files(self, no_pixels: bool = False) -> Iterator[str]:
        store = self._require_open().store
        structural_only = no_pixels or not self.options.list_pixels
        for key in store.iter_object_keys(""):
            if not self.options.include_labels and is_label_path(key):
                continue
            if structural_only and posixpath.basename(key) not in STRUCTURAL_FILES:
                continue
            yield f"{store.root}/{key}"

    def used_files(self, no_pixels: bool = False) -> list[str]:
        """Every regular file of the store, filtered by the reader options.

        When pixel listing is off (or `no_pixels` is True) only group/array
        metadata and the OME-XML sidecar are listed.  Files below a ``labels``
        group are left out unless labels are included.
        """
        return list(self.iter_used_files(no_pixels))

    # ---------------- metadata ----------------

    @property
    def resolution_table(self) -> SeriesResolutionTable:
        return self._resolver.table

    @property
    def global_metadata(self) -> dict[str, Any]:
        return dict(self._resolver.global_metadata)

    @property
    def attribute_annotations(self) -> list[AttributeAnnotation]:
        return list(self._annotations)

    @property
    def plates(self) -> list[PlateLayout]:
        return list(self._plate_resolver.plates) if self._plate_resolver else []

    @property
    def is_hcs(self) -> bool:
        return bool(self.plates)

    @property
    def well_samples(self) -> list[WellSample]:
        return [s for p in self.plates for s in p.samples]

    @property
    def omero(self) -> dict[str, Omero]:
        """``omero`` blocks by group key."""
        return dict(self._omero)

    @property
    def image_labels(self) -> dict[str, ImageLabel]:
        return dict(self._image_labels)

    @property
    def labels(self) -> dict[str, list[str]]:
        return dict(self._labels)

    @property
    def label_sources(self) -> dict[str, list[LabelSource]]:
        return dict(self._label_sources)

    def __repr__(self) -> str:
        return (
            f"PyramidReader({self._root!r}, series={self.series_count}, "
            f"phase={self.state.phase.value})"
        )


def _native_shape(entry: CoreEntry) -> tuple[int, ...]:
    """Reconstruct the native shape recorded in a core entry."""
    s = entry.shape
    order = s.dimension_order
    shape5 = tuple(s.size_of(order[4 - i]) for i in range(5))
    return shape5[5 - entry.native_rank :]


def open_pyramid(
    path: str | os.PathLike[str], **options: Any
) -> PyramidReader:
    """Open `path` with a new :class:`PyramidReader`.

    Keyword arguments are :class:`ReaderOptions` fields.
    """
    reader = PyramidReader(ReaderOptions(**options))
    reader.open(path)
    return reader


def _validate_block(
    model: type[_M], attrs: Mapping[str, Any], name: str, key: str
) -> _M | None:
    """Validate ``attrs[name]`` as `model`, warning and returning None if invalid."""
    if (raw := attrs.get(name)) is None:
        return None
    if model is LabelsGroup:
        raw = {"labels": raw}
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        warn_malformed(key, name, e)
        return None
