"""Read pyramidal OME-NGFF (zarr v2) microscopy images.

## Components

- **Storage** ([`open_store`][ngff_pyramid.open_store]): a key to bytes mapping
  over a local directory ([`LocalStore`][ngff_pyramid.LocalStore]) or an anonymous,
  path-style S3 bucket ([`S3Store`][ngff_pyramid.S3Store]).
- **Arrays** ([`ChunkedArrayService`][ngff_pyramid.ChunkedArrayService]): one open
  array at a time, region reads and writes, group/array attributes and keys.
- **Resolvers** ([`MultiscaleResolver`][ngff_pyramid.MultiscaleResolver],
  [`PlateResolver`][ngff_pyramid.PlateResolver]): turn ``multiscales`` and
  ``plate``/``well`` attributes into series and plate tables.
- **Reader** ([`PyramidReader`][ngff_pyramid.PyramidReader]): series and
  resolution selection plus tiled reads into byte buffers.

## Quick Start

```python
from ngff_pyramid import open_pyramid

with open_pyramid("/data/image.zarr") as reader:
    print(reader.series_count, reader.resolution_count)
    reader.set_resolution(reader.resolution_count - 1)
    tile = reader.read_array(0, x=0, y=0, w=64, h=64)
```
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ngff-pyramid")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "uninstalled"

from ._errors import (
    DimensionMismatchError,
    MalformedAttributesWarning,
    NgffPyramidError,
    NoArrayOpenError,
    QuickReadShapeWarning,
    RegionOutOfBoundsError,
    StorageIOError,
    StoreKeyNotFoundError,
    UnsupportedDataTypeError,
)
from ._multiscale import (
    MultiscaleEntry,
    MultiscaleResolver,
    ResolutionLevel,
    SeriesResolutionTable,
    order_array_paths,
)
from ._options import ReaderOptions
from ._plate import (
    Acquisition,
    PlateLayout,
    PlateResolver,
    WellRef,
    WellSample,
    resolve_well_position,
)
from ._reader import (
    AttributeAnnotation,
    CoreEntry,
    PyramidReader,
    ReaderPhase,
    ReaderState,
    open_pyramid,
)
from ._service import ArraySource, AttributeSource, ChunkedArrayService
from ._shape import (
    ArrayDescriptor,
    CanonicalShape,
    PixelType,
    native_region,
    plane_to_zct,
    to_5d,
    to_original_rank,
    unpack_to_buffer,
    zct_to_plane,
)
from ._storage import (
    KeyValueStore,
    LocalStore,
    ObjectStoreLocation,
    S3Store,
    open_store,
    parse_object_store_root,
)
from ._util import (
    find_store_root,
    is_zarr_path,
    natural_sort_key,
    row_index_from_letter,
    row_letter,
)

__all__ = [
    "Acquisition",
    "ArrayDescriptor",
    "ArraySource",
    "AttributeAnnotation",
    "AttributeSource",
    "CanonicalShape",
    "ChunkedArrayService",
    "CoreEntry",
    "DimensionMismatchError",
    "KeyValueStore",
    "LocalStore",
    "MalformedAttributesWarning",
    "MultiscaleEntry",
    "MultiscaleResolver",
    "NgffPyramidError",
    "NoArrayOpenError",
    "ObjectStoreLocation",
    "PixelType",
    "PlateLayout",
    "PlateResolver",
    "PyramidReader",
    "QuickReadShapeWarning",
    "ReaderOptions",
    "ReaderPhase",
    "ReaderState",
    "RegionOutOfBoundsError",
    "ResolutionLevel",
    "S3Store",
    "SeriesResolutionTable",
    "StorageIOError",
    "StoreKeyNotFoundError",
    "UnsupportedDataTypeError",
    "WellRef",
    "WellSample",
    "__version__",
    "find_store_root",
    "is_zarr_path",
    "native_region",
    "natural_sort_key",
    "open_pyramid",
    "open_store",
    "order_array_paths",
    "parse_object_store_root",
    "plane_to_zct",
    "resolve_well_position",
    "row_index_from_letter",
    "row_letter",
    "to_5d",
    "to_original_rank",
    "unpack_to_buffer",
    "zct_to_plane",
]
