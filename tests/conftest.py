from __future__ import annotations

import io
import math
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest
from numcodecs import Zlib

from ngff_pyramid import ChunkedArrayService, LocalStore

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

TCZYX = [
    {"name": "t", "type": "time", "unit": "second"},
    {"name": "c", "type": "channel"},
    {"name": "z", "type": "space", "unit": "micrometer"},
    {"name": "y", "type": "space", "unit": "micrometer"},
    {"name": "x", "type": "space", "unit": "micrometer"},
]


def ramp(shape: Sequence[int], dtype: Any) -> np.ndarray:
    """Array whose flat element i is ``i`` (wrapped to fit small dtypes)."""
    n = math.prod(shape)
    dtype = np.dtype(dtype)
    if dtype.kind in "iu" and dtype.itemsize == 1:
        values = np.arange(n) % 100
    else:
        values = np.arange(n)
    return values.astype(dtype).reshape(shape)


def write_multiscale(
    svc: ChunkedArrayService,
    key: str,
    shapes: Sequence[Sequence[int]],
    *,
    axes: list[Any] | None = None,
    dtype: Any = "<u2",
    chunks: Sequence[int] | None = None,
    extra_attrs: dict[str, Any] | None = None,
) -> list[np.ndarray]:
    """Write an image group at `key` with one array per entry in `shapes`."""
    datasets = [
        {
            "path": str(i),
            "coordinateTransformations": [
                {"type": "scale", "scale": [1.0] * (len(shape) - 2) + [2.0**i] * 2}
            ],
        }
        for i, shape in enumerate(shapes)
    ]
    multiscale = {
        "version": "0.4",
        "name": key or "image",
        "axes": TCZYX if axes is None else axes,
        "datasets": datasets,
    }
    svc.create_group(key, {"multiscales": [multiscale], **(extra_attrs or {})})
    written = []
    for i, shape in enumerate(shapes):
        data = ramp(shape, dtype)
        path = f"{key}/{i}" if key else str(i)
        svc.create_array(
            path,
            shape,
            chunks if chunks is not None else shape,
            dtype,
            compressor=Zlib(level=1),
        )
        svc.write(data)
        written.append(data)
    return written


@pytest.fixture
def make_service(tmp_path: Path) -> Callable[..., ChunkedArrayService]:
    def _make(name: str = "image.zarr") -> ChunkedArrayService:
        return ChunkedArrayService(str(tmp_path / name))

    return _make


@pytest.fixture
def image_zarr(tmp_path: Path) -> tuple[str, list[np.ndarray]]:
    """A three-level 5D pyramid with a label image and omero metadata."""
    root = str(tmp_path / "image.zarr")
    svc = ChunkedArrayService(root)
    omero = {
        "id": 1,
        "name": "image",
        "version": "0.4",
        "channels": [
            {
                "active": True,
                "coefficient": 1,
                "color": "FF0000",
                "family": "linear",
                "inverted": False,
                "label": f"ch{i}",
                "window": {"start": 0, "end": 255, "min": 0, "max": 65535},
            }
            for i in range(3)
        ],
        "rdefs": {"defaultT": 0, "defaultZ": 2, "model": "color"},
    }
    levels = write_multiscale(
        svc,
        "",
        [(2, 3, 4, 32, 48), (2, 3, 4, 16, 24), (2, 3, 4, 8, 12)],
        chunks=(1, 1, 2, 16, 16),
        extra_attrs={"omero": omero},
    )
    svc.create_group("labels", {"labels": ["cells"]})
    write_multiscale(
        svc,
        "labels/cells",
        [(1, 1, 1, 32, 48)],
        dtype="|u1",
        extra_attrs={
            "image-label": {
                "version": "0.4",
                "colors": [{"label-value": 1, "rgba": [255, 0, 0, 255]}],
                "properties": [
                    {"label-value": 1, "area (pixels)": 12.0, "class": "cell"}
                ],
                "source": {"image": "../../"},
            }
        },
    )
    svc.close()
    return root, levels


@pytest.fixture
def plate_zarr(tmp_path: Path) -> str:
    """A 2x3 plate with two populated wells and two acquisitions."""
    root = str(tmp_path / "plate.zarr")
    svc = ChunkedArrayService(root)
    svc.create_group(
        "",
        {
            "plate": {
                "name": "test plate",
                "version": "0.4",
                "rows": [{"name": "A"}, {"name": "B"}],
                "columns": [{"name": "1"}, {"name": "2"}, {"name": "3"}],
                "acquisitions": [
                    {"id": 7, "name": "first", "maximumfieldcount": 2},
                    {"id": 3, "name": "second", "starttime": 1343731272000},
                ],
                "wells": [
                    {"path": "A/1", "rowIndex": 0, "columnIndex": 0},
                    {"path": "B/3"},
                ],
                "field_count": 2,
            }
        },
    )
    wells = {
        "A/1": [{"path": "0", "acquisition": 7}, {"path": "1", "acquisition": 99}],
        "B/3": [{"path": "0", "acquisition": 3}],
    }
    for row in ("A", "B"):
        svc.create_group(row)
    for well_path, images in wells.items():
        svc.create_group(well_path, {"well": {"images": images, "version": "0.4"}})
        for image in images:
            write_multiscale(
                svc, f"{well_path}/{image['path']}", [(1, 1, 1, 8, 8)], dtype="|u1"
            )
    svc.close()
    return root


class FakeS3FileSystem:
    """In-memory stand-in for the two s3fs calls an S3Store makes."""

    def __init__(self, objects: dict[str, bytes], page_size: int = 3) -> None:
        self.objects = objects
        self.page_size = page_size
        self.list_calls: list[dict[str, Any]] = []

    def call_s3(self, method: str, **kwargs: Any) -> dict[str, Any]:
        assert method == "list_objects_v2"
        self.list_calls.append(kwargs)
        bucket = kwargs["Bucket"]
        keys = sorted(
            path[len(bucket) + 1 :]
            for path in self.objects
            if path.startswith(f"{bucket}/")
            and path[len(bucket) + 1 :].startswith(kwargs["Prefix"])
        )
        start = int(kwargs.get("ContinuationToken", 0))
        page = keys[start : start + self.page_size]
        response: dict[str, Any] = {
            "Contents": [{"Key": k} for k in page],
            "IsTruncated": start + self.page_size < len(keys),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + self.page_size)
        return response

    def open(self, path: str, mode: str = "rb") -> io.BytesIO:
        try:
            return io.BytesIO(self.objects[path])
        except KeyError:
            raise FileNotFoundError(path) from None


def mirror_to_s3(local_root: str, bucket_prefix: str) -> dict[str, bytes]:
    """Copy every object of a local store into an S3 object dict."""
    store = LocalStore(local_root)
    return {
        f"{bucket_prefix}/{key}": store.read_bytes(key)
        for key in store.iter_object_keys()
    }
