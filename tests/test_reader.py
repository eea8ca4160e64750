"""Tests for PyramidReader over stores written to disk (and a fake S3)."""

from __future__ import annotations

import json
import posixpath
from typing import TYPE_CHECKING

import numpy as np
import pytest
from conftest import FakeS3FileSystem, mirror_to_s3, write_multiscale

from ngff_pyramid import (
    CanonicalShape,
    ChunkedArrayService,
    MalformedAttributesWarning,
    NoArrayOpenError,
    PixelType,
    PyramidReader,
    QuickReadShapeWarning,
    ReaderOptions,
    ReaderPhase,
    RegionOutOfBoundsError,
    S3Store,
    StoreKeyNotFoundError,
    open_pyramid,
    zct_to_plane,
)
from ngff_pyramid._reader import STRUCTURAL_FILES

if TYPE_CHECKING:
    from pathlib import Path


class CountingService(ChunkedArrayService):
    """Array service that records every array it opens."""

    opened: list[str]

    def __init__(self, root, store=None) -> None:
        super().__init__(root, store)
        self.opened = []

    def open(self, path) -> None:
        self.opened.append(str(path))
        super().open(path)


@pytest.fixture
def image(image_zarr: tuple[str, list[np.ndarray]]) -> PyramidReader:
    root, _ = image_zarr
    reader = PyramidReader()
    reader.open(root)
    yield reader
    reader.close()


class TestOpen:
    def test_series_and_resolutions(self, image: PyramidReader) -> None:
        assert image.series_count == 1
        assert image.resolution_count == 3
        assert image.core_shape == CanonicalShape(2, 3, 4, 32, 48, "XYZCT")
        assert image.pixel_type is PixelType.UINT16
        assert image.little_endian
        assert image.image_name() == "0"
        assert image.state.phase is ReaderPhase.ARRAY_OPEN

        image.set_resolution(2)
        assert image.core_shape.as_tuple() == (2, 3, 4, 8, 12)
        assert image.core_entry().resolution_index == 2
        assert image.core_entry().resolution_count == 3
        with pytest.raises(IndexError):
            image.set_resolution(3)

    def test_open_from_nested_path(
        self, image_zarr: tuple[str, list[np.ndarray]]
    ) -> None:
        root, _ = image_zarr
        with open_pyramid(f"{root}/0") as reader:
            assert reader.series_count == 1

    def test_metadata(self, image: PyramidReader) -> None:
        omero = image.omero[""]
        assert [c.label for c in omero.channels] == ["ch0", "ch1", "ch2"]
        assert omero.channels[0].window.max == 65535
        assert omero.rdefs.default_z == 2
        assert image.labels == {"labels": ["cells"]}
        label = image.image_labels["labels/cells"]
        assert label.colors[0].rgba == [255, 0, 0, 255]
        assert label.properties[0].class_ == "cell"
        assert label.source.image == ["../../"]
        assert image.global_metadata["Axis type:0:0"] == "time"
        assert image.global_metadata["1 scale"] == [1.0, 1.0, 1.0, 2.0, 2.0]
        assert not image.is_hcs
        # off by default
        assert image.attribute_annotations == []

    def test_label_series_opt_in(
        self, image_zarr: tuple[str, list[np.ndarray]]
    ) -> None:
        root, _ = image_zarr
        with open_pyramid(root, include_labels=True) as reader:
            assert reader.series_count == 2
            reader.set_series(1)
            assert reader.image_name() == "labels/cells/0"
            assert reader.pixel_type is PixelType.UINT8

    def test_flattened_resolutions(
        self, image_zarr: tuple[str, list[np.ndarray]]
    ) -> None:
        root, _ = image_zarr
        with open_pyramid(root, flatten_resolutions=True) as reader:
            assert reader.series_count == 3
            assert reader.resolution_count == 1
            reader.set_series(2)
            assert reader.core_shape.size_x == 12

    def test_save_attributes(self, image_zarr: tuple[str, list[np.ndarray]]) -> None:
        root, _ = image_zarr
        with open_pyramid(root, save_attributes=True) as reader:
            notes = reader.attribute_annotations
        assert [n.id for n in notes] == [f"Annotation:{i}" for i in range(len(notes))]
        assert notes[0].path == ""
        assert "multiscales" in json.loads(notes[0].value)
        assert {n.path for n in notes} >= {"", "labels", "labels/cells"}

    def test_close_clears_everything(self, image: PyramidReader) -> None:
        image.close()
        assert image.state.phase is ReaderPhase.CLOSED
        assert image.series_count == 0
        assert image.plates == []
        assert image.global_metadata == {}
        with pytest.raises(NoArrayOpenError):
            image.read_array(0, 0, 0, 1, 1)

    def test_missing_level_array(self, tmp_path: Path) -> None:
        svc = ChunkedArrayService(str(tmp_path / "broken.zarr"))
        write_multiscale(svc, "", [(8, 8), (4, 4)], axes=["y", "x"])
        svc.store.delete("0/.zarray")
        reader = PyramidReader()
        # "0" is no longer an array, so the series starts at level 1
        reader.open(str(tmp_path / "broken.zarr"))
        assert reader.series_count == 1
        assert reader.resolution_count == 1
        assert reader.image_name() == "1"

    def test_open_nonexistent_array_key(self, tmp_path: Path) -> None:
        root = str(tmp_path / "x.zarr")
        svc = ChunkedArrayService(root)
        svc.create_group("", {})

        class Listing(ChunkedArrayService):
            def get_array_keys(self, path: str = "") -> list[str]:
                return ["ghost"]

        reader = PyramidReader(service_factory=Listing)
        with pytest.raises(StoreKeyNotFoundError, match="ghost"):
            reader.open(root)
        assert reader.state.phase is ReaderPhase.CLOSED


class TestGroupOrdering:
    @pytest.fixture
    def multi(self, tmp_path: Path) -> str:
        root = str(tmp_path / "multi.zarr")
        svc = ChunkedArrayService(root)
        svc.create_group("", {"bioformats2raw.layout": 3})
        for key in ["0", "1", "2", "10"]:
            write_multiscale(svc, key, [(4, 4)], axes=["y", "x"])
        return root

    def test_natural_order(self, multi: str) -> None:
        with open_pyramid(multi) as reader:
            names = [reader.image_name(s) for s in range(reader.series_count)]
        assert names == ["0/0", "1/0", "2/0", "10/0"]

    def test_bioformats2raw_series_order(self, multi: str) -> None:
        svc = ChunkedArrayService(multi)
        svc.create_group("OME", {"series": ["10", "2", "1", "0"]})
        with open_pyramid(multi) as reader:
            names = [reader.image_name(s) for s in range(reader.series_count)]
        assert names == ["10/0", "2/0", "1/0", "0/0"]

    def test_mismatched_series_order_warns(self, multi: str) -> None:
        ChunkedArrayService(multi).create_group("OME", {"series": ["0", "7"]})
        with pytest.warns(MalformedAttributesWarning, match="unknown groups"):
            reader = open_pyramid(multi)
        assert reader.image_name(0) == "0/0"

    def test_malformed_multiscales_is_skipped(self, multi: str) -> None:
        svc = ChunkedArrayService(multi)
        svc.write_attributes("2", {"multiscales": [{"axes": ["y", "x"]}]})
        with pytest.warns(MalformedAttributesWarning, match="multiscales"):
            reader = open_pyramid(multi)
        # the array stays readable as a single-level series
        assert reader.series_count == 4
        assert "2/0" in [reader.image_name(s) for s in range(4)]


class TestRead:
    def test_read_array_matches_data(
        self, image_zarr: tuple[str, list[np.ndarray]], image: PyramidReader
    ) -> None:
        _, levels = image_zarr
        plane = zct_to_plane(z=3, c=1, t=1, shape=image.core_shape)
        tile = image.read_array(plane, x=10, y=5, w=20, h=17)
        np.testing.assert_array_equal(tile, levels[0][1, 1, 3, 5:22, 10:30])

        image.set_resolution(1)
        tile = image.read_array(0, x=0, y=0, w=24, h=16)
        np.testing.assert_array_equal(tile, levels[1][0, 0, 0])

    def test_read_region_bytes(
        self, image_zarr: tuple[str, list[np.ndarray]], image: PyramidReader
    ) -> None:
        _, levels = image_zarr
        image.set_resolution(2)
        buf = bytearray(8 * 12 * 2)
        out = image.read_plane(5, buf)
        assert out is buf
        z, c, t = 1, 1, 0
        assert bytes(buf) == levels[2][t, c, z].astype("<u2").tobytes()

    @pytest.mark.parametrize(
        "x, y, w, h", [(0, 0, 49, 1), (40, 0, 10, 1), (0, 30, 1, 3), (-1, 0, 1, 1)]
    )
    def test_region_out_of_bounds(
        self, image: PyramidReader, x: int, y: int, w: int, h: int
    ) -> None:
        with pytest.raises(RegionOutOfBoundsError):
            image.read_array(0, x, y, w, h)

    def test_plane_out_of_range(self, image: PyramidReader) -> None:
        with pytest.raises(IndexError):
            image.read_array(24, 0, 0, 1, 1)

    def test_tile_size(self, image: PyramidReader) -> None:
        assert image.optimal_tile_width == 16
        assert image.optimal_tile_height == 16

    def test_low_rank_image(self, tmp_path: Path) -> None:
        svc = ChunkedArrayService(str(tmp_path / "2d.zarr"))
        (data,) = write_multiscale(
            svc, "", [(10, 12)], axes=["y", "x"], dtype="<f4", chunks=(4, 5)
        )
        with open_pyramid(str(tmp_path / "2d.zarr")) as reader:
            assert reader.core_shape.as_tuple() == (1, 1, 1, 10, 12)
            np.testing.assert_array_equal(
                reader.read_array(0, 3, 2, 6, 7), data[2:9, 3:9]
            )
            raw = reader.read_region(0, 0, 0, 12, 10)
        assert np.frombuffer(raw, dtype="<f4").tolist() == data.ravel().tolist()

    def test_big_endian_int32(self, tmp_path: Path) -> None:
        svc = ChunkedArrayService(str(tmp_path / "be.zarr"))
        write_multiscale(svc, "", [(3, 4)], axes=["y", "x"], dtype=">i4")
        with open_pyramid(str(tmp_path / "be.zarr")) as reader:
            assert not reader.little_endian
            raw = reader.read_plane(0)
        assert raw == np.arange(12, dtype=">i4").tobytes()


class TestReopen:
    def test_switching_back_does_not_reopen(
        self, image_zarr: tuple[str, list[np.ndarray]]
    ) -> None:
        root, _ = image_zarr
        reader = PyramidReader(service_factory=CountingService)
        reader.open(root)
        svc = reader._service
        # one open per resolution level during initialization
        assert svc.opened == ["0", "1", "2"]

        reader.set_resolution(0)
        reader.read_array(0, 0, 0, 4, 4)
        assert len(svc.opened) == 4

        reader.set_resolution(1)
        reader.set_resolution(0)
        reader.read_array(1, 0, 0, 4, 4)
        reader.read_array(2, 4, 4, 4, 4)
        assert len(svc.opened) == 4

        reader.set_resolution(1)
        reader.read_array(0, 0, 0, 4, 4)
        assert svc.opened[-1] == "1"
        assert len(svc.opened) == 5
        reader.close()

    def test_eager_reopen(self, image_zarr: tuple[str, list[np.ndarray]]) -> None:
        root, _ = image_zarr
        reader = PyramidReader(service_factory=CountingService)
        reader.open(root)
        svc = reader._service
        reader.set_resolution(0, reopen=True)
        assert svc.opened[-1] == "0"
        assert reader.state.last_opened_path == "0"
        reader.set_resolution(0, reopen=True)
        assert len(svc.opened) == 4


class TestQuickRead:
    @pytest.fixture
    def two_images(self, tmp_path: Path) -> str:
        root = str(tmp_path / "two.zarr")
        svc = ChunkedArrayService(root)
        write_multiscale(svc, "a", [(8, 8), (4, 4)], axes=["y", "x"])
        write_multiscale(svc, "b", [(8, 8), (2, 2)], axes=["y", "x"])
        return root

    def test_quick_read_reuses_shapes(self, two_images: str) -> None:
        reader = PyramidReader(
            ReaderOptions(quick_read=True), service_factory=CountingService
        )
        reader.open(two_images)
        assert reader._service.opened == ["a/0", "a/1"]
        reader.set_series(1)
        reader.set_resolution(1)
        # assumed, not verified
        assert reader.core_shape.size_x == 4

    def test_verified_quick_read_warns(self, two_images: str) -> None:
        with pytest.warns(QuickReadShapeWarning, match="b/1"):
            reader = open_pyramid(two_images, quick_read=True, verify_quick_read=True)
        reader.set_series(1)
        reader.set_resolution(1)
        assert reader.core_shape.size_x == 2


class TestUsedFiles:
    def test_all_files(self, image: PyramidReader) -> None:
        files = image.used_files()
        names = {posixpath.basename(f) for f in files}
        assert names - STRUCTURAL_FILES
        assert not any("/labels/" in f for f in files)
        assert all(f.startswith(image._service.store.root) for f in files)

    def test_structural_only(self, image_zarr: tuple[str, list[np.ndarray]]) -> None:
        root, _ = image_zarr
        with open_pyramid(root, list_pixels=False) as reader:
            files = reader.used_files()
            with_labels = PyramidReader(list_pixels=False, include_labels=True)
            with_labels.open(root)
            labelled = with_labels.used_files()
            with_labels.close()
        assert files
        assert {posixpath.basename(f) for f in files} <= STRUCTURAL_FILES
        assert not any("labels" in f.split("/") for f in files)
        assert any("labels" in f.split("/") for f in labelled)

    def test_no_pixels_argument(self, image: PyramidReader) -> None:
        assert len(image.used_files(no_pixels=True)) < len(image.used_files())

    def test_env_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OME_ZARR_LIST_PIXELS", "false")
        assert not ReaderOptions().list_pixels
        monkeypatch.setenv("OME_ZARR_LIST_PIXELS", "1")
        assert ReaderOptions().list_pixels
        monkeypatch.delenv("OME_ZARR_LIST_PIXELS")
        assert ReaderOptions().list_pixels


class TestPlate:
    def test_plate_binding(self, plate_zarr: str) -> None:
        with open_pyramid(plate_zarr) as reader:
            assert reader.is_hcs
            assert reader.series_count == 3
            (plate,) = reader.plates
            samples = reader.well_samples
        assert plate.name == "test plate"
        assert plate.field_count == 2
        assert [a.id for a in plate.acquisitions] == [7, 3]
        assert plate.well(1, 2).path == "B/3"
        assert [(s.well_index, s.field_index) for s in samples] == [
            (0, 0), (0, 1), (5, 0)
        ]
        assert [s.series_index for s in samples] == [0, 1, 2]
        assert [s.acquisition_index for s in samples] == [0, None, 1]
        assert samples[2].image_path == "B/3/0/0"


class TestObjectStore:
    def test_read_through_s3(
        self, image_zarr: tuple[str, list[np.ndarray]]
    ) -> None:
        local_root, levels = image_zarr
        root = "https://s3.example.org/bucket/data/image.zarr"
        fs = FakeS3FileSystem(mirror_to_s3(local_root, "bucket/data/image.zarr"))

        def factory(store_root: str) -> ChunkedArrayService:
            return ChunkedArrayService(store_root, S3Store(store_root, filesystem=fs))

        with PyramidReader(service_factory=factory) as reader:
            reader.open(f"{root}/0")
            assert reader.resolution_count == 3
            reader.set_resolution(1)
            tile = reader.read_array(0, 0, 0, 24, 16)
            files = reader.used_files(no_pixels=True)
        np.testing.assert_array_equal(tile, levels[1][0, 0, 0])
        assert f"{root}/.zattrs" in files
        assert len(fs.list_calls) > 1

    def test_alt_store(
        self, image_zarr: tuple[str, list[np.ndarray]], tmp_path: Path
    ) -> None:
        local_root, _ = image_zarr
        reader = PyramidReader(alt_store=local_root)
        reader.open(str(tmp_path / "elsewhere.zarr"))
        assert reader.series_count == 1
        reader.close()


class ForwardingSource:
    """An array source that is not a ChunkedArrayService."""

    def __init__(self, root: str) -> None:
        self.inner = ChunkedArrayService(root)
        self.reads = 0

    def __getattr__(self, name: str):
        return getattr(self.inner, name)

    def read(self, shape, offset) -> np.ndarray:
        self.reads += 1
        return self.inner.read(shape, offset)


def test_reader_accepts_any_array_source(
    image_zarr: tuple[str, list[np.ndarray]],
) -> None:
    root, levels = image_zarr
    sources: list[ForwardingSource] = []

    def factory(store_root: str) -> ForwardingSource:
        sources.append(ForwardingSource(store_root))
        return sources[-1]

    with PyramidReader(service_factory=factory) as reader:
        reader.open(root)
        tile = reader.read_array(0, 0, 0, 48, 32)
    np.testing.assert_array_equal(tile, levels[0][0, 0, 0])
    assert sources[0].reads >= 1
