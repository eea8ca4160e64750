"""High-content-screening layout from ``plate`` and ``well`` attributes.

A plate declares its row and column names, the wells that exist and the
acquisitions that produced them.  Each well group lists its field images;
every field is bound to the series that holds its full-resolution array.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Annotated, Any

from pydantic import AliasChoices, BeforeValidator, Field, ValidationError

from ._base import _BaseModel
from ._util import join_key, row_index_from_letter, split_key, warn_malformed

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from ._multiscale import SeriesResolutionTable
    from ._service import AttributeSource

__all__ = [
    "Acquisition",
    "Plate",
    "PlateLayout",
    "PlateResolver",
    "WellImage",
    "WellRef",
    "WellSample",
    "resolve_well_position",
]

logger = logging.getLogger(__name__)


# ---------------------- attribute models ----------------------


def _named(value: Any) -> Any:
    return {"name": str(value)} if isinstance(value, (str, int)) else value


def _as_str(value: Any) -> Any:
    return str(value) if isinstance(value, int) else value


class PlateName(_BaseModel):
    name: Annotated[str, BeforeValidator(_as_str)]


NamedEntry = Annotated[PlateName, BeforeValidator(_named)]


class PlateAcquisition(_BaseModel):
    id: int
    name: str | None = None
    description: str | None = None
    maximum_field_count: int | None = Field(default=None, alias="maximumfieldcount")
    start_time: int | str | None = Field(default=None, alias="starttime")
    end_time: int | str | None = Field(default=None, alias="endtime")


class PlateWell(_BaseModel):
    path: str
    row_index: int | None = Field(
        default=None, validation_alias=AliasChoices("row_index", "rowIndex")
    )
    column_index: int | None = Field(
        default=None, validation_alias=AliasChoices("column_index", "columnIndex")
    )


class Plate(_BaseModel):
    """The ``plate`` block of a plate group."""

    name: str | None = None
    version: str | None = None
    rows: list[NamedEntry]
    columns: list[NamedEntry]
    wells: list[PlateWell]
    acquisitions: list[PlateAcquisition] = Field(default_factory=list)
    field_count: int | None = None


class WellImage(_BaseModel):
    path: Annotated[str, BeforeValidator(_as_str)]
    # only integer ids can refer to a plate acquisition
    acquisition: int | str | None = None


class WellAttrs(_BaseModel):
    """The ``well`` block of a well group."""

    images: list[WellImage]
    version: str | None = None


# ---------------------- resolved structures ----------------------


@dataclass(slots=True)
class Acquisition:
    id: int
    index: int
    name: str | None = None
    maximum_field_count: int | None = None
    start_time: int | str | None = None
    end_time: int | str | None = None


@dataclass(slots=True)
class WellRef:
    """One cell of the plate grid; `path` is None for wells with no data."""

    row_index: int
    column_index: int
    well_index: int
    path: str | None = None


@dataclass(slots=True)
class WellSample:
    """One field image of a well."""

    plate_index: int
    well_index: int
    field_index: int
    image_path: str
    site_id: str
    series_index: int | None = None
    acquisition_index: int | None = None


@dataclass
class PlateLayout:
    index: int
    key: str
    rows: list[str]
    columns: list[str]
    wells: list[WellRef]
    acquisitions: list[Acquisition] = field(default_factory=list)
    samples: list[WellSample] = field(default_factory=list)
    name: str | None = None
    field_count: int | None = None

    @property
    def acquisition_slots(self) -> dict[int, int]:
        """Declared acquisition id -> zero-based slot."""
        return {a.id: a.index for a in self.acquisitions}

    def well_index(self, row: int, column: int) -> int:
        return row * len(self.columns) + column

    def well(self, row: int, column: int) -> WellRef:
        return self.wells[self.well_index(row, column)]

    def samples_in_well(self, well_index: int) -> list[WellSample]:
        return [s for s in self.samples if s.well_index == well_index]


# ---------------------- well position ----------------------


def _explicit_indices(
    well: PlateWell, rows: Sequence[str], columns: Sequence[str]
) -> tuple[int, int] | None:
    if well.row_index is None or well.column_index is None:
        return None
    return well.row_index, well.column_index


def _declared_names(
    well: PlateWell, rows: Sequence[str], columns: Sequence[str]
) -> tuple[int, int] | None:
    parts = split_key(well.path)
    if len(parts) < 2 or parts[-2] not in rows or parts[-1] not in columns:
        return None
    return rows.index(parts[-2]), columns.index(parts[-1])


def _parse_segment(segment: str) -> int | None:
    if segment.isdigit():
        return int(segment)
    try:
        return row_index_from_letter(segment)
    except ValueError:
        return None


def _parsed_segments(
    well: PlateWell, rows: Sequence[str], columns: Sequence[str]
) -> tuple[int, int] | None:
    parts = split_key(well.path)
    if len(parts) < 2:
        return None
    row, col = _parse_segment(parts[-2]), _parse_segment(parts[-1])
    if row is None or col is None:
        return None
    return row, col


_POSITION_RESOLVERS: tuple[
    Callable[[PlateWell, Sequence[str], Sequence[str]], tuple[int, int] | None], ...
] = (_explicit_indices, _declared_names, _parsed_segments)


def resolve_well_position(
    well: PlateWell | Mapping[str, Any],
    rows: Sequence[str] = (),
    columns: Sequence[str] = (),
) -> tuple[int, int]:
    """Return the ``(row, column)`` index of a plate ``wells`` entry.

    The first of these that succeeds is used:

    1. explicit ``row_index``/``column_index`` (or ``rowIndex``/``columnIndex``)
    2. the last two path segments looked up in the declared row/column names
    3. the last two path segments parsed directly: letters as base-26 row
       names (``A`` is 0), digits as integers

    Raises
    ------
    ValueError
        If no representation yields a position.
    """
    if not isinstance(well, PlateWell):
        well = PlateWell.model_validate(well)
    for resolve in _POSITION_RESOLVERS:
        if (position := resolve(well, rows, columns)) is not None:
            return position
    raise ValueError(f"Cannot determine row and column of well {well.path!r}")


# ---------------------- resolver ----------------------


class PlateResolver:
    """Build :class:`PlateLayout` objects for plate groups.

    Parameters
    ----------
    source : AttributeSource
        Used to read each well group's attributes.
    table : SeriesResolutionTable
        Resolution table the field images are looked up in.
    series_of_path : Mapping[str, int]
        Global series index of each full-resolution array path.
    """

    def __init__(
        self,
        source: AttributeSource,
        table: SeriesResolutionTable,
        series_of_path: Mapping[str, int],
    ) -> None:
        self._source = source
        self._table = table
        self._series_of_path = series_of_path
        self.plates: list[PlateLayout] = []

    def add_group(self, key: str, attrs: Mapping[str, Any]) -> PlateLayout | None:
        """Resolve the ``plate`` entry of the group at `key`, if any."""
        if (raw := attrs.get("plate")) is None:
            return None
        try:
            plate = Plate.model_validate(raw)
        except ValidationError as e:
            warn_malformed(key, "plate", e)
            return None

        layout = self._empty_layout(len(self.plates), key, plate)
        for well in plate.wells:
            try:
                row, col = resolve_well_position(well, layout.rows, layout.columns)
            except ValueError as e:
                warn_malformed(key, f"plate.wells ({e})")
                continue
            if not (0 <= row < len(layout.rows) and 0 <= col < len(layout.columns)):
                warn_malformed(key, f"plate.wells ({well.path!r} is outside the grid)")
                continue
            well_index = layout.well_index(row, col)
            layout.wells[well_index].path = well.path
            self._add_samples(layout, well_index, well.path)

        self.plates.append(layout)
        logger.debug(
            "Plate %d at %r: %d wells with data, %d samples",
            layout.index,
            key,
            sum(w.path is not None for w in layout.wells),
            len(layout.samples),
        )
        return layout

    def _empty_layout(self, index: int, key: str, plate: Plate) -> PlateLayout:
        rows = [r.name for r in plate.rows]
        columns = [c.name for c in plate.columns]
        wells = [
            WellRef(row_index=r, column_index=c, well_index=r * len(columns) + c)
            for r in range(len(rows))
            for c in range(len(columns))
        ]
        acquisitions = [
            Acquisition(
                id=a.id,
                index=i,
                name=a.name,
                maximum_field_count=a.maximum_field_count,
                start_time=a.start_time,
                end_time=a.end_time,
            )
            for i, a in enumerate(plate.acquisitions)
        ]
        return PlateLayout(
            index=index,
            key=key,
            rows=rows,
            columns=columns,
            wells=wells,
            acquisitions=acquisitions,
            name=plate.name,
            field_count=plate.field_count,
        )

    def _add_samples(self, layout: PlateLayout, well_index: int, well_path: str) -> None:
        well_key = join_key(layout.key, well_path)
        attrs = self._source.get_group_attributes(well_key)
        if (raw := attrs.get("well")) is None:
            return
        try:
            well = WellAttrs.model_validate(raw)
        except ValidationError as e:
            warn_malformed(well_key, "well", e)
            return

        slots = layout.acquisition_slots
        for i, image in enumerate(well.images):
            image_path = self._image_reference(well_key, str(i), image.path)
            layout.samples.append(
                WellSample(
                    plate_index=layout.index,
                    well_index=well_index,
                    field_index=i,
                    image_path=image_path,
                    site_id=f"WellSample:{layout.index}:{well_index}:{i}",
                    series_index=self._series_of_path.get(image_path),
                    acquisition_index=slots.get(image.acquisition)
                    if isinstance(image.acquisition, int)
                    else None,
                )
            )

    def _image_reference(self, well_key: str, field: str, declared: str) -> str:
        """Full-resolution array path of a field image, or its group key."""
        candidates = [join_key(well_key, field)]
        if declared != field:
            candidates.append(join_key(well_key, declared))
        for ref in candidates:
            if (level0 := join_key(ref, "0")) in self._table:
                return level0
            for entry in self._table.series.values():
                if entry.group_key == ref and entry.levels:
                    return entry.levels[0].path
        return candidates[0]

    def clear(self) -> None:
        self.plates.clear()
