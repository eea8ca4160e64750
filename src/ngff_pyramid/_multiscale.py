"""Resolution pyramids declared by ``multiscales`` attributes.

Each entry of a group's ``multiscales`` list becomes one series.  Series are
numbered across the whole attribute walk in the order they are added, and
every dataset path of a series is recorded with its resolution index (0 is
full resolution) and the lower-cased axis names of its multiscale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Annotated, Any

from annotated_types import Len
from pydantic import AliasChoices, BeforeValidator, Field, ValidationError

from ._base import _BaseModel
from ._errors import DimensionMismatchError
from ._shape import CANONICAL_RANK
from ._util import join_key, warn_malformed

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

__all__ = [
    "Axis",
    "CoordinateTransformation",
    "Dataset",
    "Multiscale",
    "MultiscaleEntry",
    "MultiscaleResolver",
    "ResolutionLevel",
    "SeriesResolutionTable",
    "fill_missing_axes",
    "order_array_paths",
]

logger = logging.getLogger(__name__)

# inserted at the front, in this order, when fewer than five axes are declared
_FILL_ORDER = ("x", "y", "c", "z", "t")


# ---------------------- attribute models ----------------------


def _axis_from_name(value: Any) -> Any:
    if isinstance(value, str):
        return {"name": value}
    return value


class Axis(_BaseModel):
    """One entry of ``multiscales[].axes``; a bare string is taken as the name."""

    name: str
    type: str | None = None
    unit: str | None = Field(
        default=None, validation_alias=AliasChoices("unit", "units")
    )


AxisEntry = Annotated[Axis, BeforeValidator(_axis_from_name)]


class CoordinateTransformation(_BaseModel):
    type: str
    scale: list[float] | None = None
    translation: list[float] | None = None


def _path_str(value: Any) -> Any:
    return str(value) if isinstance(value, int) else value


class Dataset(_BaseModel):
    path: Annotated[str, BeforeValidator(_path_str)]
    coordinate_transformations: list[CoordinateTransformation] = Field(
        default_factory=list, alias="coordinateTransformations"
    )

    def _transform(self, kind: str) -> list[float] | None:
        for t in self.coordinate_transformations:
            if t.type == kind:
                return t.scale if kind == "scale" else t.translation
        return None

    @property
    def scale(self) -> list[float] | None:
        return self._transform("scale")

    @property
    def translation(self) -> list[float] | None:
        return self._transform("translation")


class Multiscale(_BaseModel):
    name: str | None = None
    version: str | None = None
    axes: list[AxisEntry] = Field(default_factory=list)
    datasets: Annotated[list[Dataset], Len(min_length=1)]
    coordinate_transformations: list[CoordinateTransformation] = Field(
        default_factory=list, alias="coordinateTransformations"
    )


# ---------------------- resolved structures ----------------------


@dataclass(slots=True)
class ResolutionLevel:
    """One array of a pyramid."""

    path: str
    resolution_index: int
    scale: list[float] | None = None
    translation: list[float] | None = None


@dataclass(slots=True)
class MultiscaleEntry:
    """A resolved pyramid: its axes and ordered resolution levels."""

    series_index: int
    group_key: str
    axes: list[str]
    levels: list[ResolutionLevel]
    name: str | None = None
    declared_axes: list[Axis] = field(default_factory=list)
    transformations: list[CoordinateTransformation] = field(default_factory=list)

    @property
    def resolution_count(self) -> int:
        return len(self.levels)

    @property
    def paths(self) -> list[str]:
        return [lvl.path for lvl in self.levels]

    @property
    def dimension_order(self) -> str:
        """Axis letters, innermost first."""
        return "".join(reversed(self.axes)).upper()


@dataclass
class SeriesResolutionTable:
    """Every pyramid found during the attribute walk, keyed by series index."""

    series: dict[int, MultiscaleEntry] = field(default_factory=dict)
    path_dimensions: dict[str, list[str]] = field(default_factory=dict)
    resolution_index_of: dict[str, int] = field(default_factory=dict)
    series_of: dict[str, int] = field(default_factory=dict)

    def add(self, entry: MultiscaleEntry) -> None:
        self.series[entry.series_index] = entry
        for level in entry.levels:
            self.path_dimensions[level.path] = entry.axes
            self.resolution_index_of[level.path] = level.resolution_index
            self.series_of[level.path] = entry.series_index

    def __len__(self) -> int:
        return len(self.series)

    def __contains__(self, path: object) -> bool:
        return path in self.resolution_index_of

    def ordered_level_paths(self, series_index: int) -> list[str]:
        return self.series[series_index].paths

    def resolution_count(self, path: str) -> int:
        """Number of levels in the pyramid holding `path` (1 if unknown)."""
        if (s := self.series_of.get(path)) is None:
            return 1
        return self.series[s].resolution_count

    def resolution_index(self, path: str) -> int:
        return self.resolution_index_of.get(path, 0)

    def dimension_order(self, path: str) -> str | None:
        """Innermost-first axis letters for `path`, if declared."""
        if dims := self.path_dimensions.get(path):
            return "".join(reversed(dims)).upper()
        return None

    def level(self, path: str) -> ResolutionLevel | None:
        if (s := self.series_of.get(path)) is None:
            return None
        return self.series[s].levels[self.resolution_index_of[path]]

    def clear(self) -> None:
        self.series.clear()
        self.path_dimensions.clear()
        self.resolution_index_of.clear()
        self.series_of.clear()


def fill_missing_axes(names: Iterable[str]) -> list[str]:
    """Lower-case `names` and pad them to five axes.

    Missing canonical axes are inserted at the front in the order x, y, c, z,
    t, so ``["y", "x"]`` becomes ``["t", "z", "c", "y", "x"]``.
    """
    axes = [n.lower() for n in names]
    if len(axes) < CANONICAL_RANK:
        for name in _FILL_ORDER:
            if name not in axes:
                axes.insert(0, name)
    return axes


class MultiscaleResolver:
    """Collect the pyramids declared by group attribute maps.

    Parameters
    ----------
    table : SeriesResolutionTable, optional
        Table to accumulate into.  A new one is created if not given.
    """

    def __init__(self, table: SeriesResolutionTable | None = None) -> None:
        self.table = table if table is not None else SeriesResolutionTable()
        self.global_metadata: dict[str, Any] = {}

    def add_group(self, key: str, attrs: Mapping[str, Any]) -> list[MultiscaleEntry]:
        """Resolve the ``multiscales`` entry of the group at `key`.

        Returns the series created for this group, which is empty if the group
        declares no (valid) multiscales.
        """
        if (raw := attrs.get("multiscales")) is None:
            return []
        if not isinstance(raw, list):
            warn_malformed(key, "multiscales")
            return []

        added: list[MultiscaleEntry] = []
        for item in raw:
            try:
                ms = Multiscale.model_validate(item)
            except ValidationError as e:
                warn_malformed(key, "multiscales", e)
                continue
            entry = self._make_entry(key, ms)
            self.table.add(entry)
            self._record_metadata(entry)
            added.append(entry)
            logger.debug(
                "Series %d at %r: %d levels, axes %s",
                entry.series_index,
                key,
                entry.resolution_count,
                entry.axes,
            )
        return added

    def _make_entry(self, key: str, ms: Multiscale) -> MultiscaleEntry:
        axes = fill_missing_axes(a.name for a in ms.axes)
        if len(set(axes)) != len(axes):
            raise DimensionMismatchError(f"Duplicate axis names at {key!r}: {axes}")
        levels = [
            ResolutionLevel(
                path=join_key(key, ds.path),
                resolution_index=i,
                scale=ds.scale,
                translation=ds.translation,
            )
            for i, ds in enumerate(ms.datasets)
        ]
        return MultiscaleEntry(
            series_index=len(self.table),
            group_key=key,
            axes=axes,
            levels=levels,
            name=ms.name,
            declared_axes=list(ms.axes),
            transformations=list(ms.coordinate_transformations),
        )

    def _record_metadata(self, entry: MultiscaleEntry) -> None:
        s = entry.series_index
        meta = self.global_metadata
        for i, axis in enumerate(entry.declared_axes):
            meta[f"Axis name:{s}:{i}"] = axis.name
            if axis.type is not None:
                meta[f"Axis type:{s}:{i}"] = axis.type
            if axis.unit is not None:
                meta[f"Axis unit:{s}:{i}"] = axis.unit
        for i, t in enumerate(entry.transformations):
            meta[f"Coordinate Transformation type:{s}:{i}"] = t.type
            if t.scale is not None:
                meta[f"Coordinate Transformation scale:{s}:{i}"] = t.scale
            if t.translation is not None:
                meta[f"Coordinate Transformation translation:{s}:{i}"] = t.translation
        for level in entry.levels:
            if level.scale is not None:
                meta[f"{level.path} scale"] = level.scale
            if level.translation is not None:
                meta[f"{level.path} translation"] = level.translation

    def clear(self) -> None:
        self.table.clear()
        self.global_metadata.clear()


def order_array_paths(
    paths: Iterable[str], table: SeriesResolutionTable
) -> list[str]:
    """Make the levels of each series contiguous in `paths`.

    For each series in ascending index, its level paths are removed from the
    list and re-appended in resolution order.  Paths that belong to no series
    keep their relative order at the front, and declared levels that are not
    in `paths` are not added.
    """
    ordered = list(paths)
    present = set(ordered)
    for s in sorted(table.series):
        level_paths = [p for p in table.ordered_level_paths(s) if p in present]
        drop = set(level_paths)
        ordered = [p for p in ordered if p not in drop]
        ordered.extend(level_paths)
    return ordered
