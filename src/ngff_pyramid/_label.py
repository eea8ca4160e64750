from __future__ import annotations

from typing import Annotated, Any, ClassVar

from annotated_types import Len
from pydantic import AliasChoices, BeforeValidator, ConfigDict, Field

from ._base import _BaseModel

__all__ = ["ImageLabel", "LabelColor", "LabelProperty", "LabelSource", "LabelsGroup"]


class LabelColor(_BaseModel):
    label_value: int | float = Field(alias="label-value")
    rgba: Annotated[list[int], Len(min_length=4, max_length=4)] | None = None


class LabelProperty(_BaseModel):
    """Per-label-value properties.  Keys other than the known ones are kept."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="allow")

    label_value: int | float = Field(alias="label-value")
    area: float | None = Field(default=None, alias="area (pixels)")
    class_: str | None = Field(default=None, alias="class")


def _as_list(value: Any) -> Any:
    return [value] if isinstance(value, str) else value


class LabelSource(_BaseModel):
    image: Annotated[list[str], BeforeValidator(_as_list)] = Field(
        default_factory=list
    )


class ImageLabel(_BaseModel):
    """``image-label`` block of a label image group."""

    version: str | None = None
    colors: list[LabelColor] = Field(
        default_factory=list, validation_alias=AliasChoices("colors", "color")
    )
    properties: list[LabelProperty] = Field(default_factory=list)
    source: LabelSource | None = None


class LabelsGroup(_BaseModel):
    """``labels`` block of the group holding an image's label images."""

    labels: list[str]
