from __future__ import annotations

from pydantic import Field

from ._base import _BaseModel

__all__ = ["Omero", "OmeroChannel", "OmeroRenderingDefs", "OmeroWindow"]


class OmeroWindow(_BaseModel):
    """Display window of one channel."""

    start: float | None = None
    end: float | None = None
    min: float | None = None
    max: float | None = None


class OmeroChannel(_BaseModel):
    active: bool | None = None
    coefficient: float | None = None
    color: str | None = Field(
        default=None, description="Hex RGB color, e.g. 'FF0000'."
    )
    family: str | None = None
    inverted: bool | None = None
    label: str | None = None
    window: OmeroWindow | None = None


class OmeroRenderingDefs(_BaseModel):
    default_t: int | None = Field(default=None, alias="defaultT")
    default_z: int | None = Field(default=None, alias="defaultZ")
    model: str | None = Field(default=None, description="'color' or 'greyscale'.")


class Omero(_BaseModel):
    """Transitional ``omero`` rendering metadata of an image group."""

    id: int | str | None = None
    name: str | None = None
    version: str | None = None
    channels: list[OmeroChannel] = Field(default_factory=list)
    rdefs: OmeroRenderingDefs | None = None
