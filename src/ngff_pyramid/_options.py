from __future__ import annotations

from pydantic import Field

from ._base import _BaseModel
from ._util import env_flag

__all__ = ["LIST_PIXELS_ENV", "ReaderOptions"]

LIST_PIXELS_ENV = "OME_ZARR_LIST_PIXELS"


def _list_pixels_default() -> bool:
    return env_flag(LIST_PIXELS_ENV, default=True)


class ReaderOptions(_BaseModel):
    """Options controlling how a store is opened and enumerated.

    Set ``OME_ZARR_LIST_PIXELS=0`` to change the default of `list_pixels`.
    """

    save_attributes: bool = Field(
        default=False,
        description="Record every non-empty attribute map as a JSON annotation.",
    )
    list_pixels: bool = Field(
        default_factory=_list_pixels_default,
        description="Include chunk files when listing the files of a store.",
    )
    quick_read: bool = Field(
        default=False,
        description=(
            "Assume resolution level r of every image has the shape of level r "
            "of the first image, instead of opening each array."
        ),
    )
    verify_quick_read: bool = Field(
        default=False,
        description="Still open each array under quick_read and warn on mismatch.",
    )
    include_labels: bool = Field(
        default=False,
        description="Expose images below 'labels' groups as series.",
    )
    alt_store: str | None = Field(
        default=None,
        description="Read pixels and attributes from this root instead.",
    )
    flatten_resolutions: bool = Field(
        default=False,
        description="Expose every resolution level as its own series.",
    )
