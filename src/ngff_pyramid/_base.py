from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict

__all__ = ["_BaseModel"]


class _BaseModel(BaseModel):
    """Lenient base for every attribute model read from a store.

    Unknown keys are ignored, so vendor extensions next to the OME-NGFF keys
    never make a block invalid.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        validate_assignment=True,
        validate_default=True,
        validate_by_name=True,
        serialize_by_alias=True,
    )

