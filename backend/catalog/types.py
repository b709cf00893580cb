from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class CatalogRow(BaseModel):
    id: str
    # min_x, min_y, max_x, max_y
    bbox: list[float] = Field(min_length=4, max_length=4)
    value: Any = None


class CatalogIndex(BaseModel):
    name: str
    rows: list[CatalogRow] = Field(default_factory=list)


class CatalogDesign(BaseModel):
    """
    A design document with its spatial indexes.

    Rows are listed directly; nothing here evaluates design-document functions.
    """

    id: str
    indexes: list[CatalogIndex] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _design_prefix(cls, v: str) -> str:
        if not v.startswith("_design/"):
            return f"_design/{v}"
        return v


class CatalogDatabase(BaseModel):
    db: str
    enabled: bool = True
    designs: list[CatalogDesign] = Field(default_factory=list)
