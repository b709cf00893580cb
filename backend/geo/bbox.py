from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class BBox:
    """
    2-D axis-aligned bounding box.

    Convention used throughout this repo (same order as the `bbox` query param):
    - min_x, min_y, max_x, max_y
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "BBox":
        if len(values) != 4:
            raise ValueError(
                f"expected 4 coordinates (min_x, min_y, max_x, max_y), got {len(values)}"
            )
        coords = [float(v) for v in values]
        if not all(math.isfinite(c) for c in coords):
            raise ValueError("bbox coordinates must be finite numbers")
        return cls(*coords)

    def normalized(self) -> "BBox":
        min_x = min(self.min_x, self.max_x)
        max_x = max(self.min_x, self.max_x)
        min_y = min(self.min_y, self.max_y)
        max_y = max(self.min_y, self.max_y)
        return BBox(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)
