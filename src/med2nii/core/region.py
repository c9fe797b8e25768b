"""Axis-aligned inclusive bounding boxes."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from med2nii.core.volume import Volume3D


@dataclass(frozen=True)
class Region3D:
    """Bounding box with inclusive min/max bounds on every axis.

    A region is empty when ``min > max`` on any axis. The canonical empty
    region is ``(0, 0, 0, -1, -1, -1)`` so arithmetic on it stays small.
    """

    min_x: int | float
    min_y: int | float
    min_z: int | float
    max_x: int | float
    max_y: int | float
    max_z: int | float

    @classmethod
    def empty(cls) -> Region3D:
        return cls(0, 0, 0, -1, -1, -1)

    @property
    def is_empty(self) -> bool:
        return self.min_x > self.max_x or self.min_y > self.max_y or self.min_z > self.max_z

    def length_x(self):
        return _length(self.min_x, self.max_x)

    def length_y(self):
        return _length(self.min_y, self.max_y)

    def length_z(self):
        return _length(self.min_z, self.max_z)

    def size(self):
        """Number of voxels inside the region, 0 when empty."""
        if self.is_empty:
            return 0
        return self.length_x() * self.length_y() * self.length_z()

    def contains_point(self, x, y, z) -> bool:
        return (
            self.min_x <= x <= self.max_x
            and self.min_y <= y <= self.max_y
            and self.min_z <= z <= self.max_z
        )

    def inside_of(self, other: Region3D) -> bool:
        """True when this region lies fully within ``other``."""
        if self.is_empty or other.is_empty:
            raise ValueError("Containment is undefined for empty regions")
        return (
            other.min_x <= self.min_x
            and other.min_y <= self.min_y
            and other.min_z <= self.min_z
            and self.max_x <= other.max_x
            and self.max_y <= other.max_y
            and self.max_z <= other.max_z
        )

    def dilate(self, volume: Volume3D, mm_x: float, mm_y: float, mm_z: float) -> Region3D:
        """Grow by a physical margin, rounded up to whole voxels and clamped to ``volume``."""
        if self.is_empty:
            return self.clone()
        sx, sy, sz = volume.spacing
        dx = int(math.ceil(mm_x / sx))
        dy = int(math.ceil(mm_y / sy))
        dz = int(math.ceil(mm_z / sz))
        return Region3D(
            max(0, self.min_x - dx),
            max(0, self.min_y - dy),
            max(0, self.min_z - dz),
            min(volume.dim_x - 1, self.max_x + dx),
            min(volume.dim_y - 1, self.max_y + dy),
            min(volume.dim_z - 1, self.max_z + dz),
        )

    def union(self, other: Region3D) -> Region3D:
        """Smallest region containing both; empty operands are ignored."""
        if self.is_empty:
            return other.clone()
        if other.is_empty:
            return self.clone()
        return Region3D(
            min(self.min_x, other.min_x),
            min(self.min_y, other.min_y),
            min(self.min_z, other.min_z),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y),
            max(self.max_z, other.max_z),
        )

    def intersection(self, other: Region3D) -> Region3D:
        result = Region3D(
            max(self.min_x, other.min_x),
            max(self.min_y, other.min_y),
            max(self.min_z, other.min_z),
            min(self.max_x, other.max_x),
            min(self.max_y, other.max_y),
            min(self.max_z, other.max_z),
        )
        return Region3D.empty() if result.is_empty else result

    def override_z(self, min_z, max_z) -> Region3D:
        return replace(self, min_z=min_z, max_z=max_z)

    def clone(self) -> Region3D:
        return replace(self)

    def __str__(self) -> str:
        if self.is_empty:
            return "Region3D(empty)"
        return (
            f"Region3D(x: {self.min_x}..{self.max_x}, "
            f"y: {self.min_y}..{self.max_y}, z: {self.min_z}..{self.max_z})"
        )


def _length(minimum, maximum):
    length = maximum - minimum + 1
    return length if length > 0 else 0
