"""Binary mask operations written as ``"left.op.right"`` expressions.

Crop operators keep the part of ``left`` that lies above or below ``right``
along Z; set operators combine the two masks voxel by voxel.

    ``a.gt.b``            a strictly above the top slice of b
    ``a.ge.b``            a from the top slice of b upwards
    ``a.lt.b``            a strictly below the bottom slice of b
    ``a.le.b``            a from the bottom slice of b downwards
    ``a.intersection.b``  voxels in both
    ``a.union.b``         voxels in either
    ``a.minus.b``         voxels in a but not in b
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

import numpy as np

from med2nii.core.errors import MissingStructureError, VolumeSizeMismatchError
from med2nii.core.volume import MASK_BACKGROUND, Volume3D
from med2nii.ops.parallel import map_slabs
from med2nii.ops.regions import get_interest_region


class StructureOperationKind(Enum):
    ABOVE = "gt"
    NOT_BELOW = "ge"
    BELOW = "lt"
    NOT_ABOVE = "le"
    INTERSECTION = "intersection"
    UNION = "union"
    MINUS = "minus"

    @property
    def is_crop(self) -> bool:
        return self in _CROP_KINDS


_CROP_KINDS = frozenset(
    {
        StructureOperationKind.ABOVE,
        StructureOperationKind.NOT_BELOW,
        StructureOperationKind.BELOW,
        StructureOperationKind.NOT_ABOVE,
    }
)

_OPERATORS = {kind.value: kind for kind in StructureOperationKind}


@dataclass(frozen=True)
class StructureOperation:
    left: str
    kind: StructureOperationKind
    right: str

    def __str__(self) -> str:
        return f"{self.left}.{self.kind.value}.{self.right}"

    def apply(self, structures: Mapping[str, Volume3D], workers: int | None = None) -> Volume3D:
        """Compute the result as a new mask; the inputs are left untouched."""
        for name in (self.left, self.right):
            if name not in structures:
                raise MissingStructureError(f"No structure named '{name}' for operation '{self}'")
        volume1 = structures[self.left]
        volume2 = structures[self.right]
        if volume1.dims != volume2.dims:
            raise VolumeSizeMismatchError(
                f"Operation '{self}': '{self.left}' has size {volume1.dims}, "
                f"'{self.right}' has size {volume2.dims}"
            )
        region1 = get_interest_region(volume1, workers=workers)
        region2 = get_interest_region(volume2, workers=workers)
        result = volume1.copy()
        if self.kind.is_crop:
            _crop(result, region1, region2, self.kind)
            return result

        if self.kind is StructureOperationKind.UNION:
            region = region2
            combine = np.bitwise_or
        elif self.kind is StructureOperationKind.INTERSECTION:
            region = region1
            combine = np.bitwise_and
        else:
            region = region1

            def combine(a, b):
                return a & (1 - b)

        if region.is_empty:
            return result
        a = volume1.voxels
        b = volume2.voxels
        out = result.voxels
        ys = slice(region.min_y, region.max_y + 1)
        xs = slice(region.min_x, region.max_x + 1)

        def patch(start: int, stop: int) -> None:
            zs = slice(region.min_z + start, region.min_z + stop)
            out[zs, ys, xs] = combine(a[zs, ys, xs], b[zs, ys, xs])

        map_slabs(patch, region.length_z(), region.length_x() * region.length_y(), workers)
        return result


def _crop(result: Volume3D, region1, region2, kind: StructureOperationKind) -> None:
    """Zero a Z-slab of ``result`` over the XY extent of ``region1``.

    An empty ``region2`` leaves nothing to be above or below, so every crop
    operator, ``lt`` and ``le`` included, keeps the left mask whole instead of
    clearing from the bottom slice.
    """
    if region1.is_empty:
        return
    clear_min = region1.min_z
    clear_max = region1.max_z
    if region2.is_empty:
        return
    if kind is StructureOperationKind.ABOVE:
        clear_max = region2.max_z
    elif kind is StructureOperationKind.NOT_BELOW:
        clear_max = region2.max_z - 1
    elif kind is StructureOperationKind.BELOW:
        clear_min = region2.min_z
    else:
        clear_min = region2.min_z + 1
    clear_min = max(clear_min, 0)
    clear_max = min(clear_max, result.dim_z - 1)
    if clear_min > clear_max:
        return
    result.voxels[
        clear_min : clear_max + 1,
        region1.min_y : region1.max_y + 1,
        region1.min_x : region1.max_x + 1,
    ] = MASK_BACKGROUND


def parse_structure_operation(expr: str) -> StructureOperation | None:
    """Parse ``"left.op.right"``; anything else (including plain names) gives None."""
    fields = expr.split(".")
    if len(fields) == 3 and fields[1] in _OPERATORS:
        return StructureOperation(fields[0], _OPERATORS[fields[1]], fields[2])
    return None
