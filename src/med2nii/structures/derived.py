"""Derived structures: ``result = left + right`` (union) or ``left - right`` (except)."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from med2nii.core.errors import MissingStructureError, StructureError, VolumeSizeMismatchError
from med2nii.core.types import DerivedStructure, DerivedStructureOperator
from med2nii.core.volume import MASK_BACKGROUND, MASK_FOREGROUND, Volume3D
from med2nii.structures.collection import VolumeAndStructures

__all__ = [
    "DerivedStructure",
    "DerivedStructureOperator",
    "add_derived_structures",
    "compute_derived_structure",
]


def compute_derived_structure(
    left: Volume3D, right: Volume3D, derived: DerivedStructure
) -> Volume3D:
    if left.dims != right.dims:
        raise VolumeSizeMismatchError(
            f"Structure for '{derived.left_side}' has size {left.dims}, "
            f"but '{derived.right_side}' has size {right.dims}"
        )
    left_fg = left.array != MASK_BACKGROUND
    right_fg = right.array != MASK_BACKGROUND
    if derived.operator is DerivedStructureOperator.EXCEPT:
        hit = left_fg & ~right_fg
    else:
        hit = left_fg | right_fg
    mask = np.where(hit, MASK_FOREGROUND, MASK_BACKGROUND).astype(np.uint8)
    return left.with_array(mask)


def _find(channels: Sequence[VolumeAndStructures], name: str, derived: DerivedStructure) -> Volume3D:
    found = [c.structures[name] for c in channels if name in c.structures]
    if not found:
        raise MissingStructureError(
            f"There is no structure with name '{name}', which is required to compute "
            f"the derived structure '{derived.result}'"
        )
    if len(found) > 1:
        raise StructureError(
            f"Structure '{name}' is present on more than one channel, cannot compute '{derived.result}'"
        )
    return found[0]


def add_derived_structures(
    channels: Sequence[VolumeAndStructures], derived: DerivedStructure
) -> None:
    """Compute ``derived`` from structures anywhere in the subject and add it to the first channel."""
    left = _find(channels, derived.left_side, derived)
    right = _find(channels, derived.right_side, derived)
    channels[0].add(derived.result, compute_derived_structure(left, right, derived))
