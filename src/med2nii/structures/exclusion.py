"""Priority-based mutual exclusion of structure masks.

Given structure names in descending priority, every voxel keeps at most one
foreground structure from the list: the first one (in priority order) that is
foreground there. Lower-priority masks are cleared at that voxel.

Priority-list conventions:
    ``name``   take part in exclusion and keep the structure;
    ``+name``  keep the structure but leave it out of exclusion;
    ``*``      keep every structure not named elsewhere in the list.
"""

from __future__ import annotations

from typing import Mapping, Sequence

import numpy as np

from med2nii.core.types import MutualExclusionResult
from med2nii.core.volume import MASK_BACKGROUND, MASK_FOREGROUND, Volume3D
from med2nii.ops.parallel import map_slabs

WILDCARD = "*"
EXEMPT_PREFIX = "+"


def make_structures_mutually_exclusive_in_place(
    structures: Mapping[str, Volume3D],
    priority: Sequence[str],
    workers: int | None = None,
) -> MutualExclusionResult:
    """Clear lower-priority masks wherever a higher-priority mask is foreground.

    Returns the names of structures that the priority list does not accept,
    the number of voxels each (higher, lower) pair masked out, and the
    foreground voxel count left in every masked structure.
    """
    in_order = [name for name in priority if name in structures]
    masking_counts: dict[tuple[str, str], int] = {}
    remaining: dict[str, int] = {}

    if len(in_order) > 1:
        volumes = [structures[name].voxels for name in in_order]
        n = len(volumes)
        dim_z = volumes[0].shape[0]
        dim_xy = volumes[0].shape[1] * volumes[0].shape[2]

        def exclude(start: int, stop: int) -> np.ndarray:
            counts = np.zeros((n, n), dtype=np.int64)
            claimed = np.zeros(volumes[0][start:stop].shape, dtype=bool)
            for i in range(n - 1):
                winner = (volumes[i][start:stop] == MASK_FOREGROUND) & ~claimed
                if not winner.any():
                    continue
                for j in range(i + 1, n):
                    lower = volumes[j][start:stop]
                    hit = winner & (lower != MASK_BACKGROUND)
                    counts[i, j] += int(np.count_nonzero(hit))
                    lower[hit] = MASK_BACKGROUND
                claimed |= winner
            return counts

        totals = sum(map_slabs(exclude, dim_z, dim_xy, workers))
        for i in range(n - 1):
            for j in range(i + 1, n):
                count = int(totals[i, j])
                if count > 0:
                    masking_counts[(in_order[i], in_order[j])] = count
                    remaining[in_order[j]] = int(np.count_nonzero(volumes[j]))

    accepted = set(in_order)
    accepted.update(name[len(EXEMPT_PREFIX):] for name in priority if name.startswith(EXEMPT_PREFIX))
    if WILDCARD in priority:
        unrecognized = []
    else:
        unrecognized = [name for name in structures if name not in accepted]
    return MutualExclusionResult(unrecognized, masking_counts, remaining)
