"""Interest-region (foreground bounding box) extraction."""

from __future__ import annotations

import numpy as np

from med2nii.core.region import Region3D
from med2nii.core.volume import Volume3D
from med2nii.ops.parallel import map_slabs


def _slab_bounds(voxels: np.ndarray, threshold, start: int, stop: int):
    """Bounds of voxels ``>= threshold`` inside slices ``[start, stop)``, or None."""
    hits = voxels[start:stop] >= threshold
    z_hits = np.flatnonzero(hits.any(axis=(1, 2)))
    if z_hits.size == 0:
        return None
    y_hits = np.flatnonzero(hits.any(axis=(0, 2)))
    x_hits = np.flatnonzero(hits.any(axis=(0, 1)))
    return (
        int(x_hits[0]),
        int(y_hits[0]),
        start + int(z_hits[0]),
        int(x_hits[-1]),
        int(y_hits[-1]),
        start + int(z_hits[-1]),
    )


def get_interest_region(volume: Volume3D, threshold=1, workers: int | None = None) -> Region3D:
    """Tight bounding box of all voxels ``>= threshold``.

    Returns ``Region3D.empty()`` when no voxel qualifies.
    """
    voxels = volume.voxels
    partial = map_slabs(
        lambda start, stop: _slab_bounds(voxels, threshold, start, stop),
        volume.dim_z,
        volume.dim_xy,
        workers,
    )
    found = [b for b in partial if b is not None]
    if not found:
        return Region3D.empty()
    return Region3D(
        min(b[0] for b in found),
        min(b[1] for b in found),
        min(b[2] for b in found),
        max(b[3] for b in found),
        max(b[4] for b in found),
        max(b[5] for b in found),
    )
