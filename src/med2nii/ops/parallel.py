"""Z-slab partitioning for data-parallel volume kernels.

Each worker receives a disjoint ``[start, stop)`` range of slices and writes
only its own part of the output, so no locking is needed. Per-worker results
are returned in slab order for the caller to reduce.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

T = TypeVar("T")

# Below this many voxels per volume the thread pool costs more than it saves.
_MIN_PARALLEL_VOXELS = 1 << 16


def default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


def z_slabs(dim_z: int, workers: int) -> list[tuple[int, int]]:
    """Split ``range(dim_z)`` into at most ``workers`` contiguous slabs."""
    if dim_z <= 0:
        return []
    workers = max(1, min(workers, dim_z))
    base, extra = divmod(dim_z, workers)
    slabs = []
    start = 0
    for i in range(workers):
        stop = start + base + (1 if i < extra else 0)
        slabs.append((start, stop))
        start = stop
    return slabs


def map_slabs(
    func: Callable[[int, int], T],
    dim_z: int,
    voxels_per_slice: int = 0,
    workers: int | None = None,
) -> list[T]:
    """Run ``func(start, stop)`` over Z-slabs, in parallel when worthwhile."""
    workers = default_workers() if workers is None else max(1, workers)
    if workers == 1 or dim_z * voxels_per_slice < _MIN_PARALLEL_VOXELS:
        return [func(0, dim_z)] if dim_z > 0 else []
    slabs = z_slabs(dim_z, workers)
    with ThreadPoolExecutor(max_workers=len(slabs)) as pool:
        futures = [pool.submit(func, start, stop) for start, stop in slabs]
        return [f.result() for f in futures]
