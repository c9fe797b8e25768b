"""Per-subject statistics over the structures of a converted dataset.

Every value is a ``StatisticValue(statistic, structure1, structure2, value)``;
single-structure statistics repeat the structure name. Besides structure
names, ``space`` (the whole image) and ``background`` (no structure) appear.

Single-structure statistics:
    Vol             volume in cm3
    [XYZ]sz         extent in mm (max - min); once per subject also for ``space``
    [XYZ]lo/md/hi   offset of the structure's min/mid/max from the space's
    [XYZ]tb         voxel count in the first and last layer of the image
    [XYZ]mi         layers without voxels between the first and last layer that have some
    [XYZ]fl/fh      voxels in the lowest/highest layer over the mean voxels per layer
    [XYZ][du]h      step-down/step-up entropy ratio; low values hint at flat faces
    Com             compactness: volume over the volume of the bounding ellipsoid
    Sph             sphericality: RMS radius of a same-volume sphere over the actual RMS radius
    Imu, Isd        mean and standard deviation of the scan inside the structure

Pairwise statistics:
    Ovr             overlapping voxels over the voxel count of the smaller structure
    [XYZ]lo/md/hi   difference of min/mid/max between the two structures
    [XYZ]de         max of one structure minus min of the other
    [XYZ]rc         coordinate ROC; near 0 or 1 when the structures are well separated
    Irc             intensity ROC; above 0.5 when the second structure is brighter
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
from scipy.stats import rankdata

from med2nii.core.errors import VolumeSizeMismatchError
from med2nii.core.region import Region3D
from med2nii.core.volume import Volume3D
from med2nii.ops.regions import get_interest_region

EXTERNAL = "external"
SPACE = "space"
BACKGROUND = "background"

# (name, axis of the [Z, Y, X] view)
_DIMENSIONS = (("X", 2), ("Y", 1), ("Z", 0))

STATISTIC_COLUMNS = ["subject", "statistic", "structure1", "structure2", "value"]


@dataclass(frozen=True)
class StatisticValue:
    statistic: str
    structure1: str
    structure2: str
    value: float

    @classmethod
    def single(cls, statistic: str, structure: str, value: float) -> StatisticValue:
        return cls(statistic, structure, structure, value)

    def to_record(self, subject: int) -> tuple[int, str, str, str, float]:
        return subject, self.statistic, self.structure1, self.structure2, float(self.value)


@dataclass
class _Extremes:
    """Bounds of a structure in mm, plus its shape measures."""

    minimum: dict[str, float]
    maximum: dict[str, float]
    compactness: float
    sphericality: float


def mean_and_sd(values: np.ndarray) -> tuple[float, float] | None:
    """Sample mean and standard deviation; None for fewer than 3 values."""
    values = np.asarray(values, dtype=np.float64)
    n = values.size
    if n <= 2:
        return None
    mu = float(values.mean())
    sd = math.sqrt(max(float((values * values).sum()) - n * mu * mu, 0.0) / (n - 1))
    return mu, sd


def entropy_ratio(hist: np.ndarray) -> float:
    """Entropy of the counts above 1, relative to the maximum for this many bins.

    Returns -1 when the ratio does not exist.
    """
    hist = np.asarray(hist)
    if hist.size < 2:
        return -1.0
    counts = hist[hist > 1].astype(np.float64)
    total = counts.sum()
    if total == 0:
        return -1.0
    entropy = math.log(total) - float((counts * np.log(counts)).sum()) / total
    return entropy / math.log(hist.size)


def histogram_roc(hist1: np.ndarray, hist2: np.ndarray) -> float:
    """Probability that a sample of the second histogram lies above one of the first."""
    hist1 = np.asarray(hist1, dtype=np.float64)
    hist2 = np.asarray(hist2, dtype=np.float64)
    before = np.concatenate(([0.0], np.cumsum(hist1)[:-1]))
    num = float((hist2 * (before + 0.5 * hist1)).sum())
    return num / (hist1.sum() * hist2.sum())


def intensity_roc(values1: np.ndarray, values2: np.ndarray) -> float:
    """Mann-Whitney AUC of ``values2`` against ``values1``; ties count half. -1 if either is empty."""
    if values1 is None or values2 is None or len(values1) == 0 or len(values2) == 0:
        return -1.0
    n1 = len(values1)
    n2 = len(values2)
    ranks = rankdata(np.concatenate([values1, values2]))
    u2 = ranks[n1:].sum() - n2 * (n2 + 1) / 2.0
    return float(u2 / (n1 * n2))


def _extremes(mask: np.ndarray, region: Region3D, spacing: tuple[float, float, float]) -> _Extremes:
    sx, sy, sz = spacing
    minimum = {"X": region.min_x * sx, "Y": region.min_y * sy, "Z": region.min_z * sz}
    maximum = {"X": region.max_x * sx, "Y": region.max_y * sy, "Z": region.max_z * sz}
    zi, yi, xi = np.nonzero(mask)
    points = np.stack([xi * sx, yi * sy, zi * sz], axis=1)
    count = len(points)
    volume = count * sx * sy * sz
    ellipsoid = (
        (sx + maximum["X"] - minimum["X"])
        * (sy + maximum["Y"] - minimum["Y"])
        * (sz + maximum["Z"] - minimum["Z"])
        * math.pi
        / 6
    )
    centroid = points.mean(axis=0)
    variance = float((points * points).sum()) / count - float(centroid @ centroid)
    sigma = math.sqrt(max(variance, 0.0))
    sigma_if_sphere = 0.6 * (3 * volume / (4 * math.pi)) ** (1.0 / 3.0)
    sphericality = sigma_if_sphere / sigma if sigma > 0 else math.inf
    return _Extremes(minimum, maximum, volume / ellipsoid, sphericality)


def _step_entropy_statistics(name: str, mask: np.ndarray, region: Region3D) -> list[StatisticValue]:
    crop = mask[
        region.min_z : region.max_z + 1,
        region.min_y : region.max_y + 1,
        region.min_x : region.max_x + 1,
    ]
    result = []
    for dim, axis in _DIMENSIONS:
        following = np.zeros_like(crop)
        preceding = np.zeros_like(crop)
        n = crop.shape[axis]
        take = [slice(None)] * 3
        put = [slice(None)] * 3
        take[axis], put[axis] = slice(1, n), slice(0, n - 1)
        following[tuple(put)] = crop[tuple(take)]
        preceding[tuple(take)] = crop[tuple(put)]
        others = tuple(a for a in range(3) if a != axis)
        for suffix, steps in (("dh", crop & ~following), ("uh", crop & ~preceding)):
            ratio = entropy_ratio(steps.sum(axis=others))
            if ratio >= 0:
                result.append(StatisticValue.single(f"{dim}{suffix}", name, ratio))
    return result


def size_statistics(names: list[str], masks: list[Volume3D]) -> list[StatisticValue]:
    """Volume, layer and overlap statistics over masks that share one grid."""
    if not masks:
        return []
    first = masks[0]
    mm3 = first.voxel_volume()
    binaries = [m.voxels > 0 for m in masks]
    counts = [int(np.count_nonzero(b)) for b in binaries]
    result = []
    for u, name in enumerate(names):
        result.append(StatisticValue.single("Vol", name, 0.001 * mm3 * counts[u]))
        if counts[u] == 0:
            continue
        for dim, axis in _DIMENSIONS:
            others = tuple(a for a in range(3) if a != axis)
            layers = binaries[u].sum(axis=others)
            filled = np.nonzero(layers)[0]
            low, high = int(filled[0]), int(filled[-1])
            result.append(StatisticValue.single(f"{dim}tb", name, int(layers[0] + layers[-1])))
            missing = (high - low + 1) - len(filled)
            if missing > 0:
                result.append(StatisticValue.single(f"{dim}mi", name, missing))
            mean_per_layer = counts[u] / (high - low + 1.0)
            result.append(StatisticValue.single(f"{dim}fl", name, layers[low] / mean_per_layer))
            result.append(StatisticValue.single(f"{dim}fh", name, layers[high] / mean_per_layer))
        for v in range(u + 1, len(names)):
            if counts[v] == 0 or EXTERNAL in (name, names[v]):
                continue
            overlap = int(np.count_nonzero(binaries[u] & binaries[v]))
            if overlap > 0:
                result.append(StatisticValue("Ovr", name, names[v], overlap / min(counts[u], counts[v])))
    return result


def _pair_offsets(
    dim: str, values1: _Extremes, values2: _Extremes, name1: str, name2: str
) -> list[StatisticValue]:
    min1, max1 = values1.minimum[dim], values1.maximum[dim]
    min2, max2 = values2.minimum[dim], values2.maximum[dim]
    mid1 = (min1 + max1) / 2
    mid2 = (min2 + max2) / 2
    result = []
    if name2 == EXTERNAL:
        result.append(StatisticValue(f"{dim}lo", name2, name1, min1 - min2))
    else:
        result.append(StatisticValue(f"{dim}lo", name1, name2, min2 - min1))
    result.append(StatisticValue(f"{dim}md", name1, name2, mid2 - mid1))
    if name1 == EXTERNAL:
        result.append(StatisticValue(f"{dim}hi", name2, name1, max1 - max2))
    else:
        result.append(StatisticValue(f"{dim}hi", name1, name2, max2 - max1))
    if EXTERNAL not in (name1, name2):
        result.append(StatisticValue(f"{dim}de", name1, name2, max2 - min1))
        result.append(StatisticValue(f"{dim}de", name2, name1, max1 - min2))
    return result


def structure_statistics(
    names: list[str],
    masks: list[Volume3D],
    image: Volume3D | None = None,
    pairwise_external: bool = False,
) -> list[StatisticValue]:
    """Offset, shape, intensity and pairwise statistics of the structures."""
    if not masks:
        return []
    first = masks[0]
    spacing = first.spacing
    space_size = {dim: spacing[i] * (first.dims[i] - 1) for i, (dim, _) in enumerate(_DIMENSIONS)}
    binaries = [m.voxels > 0 for m in masks]
    regions = [get_interest_region(m) for m in masks]
    extremes = [
        None if region.is_empty else _extremes(b, region, spacing)
        for b, region in zip(binaries, regions)
    ]
    intensities = None
    result = []
    if image is not None:
        scan = image.voxels
        intensities = [scan[b] for b in binaries]
        space = mean_and_sd(scan.ravel())
        if space is not None:
            result.append(StatisticValue.single("Imu", SPACE, space[0]))
            result.append(StatisticValue.single("Isd", SPACE, space[1]))
        outside = ~np.logical_or.reduce(binaries)
        background = mean_and_sd(scan[outside])
        if background is not None:
            result.append(StatisticValue.single("Imu", BACKGROUND, background[0]))
            result.append(StatisticValue.single("Isd", BACKGROUND, background[1]))

    done_space = False
    for i, name1 in enumerate(names):
        values1 = extremes[i]
        if values1 is None:
            continue
        for dim, _ in _DIMENSIONS:
            if not done_space:
                result.append(StatisticValue.single(f"{dim}sz", SPACE, space_size[dim]))
            low, high = values1.minimum[dim], values1.maximum[dim]
            result.append(StatisticValue.single(f"{dim}sz", name1, high - low))
            result.append(StatisticValue(f"{dim}lo", SPACE, name1, low))
            result.append(StatisticValue(f"{dim}md", SPACE, name1, (low + high) / 2 - space_size[dim] / 2))
            result.append(StatisticValue(f"{dim}hi", name1, SPACE, space_size[dim] - high))
        done_space = True
        if intensities is not None:
            msd = mean_and_sd(intensities[i])
            if msd is not None:
                result.append(StatisticValue.single("Imu", name1, msd[0]))
                result.append(StatisticValue.single("Isd", name1, msd[1]))
        result.append(StatisticValue.single("Com", name1, values1.compactness))
        result.append(StatisticValue.single("Sph", name1, values1.sphericality))
        result.extend(_step_entropy_statistics(name1, binaries[i], regions[i]))
        if name1 == EXTERNAL and not pairwise_external:
            continue
        for j in range(i + 1, len(names)):
            name2 = names[j]
            values2 = extremes[j]
            if values2 is None or (name2 == EXTERNAL and not pairwise_external):
                continue
            for dim, _ in _DIMENSIONS:
                result.extend(_pair_offsets(dim, values1, values2, name1, name2))
            if intensities is not None:
                roc = intensity_roc(intensities[i], intensities[j])
                if roc >= 0:
                    result.append(StatisticValue("Irc", name1, name2, roc))
            for dim, axis in _DIMENSIONS:
                others = tuple(a for a in range(3) if a != axis)
                roc = histogram_roc(binaries[i].sum(axis=others), binaries[j].sum(axis=others))
                result.append(StatisticValue(f"{dim}rc", name1, name2, roc))
    return result


def analyze_subject_volumes(
    image: Volume3D | None,
    names: list[str],
    masks: list[Volume3D],
    pairwise_external: bool = False,
) -> list[StatisticValue]:
    """All statistics for one subject: size statistics first, then the rest."""
    if not masks:
        return []
    for name, mask in zip(names, masks):
        if mask.dims != masks[0].dims:
            raise VolumeSizeMismatchError(f"Structure '{name}' has size {mask.dims}, expected {masks[0].dims}")
    if image is not None and image.dims != masks[0].dims:
        raise VolumeSizeMismatchError(f"The scan has size {image.dims}, the structures {masks[0].dims}")
    return [
        *size_statistics(names, masks),
        *structure_statistics(names, masks, image, pairwise_external),
    ]
