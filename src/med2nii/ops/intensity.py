"""Elementwise intensity helpers: min/max, clipping, thresholds, byte scaling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import numpy as np

from med2nii.core.volume import MASK_BACKGROUND, MASK_FOREGROUND, Volume2D, Volume3D


@dataclass(frozen=True)
class MinMax:
    minimum: float
    maximum: float

    def range(self) -> float:
        if self.minimum > self.maximum:
            raise ValueError(f"Invalid range: minimum {self.minimum} > maximum {self.maximum}")
        return self.maximum - self.minimum

    def clamp(self, value):
        return np.clip(value, self.minimum, self.maximum)


def _values(source) -> np.ndarray:
    if isinstance(source, (Volume3D, Volume2D)):
        return source.array
    return np.asarray(source)


def get_min_max(source) -> MinMax:
    """Minimum and maximum of a volume or array in one reduction."""
    values = _values(source)
    if values.size == 0:
        raise ValueError("Cannot compute min/max of an empty array")
    return MinMax(values.min().item(), values.max().item())


def minimum(source):
    return get_min_max(source).minimum


def maximum(source):
    return get_min_max(source).maximum


def get_range(values: Iterable[float]) -> MinMax | None:
    """Range of an arbitrary iterable, or None when it is empty."""
    data = np.fromiter((float(v) for v in values), dtype=np.float64)
    if data.size == 0:
        return None
    return MinMax(float(data.min()), float(data.max()))


def clip_to_range_in_place(volume: Volume3D | Volume2D, value_range: MinMax) -> None:
    value_range.range()
    volume.array[:] = np.clip(volume.array, value_range.minimum, value_range.maximum)


def threshold(volume: Volume3D, value) -> Volume3D:
    """Binary mask of voxels ``>= value``."""
    mask = np.where(volume.array >= value, MASK_FOREGROUND, MASK_BACKGROUND).astype(np.uint8)
    return volume.with_array(mask)


def round_half_away_from_zero(value):
    """Round to nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    arr = np.asarray(value, dtype=np.float64)
    result = np.sign(arr) * np.floor(np.abs(arr) + 0.5)
    return result.item() if np.ndim(result) == 0 else result


def _clamp(value, lower: int, upper: int, dtype):
    arr = np.clip(np.asarray(value, dtype=np.float64), lower, upper)
    rounded = np.asarray(round_half_away_from_zero(arr)).astype(dtype)
    return int(rounded) if rounded.ndim == 0 else rounded


def clamp_to_byte(value):
    """Saturate to [0, 255], then round half away from zero."""
    return _clamp(value, 0, 255, np.uint8)


def clamp_to_int16(value):
    """Saturate to the int16 range, then round half away from zero."""
    return _clamp(value, -32768, 32767, np.int16)


def scale_to_byte_range(volume, min_max: MinMax | None = None):
    """Linearly map ``[min, max]`` onto ``[0, 255]`` as uint8.

    Returns an all-zero image when the range is empty or inverted.
    """
    if min_max is None:
        min_max = get_min_max(volume)
    span = min_max.maximum - min_max.minimum
    if span <= 0:
        scaled = np.zeros(volume.length, dtype=np.uint8)
    else:
        scale = 255.0 / span
        scaled = clamp_to_byte((volume.array.astype(np.float64) - min_max.minimum) * scale)
    if isinstance(volume, Volume2D):
        return Volume2D(
            scaled, volume.dim_x, volume.dim_y, volume.spacing, volume.origin, volume.direction
        )
    return volume.with_array(scaled)
