"""Nearest, trilinear and B-spline resampling between voxel grids.

All strategies share one driver, ``resample_image``, which maps every output
voxel to a fractional input voxel position with the composed affine
``input.dicom_to_data * output.data_to_dicom`` and evaluates the interpolant
there. Output Z-slabs are filled in parallel; each worker writes only its own
contiguous part of the output buffer.

Boundary policy (both nearest and linear):
    - a position outside ``[-0.5, dim - 0.5)`` on any axis gets ``outside_value``;
    - linear positions inside ``[0, dim - 1)`` on every axis use the full
      8-corner trilinear blend;
    - linear positions in the band between the two drop the fraction of the
      out-of-range axis (and snap a negative index to 0), so only valid corners
      contribute.
"""

from __future__ import annotations

import logging
from enum import Enum

import numpy as np
from scipy import ndimage

from med2nii.core.errors import InvalidResampleDimensionError, VolumeSizeMismatchError
from med2nii.core.geometry import Point3D
from med2nii.core.volume import Volume3D
from med2nii.ops.intensity import round_half_away_from_zero
from med2nii.ops.parallel import map_slabs

logger = logging.getLogger("med2nii")

SPACING_DECIMALS = 5


class Interpolation(Enum):
    NEAREST = "nearest"
    LINEAR = "linear"
    BSPLINE = "bspline"


class RoundingMode(Enum):
    """How fractional results are stored into integer voxel types."""

    HALF_EVEN = "half_even"
    HALF_AWAY_FROM_ZERO = "half_away_from_zero"


def resampled_spacing(in_spacing: float, in_dim: int, out_dim: int) -> float:
    """Spacing that keeps the first and last voxel centres fixed."""
    if out_dim < 2:
        raise InvalidResampleDimensionError(
            f"Cannot resample to a dimension of {out_dim}, at least 2 voxels are needed"
        )
    return in_spacing * (in_dim - 1) / (out_dim - 1)


def _allocate_output(volume: Volume3D, dim_x: int, dim_y: int, dim_z: int) -> Volume3D:
    spacing = (
        resampled_spacing(volume.spacing_x, volume.dim_x, dim_x),
        resampled_spacing(volume.spacing_y, volume.dim_y, dim_y),
        resampled_spacing(volume.spacing_z, volume.dim_z, dim_z),
    )
    return Volume3D(
        np.zeros(dim_x * dim_y * dim_z, dtype=volume.dtype),
        dim_x,
        dim_y,
        dim_z,
        spacing,
        volume.origin,
        volume.direction,
    )


def resample_nearest(
    volume: Volume3D, dim_x: int, dim_y: int, dim_z: int, outside_value=0, workers: int | None = None
) -> Volume3D:
    output = _allocate_output(volume, dim_x, dim_y, dim_z)
    resample_image(volume, output, outside_value, Interpolation.NEAREST, workers=workers)
    return output


def resample_linear(
    volume: Volume3D,
    dim_x: int,
    dim_y: int,
    dim_z: int,
    outside_value=0,
    rounding: RoundingMode = RoundingMode.HALF_EVEN,
    workers: int | None = None,
) -> Volume3D:
    output = _allocate_output(volume, dim_x, dim_y, dim_z)
    resample_image(volume, output, outside_value, Interpolation.LINEAR, rounding, workers)
    return output


def resample_image(
    input_volume: Volume3D,
    output: Volume3D,
    outside_value=0,
    interpolation: Interpolation = Interpolation.NEAREST,
    rounding: RoundingMode = RoundingMode.HALF_EVEN,
    workers: int | None = None,
) -> None:
    """Fill the already-allocated ``output`` grid from ``input_volume``."""
    output_to_input = input_volume.transform.dicom_to_data * output.transform.data_to_dicom
    basis = output_to_input.basis.data
    shift = output_to_input.origin.to_array()
    out_voxels = output.voxels
    dims = np.array(input_volume.dims)

    def fill_slab(start: int, stop: int) -> None:
        z, y, x = np.meshgrid(
            np.arange(start, stop, dtype=np.float64),
            np.arange(output.dim_y, dtype=np.float64),
            np.arange(output.dim_x, dtype=np.float64),
            indexing="ij",
        )
        px = basis[0, 0] * x + basis[0, 1] * y + basis[0, 2] * z + shift[0]
        py = basis[1, 0] * x + basis[1, 1] * y + basis[1, 2] * z + shift[1]
        pz = basis[2, 0] * x + basis[2, 1] * y + basis[2, 2] * z + shift[2]
        if interpolation is Interpolation.NEAREST:
            values = _nearest(input_volume, px, py, pz, outside_value)
        elif interpolation is Interpolation.LINEAR:
            values = _linear(input_volume, dims, px, py, pz, outside_value)
        else:
            values = _bspline(input_volume, px, py, pz, outside_value)
        out_voxels[start:stop] = _store(values, output.dtype, rounding)

    map_slabs(fill_slab, output.dim_z, output.dim_xy, workers)


def _outside(volume: Volume3D, px, py, pz) -> np.ndarray:
    return (
        (px < -0.5)
        | (py < -0.5)
        | (pz < -0.5)
        | (px >= volume.dim_x - 0.5)
        | (py >= volume.dim_y - 0.5)
        | (pz >= volume.dim_z - 0.5)
    )


def _nearest(volume: Volume3D, px, py, pz, outside_value) -> np.ndarray:
    outside = _outside(volume, px, py, pz)
    # Positions are >= -0.5 once the outside ones are masked, so truncation is floor.
    xi = np.where(outside, 0, (px + 0.5).astype(np.int64))
    yi = np.where(outside, 0, (py + 0.5).astype(np.int64))
    zi = np.where(outside, 0, (pz + 0.5).astype(np.int64))
    values = volume.array[xi + yi * volume.dim_x + zi * volume.dim_xy]
    fill = _store(np.asarray([outside_value], dtype=np.float64), values.dtype, RoundingMode.HALF_EVEN)[0]
    return np.where(outside, fill, values)


def _axis_weights(p: np.ndarray, dim: int):
    """Integer base index and upper-corner fraction along one axis."""
    base = np.trunc(p).astype(np.int64)
    frac = p - base
    below = p < 0
    frac = np.where(below | (p > dim - 1), 0.0, frac)
    base = np.where(below, 0, base)
    base = np.clip(base, 0, dim - 1)
    upper = np.minimum(base + 1, dim - 1)
    return base, upper, frac


def _linear(volume: Volume3D, dims, px, py, pz, outside_value) -> np.ndarray:
    outside = _outside(volume, px, py, pz)
    x0, x1, fx = _axis_weights(px, int(dims[0]))
    y0, y1, fy = _axis_weights(py, int(dims[1]))
    z0, z1, fz = _axis_weights(pz, int(dims[2]))
    data = volume.array
    dim_x = volume.dim_x
    dim_xy = volume.dim_xy

    def at(xi, yi, zi):
        return data[xi + yi * dim_x + zi * dim_xy].astype(np.float64)

    gx = 1.0 - fx
    gy = 1.0 - fy
    gz = 1.0 - fz
    value = (
        at(x0, y0, z0) * gx * gy * gz
        + at(x1, y0, z0) * fx * gy * gz
        + at(x0, y1, z0) * gx * fy * gz
        + at(x0, y0, z1) * gx * gy * fz
        + at(x1, y0, z1) * fx * gy * fz
        + at(x0, y1, z1) * gx * fy * fz
        + at(x1, y1, z0) * fx * fy * gz
        + at(x1, y1, z1) * fx * fy * fz
    )
    return np.where(outside, float(outside_value), value)


def _bspline(volume: Volume3D, px, py, pz, outside_value) -> np.ndarray:
    outside = _outside(volume, px, py, pz)
    coords = np.stack([pz.ravel(), py.ravel(), px.ravel()])
    values = ndimage.map_coordinates(
        volume.voxels.astype(np.float64), coords, order=3, mode="nearest"
    ).reshape(px.shape)
    return np.where(outside, float(outside_value), values)


def _store(values: np.ndarray, dtype: np.dtype, rounding: RoundingMode) -> np.ndarray:
    if np.issubdtype(dtype, np.integer) and np.issubdtype(values.dtype, np.floating):
        if rounding is RoundingMode.HALF_EVEN:
            values = np.rint(values)
        else:
            values = round_half_away_from_zero(values)
        info = np.iinfo(dtype)
        values = np.clip(values, info.min, info.max)
    return values.astype(dtype, copy=False)


def values_in_corners(volume: Volume3D) -> list:
    """The eight corner voxel values, X outermost as the registration default uses them."""
    result = []
    for x in (0, volume.dim_x - 1):
        for y in (0, volume.dim_y - 1):
            for z in (0, volume.dim_z - 1):
                result.append(volume[x, y, z].item())
    return result


def resample_onto(
    reference: Volume3D,
    moving: Volume3D,
    interpolation: Interpolation,
    default_value=None,
    workers: int | None = None,
) -> Volume3D:
    """Resample ``moving`` onto the grid of ``reference``, keeping the moving dtype.

    Reference voxels not covered by ``moving`` get ``default_value``, which
    defaults to the mean of the moving volume's corner voxels.
    """
    if default_value is None:
        default_value = float(np.mean(values_in_corners(moving)))
    output = reference.create_same_size(dtype=moving.dtype)
    if np.issubdtype(moving.dtype, np.integer):
        default_value = _store(
            np.asarray([default_value], dtype=np.float64), moving.dtype, RoundingMode.HALF_EVEN
        )[0]
    resample_image(moving, output, default_value, interpolation, workers=workers)
    if not output.same_geometry(reference):
        raise VolumeSizeMismatchError("Resampled volume does not match the reference geometry")
    return output


def round_spacing(spacing: float) -> float:
    return round(spacing, SPACING_DECIMALS)


def calculate_standardised_dimension(
    volume: Volume3D, desired_spacing
) -> tuple[int, int, int]:
    """Grid size that brings ``volume`` to ``desired_spacing``; ``<= 0`` keeps an axis."""
    if desired_spacing is None:
        raise ValueError("Desired spacing must be given")
    desired = [float(s) for s in desired_spacing]
    if len(desired) != 3:
        raise ValueError("Spacing must be given as 3 values")
    rounded = [round_spacing(s) for s in volume.spacing]
    if tuple(rounded) != tuple(volume.spacing):
        logger.info(
            f"Rounding the spacing from {tuple(volume.spacing)} to {tuple(rounded)}"
        )
    dims = []
    for in_dim, spacing, wanted in zip(volume.dims, rounded, desired):
        dims.append(in_dim if wanted <= 0 else 1 + int(spacing / wanted * (in_dim - 1)))
    return dims[0], dims[1], dims[2]


def standardise_nearest(volume: Volume3D, spacing, workers: int | None = None) -> Volume3D:
    """Bring a mask to ``spacing`` with nearest-neighbour resampling."""
    dim_x, dim_y, dim_z = calculate_standardised_dimension(volume, spacing)
    return resample_nearest(volume, dim_x, dim_y, dim_z, workers=workers)


def standardise_linear(volume: Volume3D, spacing, workers: int | None = None) -> Volume3D:
    """Bring a scan to ``spacing`` with trilinear resampling."""
    dim_x, dim_y, dim_z = calculate_standardised_dimension(volume, spacing)
    return resample_linear(volume, dim_x, dim_y, dim_z, workers=workers)


def point_to_input_pixel(input_volume: Volume3D, output: Volume3D, x: int, y: int, z: int) -> Point3D:
    """Input pixel position an output voxel samples from (diagnostics and tests)."""
    return input_volume.transform.physical_to_pixel(
        output.transform.pixel_to_physical(Point3D(x, y, z))
    )
