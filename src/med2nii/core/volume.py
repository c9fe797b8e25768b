"""Dense voxel grids with physical geometry.

Voxels are stored in a flat numpy array with X varying fastest, then Y, then Z
(``index = x + y * dim_x + z * dim_x * dim_y``). ``Volume3D.voxels`` exposes the
same memory as a ``[Z, Y, X]`` view for vectorised code.
"""

from __future__ import annotations

from typing import Callable

import numpy as np

from med2nii.core.errors import VolumeShapeError
from med2nii.core.geometry import Matrix3, Point3D, VolumeTransform

MASK_FOREGROUND = 1
MASK_BACKGROUND = 0


class Volume:
    """Flat typed voxel buffer shared by the 2D and 3D grids."""

    def __init__(self, array: np.ndarray, dimensions: int):
        self.array = np.ascontiguousarray(array).reshape(-1)
        self.dimensions = dimensions

    @property
    def length(self) -> int:
        return int(self.array.size)

    @property
    def dtype(self) -> np.dtype:
        return self.array.dtype


class Volume3D(Volume):
    """3D voxel grid with spacing, origin and direction cosines."""

    def __init__(
        self,
        array: np.ndarray,
        dim_x: int,
        dim_y: int,
        dim_z: int,
        spacing: tuple[float, float, float] = (1.0, 1.0, 1.0),
        origin: Point3D | None = None,
        direction: Matrix3 | None = None,
    ):
        array = np.asarray(array)
        expected = int(dim_x) * int(dim_y) * int(dim_z)
        if array.size != expected:
            raise VolumeShapeError(
                f"Voxel buffer has {array.size} elements, expected "
                f"{dim_x}x{dim_y}x{dim_z} = {expected}"
            )
        super().__init__(array, 3)
        self._dims = (int(dim_x), int(dim_y), int(dim_z))
        self._spacing = tuple(float(s) for s in spacing)
        self.origin = origin if origin is not None else Point3D.zero()
        self.direction = direction if direction is not None else Matrix3.identity()
        self.transform = VolumeTransform(self._spacing, self.origin, self.direction)

    @classmethod
    def from_zyx(
        cls,
        voxels: np.ndarray,
        spacing: tuple[float, float, float] = (1.0, 1.0, 1.0),
        origin: Point3D | None = None,
        direction: Matrix3 | None = None,
    ) -> Volume3D:
        """Build from a ``[Z, Y, X]`` array."""
        if voxels.ndim != 3:
            raise VolumeShapeError(f"Expected a 3D [Z, Y, X] array, got shape {voxels.shape}")
        dim_z, dim_y, dim_x = voxels.shape
        return cls(voxels.reshape(-1), dim_x, dim_y, dim_z, spacing, origin, direction)

    # Geometry ---------------------------------------------------------------

    @property
    def dim_x(self) -> int:
        return self._dims[0]

    @property
    def dim_y(self) -> int:
        return self._dims[1]

    @property
    def dim_z(self) -> int:
        return self._dims[2]

    @property
    def dim_xy(self) -> int:
        return self._dims[0] * self._dims[1]

    @property
    def dims(self) -> tuple[int, int, int]:
        return self._dims

    @property
    def spacing(self) -> tuple[float, float, float]:
        """Return (x, y, z) spacing in mm."""
        return self._spacing

    @property
    def spacing_x(self) -> float:
        return self._spacing[0]

    @property
    def spacing_y(self) -> float:
        return self._spacing[1]

    @property
    def spacing_z(self) -> float:
        return self._spacing[2]

    @property
    def voxels(self) -> np.ndarray:
        return self.array.reshape(self.dim_z, self.dim_y, self.dim_x)

    def voxel_volume(self) -> float:
        """Physical volume of one voxel in mm^3."""
        return self.spacing_x * self.spacing_y * self.spacing_z

    def same_geometry(self, other: Volume3D, tolerance: float = 1e-6) -> bool:
        if self.dims != other.dims:
            return False
        if not np.allclose(self.spacing, other.spacing, atol=tolerance):
            return False
        if not np.allclose(self.origin.to_array(), other.origin.to_array(), atol=tolerance):
            return False
        return bool(np.allclose(self.direction.data, other.direction.data, atol=tolerance))

    # Indexing ---------------------------------------------------------------

    def get_index(self, x: int, y: int, z: int) -> int:
        if not self.is_valid(x, y, z):
            raise IndexError(f"Voxel ({x}, {y}, {z}) is outside {self.dims}")
        return x + y * self.dim_x + z * self.dim_xy

    def try_get_index(self, x: int, y: int, z: int) -> tuple[bool, int]:
        if not self.is_valid(x, y, z):
            return False, -1
        return True, x + y * self.dim_x + z * self.dim_xy

    def get_coordinates(self, index: int) -> tuple[int, int, int]:
        if index < 0 or index >= self.length:
            raise IndexError(f"Index {index} is outside a volume of {self.length} voxels")
        z, rest = divmod(index, self.dim_xy)
        y, x = divmod(rest, self.dim_x)
        return x, y, z

    def is_valid(self, x: int, y: int, z: int) -> bool:
        return 0 <= x < self.dim_x and 0 <= y < self.dim_y and 0 <= z < self.dim_z

    def is_edge_voxel(self, x: int, y: int, z: int) -> bool:
        return (
            x == 0
            or y == 0
            or z == 0
            or x == self.dim_x - 1
            or y == self.dim_y - 1
            or z == self.dim_z - 1
        )

    def __getitem__(self, key):
        if isinstance(key, tuple):
            return self.array[self.get_index(*key)]
        return self.array[key]

    def __setitem__(self, key, value) -> None:
        if isinstance(key, tuple):
            self.array[self.get_index(*key)] = value
        else:
            self.array[key] = value

    # Factories --------------------------------------------------------------

    def copy(self) -> Volume3D:
        return Volume3D(
            self.array.copy(), *self.dims, self.spacing, self.origin, self.direction
        )

    def create_same_size(self, dtype=None, fill=None) -> Volume3D:
        """New zeroed (or ``fill``-ed) volume on the same grid, optionally of another dtype."""
        dtype = self.array.dtype if dtype is None else dtype
        array = np.zeros(self.length, dtype=dtype)
        if fill is not None:
            array.fill(fill)
        return Volume3D(array, *self.dims, self.spacing, self.origin, self.direction)

    def with_array(self, array: np.ndarray) -> Volume3D:
        return Volume3D(array, *self.dims, self.spacing, self.origin, self.direction)

    def fill(self, value) -> None:
        self.array.fill(value)

    def map(self, func: Callable[[np.ndarray], np.ndarray], dtype=None) -> Volume3D:
        """Apply a vectorised function to the buffer, returning a new volume."""
        result = np.asarray(func(self.array))
        if dtype is not None:
            result = result.astype(dtype)
        return self.with_array(result)

    def slice_z(self, z: int) -> Volume2D:
        if not 0 <= z < self.dim_z:
            raise IndexError(f"Slice {z} is outside 0..{self.dim_z - 1}")
        direction = self.direction.data[:2, :2]
        return Volume2D(
            self.voxels[z].reshape(-1).copy(),
            self.dim_x,
            self.dim_y,
            (self.spacing_x, self.spacing_y),
            (self.origin.x, self.origin.y),
            direction,
        )

    def __str__(self) -> str:
        sx, sy, sz = self.spacing
        return (
            f"Volume3D {self.dim_x}x{self.dim_y}x{self.dim_z} {self.dtype}, "
            f"spacing ({sx:.3f}, {sy:.3f}, {sz:.3f}), origin {self.origin}"
        )


class Volume2D(Volume):
    """2D pixel grid with spacing, origin and a 2x2 direction matrix."""

    def __init__(
        self,
        array: np.ndarray,
        dim_x: int,
        dim_y: int,
        spacing: tuple[float, float] = (1.0, 1.0),
        origin: tuple[float, float] = (0.0, 0.0),
        direction: np.ndarray | None = None,
    ):
        array = np.asarray(array)
        if array.size != int(dim_x) * int(dim_y):
            raise VolumeShapeError(
                f"Pixel buffer has {array.size} elements, expected {dim_x}x{dim_y}"
            )
        super().__init__(array, 2)
        self.dim_x = int(dim_x)
        self.dim_y = int(dim_y)
        self.spacing = (float(spacing[0]), float(spacing[1]))
        self.origin = (float(origin[0]), float(origin[1]))
        self.direction = (
            np.eye(2) if direction is None else np.asarray(direction, dtype=np.float64)
        )
        basis = self.direction @ np.diag(self.spacing)
        self._data_to_physical = basis
        self._physical_to_data = np.linalg.inv(basis)

    @property
    def pixels(self) -> np.ndarray:
        return self.array.reshape(self.dim_y, self.dim_x)

    def pixel_to_physical(self, x: float, y: float) -> tuple[float, float]:
        p = self._data_to_physical @ np.array([x, y]) + np.array(self.origin)
        return float(p[0]), float(p[1])

    def physical_to_pixel(self, x: float, y: float) -> tuple[float, float]:
        p = self._physical_to_data @ (np.array([x, y]) - np.array(self.origin))
        return float(p[0]), float(p[1])

    def is_valid(self, x: int, y: int) -> bool:
        return 0 <= x < self.dim_x and 0 <= y < self.dim_y

    def get_index(self, x: int, y: int) -> int:
        if not self.is_valid(x, y):
            raise IndexError(f"Pixel ({x}, {y}) is outside {self.dim_x}x{self.dim_y}")
        return x + y * self.dim_x

    def try_get_index(self, x: int, y: int) -> tuple[bool, int]:
        if not self.is_valid(x, y):
            return False, -1
        return True, x + y * self.dim_x

    def get_coordinates(self, index: int) -> tuple[int, int]:
        if index < 0 or index >= self.length:
            raise IndexError(f"Index {index} is outside an image of {self.length} pixels")
        y, x = divmod(index, self.dim_x)
        return x, y

    def create_same_size(self, dtype=None, fill=None) -> Volume2D:
        dtype = self.array.dtype if dtype is None else dtype
        array = np.zeros(self.length, dtype=dtype)
        if fill is not None:
            array.fill(fill)
        return Volume2D(array, self.dim_x, self.dim_y, self.spacing, self.origin, self.direction)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Volume2D):
            return NotImplemented
        return (
            self.dim_x == other.dim_x
            and self.dim_y == other.dim_y
            and self.spacing == other.spacing
            and self.origin == other.origin
            and np.array_equal(self.direction, other.direction)
            and np.array_equal(self.array, other.array)
        )

    __hash__ = None
