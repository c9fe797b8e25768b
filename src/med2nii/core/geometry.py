"""Affine geometry: points, 3x3/4x4 matrices and voxel <-> patient transforms."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from med2nii.core.errors import SingularTransformError


@dataclass(frozen=True)
class Point3D:
    """Immutable point / vector in 3D."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def zero(cls) -> Point3D:
        return cls(0.0, 0.0, 0.0)

    @classmethod
    def from_iterable(cls, values: Iterable[float]) -> Point3D:
        data = [float(v) for v in values]
        if len(data) != 3:
            raise ValueError(f"A 3D point needs exactly 3 values, got {len(data)}")
        return cls(*data)

    def __getitem__(self, index: int) -> float:
        return (self.x, self.y, self.z)[index]

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def __neg__(self) -> Point3D:
        return Point3D(-self.x, -self.y, -self.z)

    def __add__(self, other: Point3D) -> Point3D:
        return Point3D(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: Point3D) -> Point3D:
        return Point3D(self.x - other.x, self.y - other.y, self.z - other.z)

    def __mul__(self, other: Point3D | float) -> Point3D:
        if isinstance(other, Point3D):
            return Point3D(self.x * other.x, self.y * other.y, self.z * other.z)
        return Point3D(self.x * other, self.y * other, self.z * other)

    __rmul__ = __mul__

    def __truediv__(self, other: Point3D | float) -> Point3D:
        if isinstance(other, Point3D):
            return Point3D(self.x / other.x, self.y / other.y, self.z / other.z)
        return Point3D(self.x / other, self.y / other, self.z / other)

    def dot(self, other: Point3D) -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z

    def cross(self, other: Point3D) -> Point3D:
        return Point3D(
            self.y * other.z - self.z * other.y,
            self.z * other.x - self.x * other.z,
            self.x * other.y - self.y * other.x,
        )

    def square_norm(self) -> float:
        return self.dot(self)

    def norm(self) -> float:
        return math.sqrt(self.square_norm())

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    def __str__(self) -> str:
        return f"({self.x:.2f}, {self.y:.2f}, {self.z:.2f})"


class Matrix3:
    """3x3 matrix. ``data[row, column]`` is stored as a float64 numpy array."""

    __slots__ = ("data",)

    def __init__(self, data=None):
        if data is None:
            self.data = np.zeros((3, 3), dtype=np.float64)
            return
        arr = np.array(data, dtype=np.float64)
        if arr.size != 9:
            raise ValueError(f"Matrix3 needs 9 values, got {arr.size}")
        self.data = arr.reshape(3, 3)

    @classmethod
    def identity(cls) -> Matrix3:
        return cls(np.eye(3))

    @classmethod
    def diag(cls, m00: float, m11: float, m22: float) -> Matrix3:
        return cls(np.diag([m00, m11, m22]))

    @classmethod
    def from_rows(cls, r0: Point3D, r1: Point3D, r2: Point3D) -> Matrix3:
        return cls([list(r0), list(r1), list(r2)])

    @classmethod
    def from_columns(cls, c0: Point3D, c1: Point3D, c2: Point3D) -> Matrix3:
        return cls(np.array([list(c0), list(c1), list(c2)]).T)

    def __getitem__(self, key: tuple[int, int]) -> float:
        return float(self.data[key])

    def column(self, i: int) -> Point3D:
        return Point3D.from_iterable(self.data[:, i])

    def row(self, i: int) -> Point3D:
        return Point3D.from_iterable(self.data[i, :])

    def transpose(self) -> Matrix3:
        return Matrix3(self.data.T)

    def determinant(self) -> float:
        m = self.data
        return float(
            m[0, 0] * (m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1])
            + m[0, 1] * (m[1, 2] * m[2, 0] - m[1, 0] * m[2, 2])
            + m[0, 2] * (m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0])
        )

    def inverse(self) -> Matrix3:
        """Inverse via the adjugate divided by the determinant.

        Raises SingularTransformError instead of returning inf/nan entries.
        """
        m = self.data
        det = self.determinant()
        if det == 0.0 or not math.isfinite(det):
            raise SingularTransformError(f"Matrix is singular (determinant {det})")
        adj = np.empty((3, 3), dtype=np.float64)
        adj[0, 0] = m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1]
        adj[1, 0] = m[1, 2] * m[2, 0] - m[1, 0] * m[2, 2]
        adj[2, 0] = m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0]
        adj[0, 1] = m[0, 2] * m[2, 1] - m[0, 1] * m[2, 2]
        adj[1, 1] = m[0, 0] * m[2, 2] - m[0, 2] * m[2, 0]
        adj[2, 1] = m[0, 1] * m[2, 0] - m[0, 0] * m[2, 1]
        adj[0, 2] = m[0, 1] * m[1, 2] - m[0, 2] * m[1, 1]
        adj[1, 2] = m[0, 2] * m[1, 0] - m[0, 0] * m[1, 2]
        adj[2, 2] = m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0]
        result = adj / det
        if not np.all(np.isfinite(result)):
            raise SingularTransformError("Matrix inverse is not finite")
        return Matrix3(result)

    def __matmul__(self, other):
        if isinstance(other, Matrix3):
            return Matrix3(self.data @ other.data)
        if isinstance(other, Point3D):
            return Point3D.from_iterable(self.data @ other.to_array())
        return NotImplemented

    __mul__ = __matmul__

    def __eq__(self, other) -> bool:
        if not isinstance(other, Matrix3):
            return NotImplemented
        return bool(np.array_equal(self.data, other.data))

    def __hash__(self) -> int:
        return hash(self.data.tobytes())

    def is_orthogonal_basis(self, epsilon: float = 1e-6) -> bool:
        c = [self.column(i) for i in range(3)]
        return (
            abs(c[0].dot(c[1])) < epsilon
            and abs(c[0].dot(c[2])) < epsilon
            and abs(c[1].dot(c[2])) < epsilon
        )

    def is_orthonormal_basis(self, epsilon: float = 1e-6) -> bool:
        if not self.is_orthogonal_basis(epsilon):
            return False
        return all(abs(self.column(i).norm() - 1.0) < epsilon for i in range(3))

    def element_wise_round(self) -> Matrix3:
        return Matrix3(np.round(self.data))

    def __repr__(self) -> str:
        rows = ", ".join(str(list(np.round(r, 4))) for r in self.data)
        return f"Matrix3({rows})"


class Matrix4:
    """4x4 homogeneous matrix."""

    __slots__ = ("data",)

    def __init__(self, data=None):
        if data is None:
            self.data = np.zeros((4, 4), dtype=np.float64)
            return
        arr = np.array(data, dtype=np.float64)
        if arr.size != 16:
            raise ValueError(f"Matrix4 needs 16 values, got {arr.size}")
        self.data = arr.reshape(4, 4)

    @classmethod
    def identity(cls) -> Matrix4:
        return cls(np.eye(4))

    @classmethod
    def from_transform(cls, transform: Transform3) -> Matrix4:
        m = np.eye(4)
        m[:3, :3] = transform.basis.data
        m[:3, 3] = transform.origin.to_array()
        return cls(m)

    def __getitem__(self, key: tuple[int, int]) -> float:
        return float(self.data[key])

    def __matmul__(self, other):
        if isinstance(other, Matrix4):
            return Matrix4(self.data @ other.data)
        if isinstance(other, Point3D):
            h = self.data @ np.append(other.to_array(), 1.0)
            if h[3] == 0.0:
                raise SingularTransformError("Homogeneous coordinate is zero")
            return Point3D.from_iterable(h[:3] / h[3])
        return NotImplemented

    __mul__ = __matmul__

    def __eq__(self, other) -> bool:
        if not isinstance(other, Matrix4):
            return NotImplemented
        return bool(np.array_equal(self.data, other.data))

    def __hash__(self) -> int:
        return hash(self.data.tobytes())


class Transform3:
    """Affine transform ``basis * x + origin``."""

    __slots__ = ("basis", "origin")

    def __init__(self, basis: Matrix3, origin: Point3D | None = None):
        if basis is None:
            raise ValueError("Transform3 requires a basis")
        self.basis = basis
        self.origin = origin if origin is not None else Point3D.zero()

    @classmethod
    def identity(cls) -> Transform3:
        return cls(Matrix3.identity(), Point3D.zero())

    def apply(self, point: Point3D) -> Point3D:
        return self.basis @ point + self.origin

    def apply_array(self, points: np.ndarray) -> np.ndarray:
        """Transform an ``[N, 3]`` array of points."""
        return points @ self.basis.data.T + self.origin.to_array()

    def __mul__(self, other):
        # (a * b) applies b first, then a.
        if isinstance(other, Transform3):
            return Transform3(self.basis @ other.basis, self.apply(other.origin))
        if isinstance(other, Point3D):
            return self.apply(other)
        return NotImplemented

    def inverse(self) -> Transform3:
        basis_inverse = self.basis.inverse()
        return Transform3(basis_inverse, -(basis_inverse @ self.origin))

    def to_matrix4(self) -> Matrix4:
        return Matrix4.from_transform(self)


class VolumeTransform:
    """Voxel index <-> patient (DICOM) coordinate transforms of a volume.

    Both directions are computed once at construction.
    """

    __slots__ = ("spacing", "origin", "direction", "data_to_dicom", "dicom_to_data")

    def __init__(
        self,
        spacing: tuple[float, float, float],
        origin: Point3D,
        direction: Matrix3,
    ):
        if direction is None:
            raise ValueError("VolumeTransform requires a direction matrix")
        self.spacing = tuple(float(s) for s in spacing)
        self.origin = origin
        self.direction = direction
        scale = Matrix3.diag(*self.spacing)
        self.data_to_dicom = Transform3(direction @ scale, origin)
        self.dicom_to_data = self.data_to_dicom.inverse()

    def pixel_to_physical(self, pixel: Point3D) -> Point3D:
        return self.data_to_dicom * pixel

    def physical_to_pixel(self, physical: Point3D) -> Point3D:
        return self.dicom_to_data * physical
