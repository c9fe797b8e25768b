"""Error taxonomy for geometry, resampling and structure-set operations.

Everything derives from ValueError so the CLI reports these as user errors.
"""

from __future__ import annotations


class GeometryError(ValueError):
    """Invalid volume geometry."""


class VolumeShapeError(GeometryError):
    """Voxel buffer length does not match the declared dimensions."""


class SingularTransformError(GeometryError):
    """A transform basis cannot be inverted."""


class InvalidResampleDimensionError(GeometryError):
    """A resample target dimension is too small to derive a spacing from."""


class VolumeSizeMismatchError(GeometryError):
    """Two volumes that must share a grid do not."""


class StructureError(ValueError):
    """Problem with the named structures of a subject."""


class StructureNameClashError(StructureError):
    """A rename or add would overwrite an existing structure."""


class DuplicateStructureError(StructureError):
    """Several contours map to the same structure name."""


class MissingStructureError(StructureError, KeyError):
    """A structure that an operation depends on is not present."""

    def __str__(self) -> str:
        # KeyError quotes its argument, keep the plain message.
        return str(self.args[0]) if self.args else ""


class SubjectDiscardedError(Exception):
    """Raised inside the per-subject boundary when a subject is dropped."""

    def __init__(self, subject_id: int | str, reason: str):
        super().__init__(f"Subject {subject_id}: {reason}")
        self.subject_id = subject_id
        self.reason = reason
