"""NIfTI encode/decode for Volume3D via nibabel.

Volumes live in DICOM patient space (LPS). NIfTI affines are RAS, so the
first two world axes are flipped on the way out and back in.
"""

from __future__ import annotations

import logging
from pathlib import Path

import nibabel as nib
import numpy as np

from med2nii.core.geometry import Matrix3, Point3D
from med2nii.core.volume import Volume3D

logger = logging.getLogger("med2nii")

_LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0, 1.0])


def volume_affine(volume: Volume3D) -> np.ndarray:
    """4x4 RAS affine mapping voxel (x, y, z) to world millimetres."""
    affine = volume.transform.data_to_dicom.to_matrix4().data.copy()
    return _LPS_TO_RAS @ affine


def volume_to_nifti(volume: Volume3D) -> nib.Nifti1Image:
    data = np.ascontiguousarray(volume.voxels.transpose(2, 1, 0))
    image = nib.Nifti1Image(data, volume_affine(volume))
    image.header.set_xyzt_units("mm")
    image.set_qform(image.affine, code=1)
    image.set_sform(image.affine, code=1)
    return image


def save_volume(volume: Volume3D, path: Path) -> Path:
    """Write ``volume`` to ``path``; nibabel picks gzip from a ``.nii.gz`` suffix."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.save(volume_to_nifti(volume), str(path))
    logger.debug(f"Wrote {path} ({volume.dim_x}x{volume.dim_y}x{volume.dim_z}, {volume.dtype})")
    return path


def load_volume(path: Path) -> Volume3D:
    """Read a 3D NIfTI file, keeping the stored data type."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"NIfTI file not found: {path}")
    image = nib.load(str(path))
    data = np.asanyarray(image.dataobj)
    if data.ndim != 3:
        raise ValueError(f"Expected a 3D image in {path}, got shape {data.shape}")
    lps = _LPS_TO_RAS @ image.affine
    basis = lps[:3, :3]
    spacing = np.linalg.norm(basis, axis=0)
    spacing[spacing == 0] = 1.0
    direction = Matrix3(basis / spacing)
    origin = Point3D.from_iterable(lps[:3, 3])
    voxels = np.ascontiguousarray(data.transpose(2, 1, 0))
    return Volume3D.from_zyx(voxels, tuple(float(s) for s in spacing), origin, direction)
