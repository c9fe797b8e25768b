"""DICOM reader: scan subject folders, assemble CT volumes, rasterise RT structure sets."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterator

import numpy as np
import pydicom
from pydicom.errors import InvalidDicomError
from skimage.draw import polygon

from med2nii.core.geometry import Matrix3, Point3D
from med2nii.core.types import LoadedChannel, VolumeMetadata
from med2nii.core.volume import MASK_FOREGROUND, Volume3D
from med2nii.ops.intensity import clamp_to_int16

logger = logging.getLogger("med2nii")

DEFAULT_CHANNEL = "ct"
_CHANNEL_CHARS = re.compile(r"[^a-z0-9_]+")


def subject_folders(dicom_root: Path) -> list[Path]:
    """Each folder directly under the DICOM root holds one subject."""
    dicom_root = Path(dicom_root)
    if not dicom_root.is_dir():
        raise FileNotFoundError(f"DICOM dataset folder not found: {dicom_root}")
    return sorted(p for p in dicom_root.iterdir() if p.is_dir())


def load_dataset(dicom_root: Path) -> Iterator[list[LoadedChannel]]:
    """Yield the loaded channels of each subject folder under ``dicom_root``.

    Subject ids are assigned in order of first appearance of each PatientID.
    """
    patient_ids: list[str] = []
    for folder in subject_folders(dicom_root):
        yield load_subject_folder(folder, patient_ids)


def load_subject_folder(folder: Path, patient_ids: list[str] | None = None) -> list[LoadedChannel]:
    """Load every CT series in ``folder`` as a channel, with its contours attached."""
    patient_ids = [] if patient_ids is None else patient_ids
    datasets = _scan_dicom_files(folder)
    if not datasets:
        raise ValueError(f"No valid DICOM files found in {folder}")

    images: dict[str, list[pydicom.Dataset]] = {}
    structure_sets: list[pydicom.Dataset] = []
    for ds in datasets:
        modality = getattr(ds, "Modality", "")
        if modality == "RTSTRUCT":
            structure_sets.append(ds)
        elif modality == "CT":
            images.setdefault(str(ds.SeriesInstanceUID), []).append(ds)
        else:
            logger.debug(f"Skipping {modality or 'unknown'} file {getattr(ds, 'filename', '')}")
    if not images:
        raise ValueError(f"No CT series found in {folder}, only CT is supported")

    first = next(iter(images.values()))[0]
    patient_id = str(getattr(first, "PatientID", folder.name))
    if patient_id not in patient_ids:
        patient_ids.append(patient_id)
    subject_id = patient_ids.index(patient_id)

    volumes = {uid: _build_volume(series) for uid, series in images.items()}
    names = _channel_names(images)
    contours: dict[str, list[tuple[str, Volume3D]]] = {uid: [] for uid in images}
    for rtstruct in structure_sets:
        uid = _referenced_series(rtstruct, images)
        contours[uid].extend(read_structure_set(rtstruct, volumes[uid]))

    channels = []
    for uid in images:
        metadata = VolumeMetadata(series_id=uid, subject_id=subject_id, channel=names[uid])
        channels.append(LoadedChannel(metadata, volumes[uid], contours[uid]))
        logger.info(
            f"Subject {subject_id}: loaded series {uid} as channel '{names[uid]}' "
            f"({volumes[uid].dim_x}x{volumes[uid].dim_y}x{volumes[uid].dim_z}, "
            f"{len(contours[uid])} contours)"
        )
    return channels


def _scan_dicom_files(directory: Path) -> list[pydicom.Dataset]:
    """Scan directory recursively for readable DICOM files."""
    datasets = []
    for path in sorted(directory.rglob("*")):
        if path.is_file():
            try:
                ds = pydicom.dcmread(str(path))
            except (InvalidDicomError, OSError) as e:
                logger.debug(f"Not a DICOM file: {path} ({e})")
                continue
            ds.filename = str(path)
            datasets.append(ds)
    return datasets


def _channel_names(images: dict[str, list[pydicom.Dataset]]) -> dict[str, str]:
    if len(images) == 1:
        return {uid: DEFAULT_CHANNEL for uid in images}
    names: dict[str, str] = {}
    for index, (uid, series) in enumerate(images.items()):
        description = str(getattr(series[0], "SeriesDescription", "")).lower().strip()
        name = _CHANNEL_CHARS.sub("_", description).strip("_") or f"{DEFAULT_CHANNEL}_{index}"
        if name in names.values():
            name = f"{name}_{index}"
        names[uid] = name
    return names


def _referenced_series(rtstruct: pydicom.Dataset, images: dict[str, list[pydicom.Dataset]]) -> str:
    """Series UID the structure set was drawn on; falls back to the frame of reference."""
    for frame in getattr(rtstruct, "ReferencedFrameOfReferenceSequence", []):
        for study in getattr(frame, "RTReferencedStudySequence", []):
            for series in getattr(study, "RTReferencedSeriesSequence", []):
                uid = str(getattr(series, "SeriesInstanceUID", ""))
                if uid in images:
                    return uid
    frame_uid = str(getattr(rtstruct, "FrameOfReferenceUID", ""))
    for uid, series in images.items():
        if frame_uid and str(getattr(series[0], "FrameOfReferenceUID", "")) == frame_uid:
            return uid
    fallback = next(iter(images))
    logger.warning(f"Structure set does not reference a loaded series, attaching it to {fallback}")
    return fallback


def _slice_normal(ds: pydicom.Dataset) -> np.ndarray:
    orientation = [float(v) for v in getattr(ds, "ImageOrientationPatient", [1, 0, 0, 0, 1, 0])]
    return np.cross(orientation[:3], orientation[3:])


def _build_volume(datasets: list[pydicom.Dataset]) -> Volume3D:
    """Assemble an int16 CT volume sorted along the slice normal."""
    normal = _slice_normal(datasets[0])

    def position_along_normal(ds) -> float:
        position = getattr(ds, "ImagePositionPatient", None)
        if position is None:
            return float(getattr(ds, "InstanceNumber", 0))
        return float(np.dot([float(v) for v in position], normal))

    datasets = sorted(datasets, key=position_along_normal)
    slices = []
    for ds in datasets:
        pixels = ds.pixel_array.astype(np.float64)
        slope = float(getattr(ds, "RescaleSlope", 1.0))
        intercept = float(getattr(ds, "RescaleIntercept", 0.0))
        slices.append(clamp_to_int16(pixels * slope + intercept))
    voxels = np.stack(slices, axis=0)

    ds = datasets[0]
    row_spacing, column_spacing = _get_pixel_spacing(ds)
    slice_spacing = _get_slice_spacing(datasets, position_along_normal)
    orientation = [float(v) for v in getattr(ds, "ImageOrientationPatient", [1, 0, 0, 0, 1, 0])]
    direction = Matrix3.from_columns(
        Point3D.from_iterable(orientation[:3]),
        Point3D.from_iterable(orientation[3:]),
        Point3D.from_iterable(normal),
    )
    origin = Point3D.from_iterable(
        float(v) for v in getattr(ds, "ImagePositionPatient", [0.0, 0.0, 0.0])
    )
    return Volume3D.from_zyx(voxels, (column_spacing, row_spacing, slice_spacing), origin, direction)


def _get_pixel_spacing(ds: pydicom.Dataset) -> tuple[float, float]:
    """(row spacing, column spacing) in mm."""
    spacing = getattr(ds, "PixelSpacing", None)
    if spacing:
        return float(spacing[0]), float(spacing[1])
    logger.warning("No pixel spacing found, using default 1.0mm")
    return 1.0, 1.0


def _get_slice_spacing(datasets: list[pydicom.Dataset], position_along_normal) -> float:
    if len(datasets) >= 2:
        gap = abs(position_along_normal(datasets[1]) - position_along_normal(datasets[0]))
        if gap > 0:
            return gap
    thickness = getattr(datasets[0], "SliceThickness", None)
    if thickness:
        return float(thickness)
    logger.warning("No slice spacing found, using default 1.0mm")
    return 1.0


def read_structure_set(rtstruct: pydicom.Dataset, volume: Volume3D) -> list[tuple[str, Volume3D]]:
    """Rasterise every ROI of an RTSTRUCT onto the grid of ``volume``.

    Closed planar contours on the same slice are combined with XOR, so inner
    contours cut holes into outer ones. Names are returned as stored.
    """
    roi_names = {
        int(roi.ROINumber): str(roi.ROIName)
        for roi in getattr(rtstruct, "StructureSetROISequence", [])
    }
    to_pixel = volume.transform.dicom_to_data
    result = []
    for roi_contour in getattr(rtstruct, "ROIContourSequence", []):
        number = int(roi_contour.ReferencedROINumber)
        name = roi_names.get(number, f"roi_{number}")
        mask = volume.create_same_size(dtype=np.uint8)
        voxels = mask.voxels
        for contour in getattr(roi_contour, "ContourSequence", []):
            points = np.asarray([float(v) for v in contour.ContourData]).reshape(-1, 3)
            if len(points) < 3:
                continue
            pixels = to_pixel.apply_array(points)
            z = int(np.rint(pixels[:, 2].mean()))
            if not 0 <= z < volume.dim_z:
                logger.debug(f"Contour of '{name}' lies outside the volume (slice {z})")
                continue
            layer = np.zeros((volume.dim_y, volume.dim_x), dtype=bool)
            rr, cc = polygon(pixels[:, 1], pixels[:, 0], layer.shape)
            layer[rr, cc] = True
            voxels[z] ^= layer.astype(np.uint8) * np.uint8(MASK_FOREGROUND)
        result.append((name, mask))
    return result
