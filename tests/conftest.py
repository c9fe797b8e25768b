"""Shared test fixtures: synthetic volumes, masks and DICOM CT + RTSTRUCT data."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pydicom
import pytest
from pydicom.dataset import Dataset, FileDataset
from pydicom.sequence import Sequence
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from med2nii.core.geometry import Point3D
from med2nii.core.types import VolumeMetadata
from med2nii.core.volume import Volume3D
from med2nii.structures.collection import VolumeAndStructures

CT_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.2"
RT_STRUCTURE_SET_STORAGE = "1.2.840.10008.5.1.4.1.1.481.3"

# Synthetic CT geometry: 16x16 pixels of 1mm, 8 slices 2mm apart.
ROWS = 16
COLUMNS = 16
SLICES = 8
SLICE_GAP = 2.0


def make_volume(voxels: np.ndarray, spacing=(1.0, 1.0, 1.0), origin: Point3D | None = None) -> Volume3D:
    """Volume from a ``[Z, Y, X]`` array."""
    return Volume3D.from_zyx(np.ascontiguousarray(voxels), spacing, origin)


def make_mask(shape=(4, 4, 4), box=None, spacing=(1.0, 1.0, 1.0)) -> Volume3D:
    """uint8 mask of ``shape`` (Z, Y, X) with ``box`` = (z0, z1, y0, y1, x0, x1) set to 1."""
    voxels = np.zeros(shape, dtype=np.uint8)
    if box is not None:
        z0, z1, y0, y1, x0, x1 = box
        voxels[z0:z1, y0:y1, x0:x1] = 1
    return make_volume(voxels, spacing)


def make_channel(structures: dict[str, Volume3D], shape=(4, 4, 4), subject_id=1, channel="ct") -> VolumeAndStructures:
    scan = make_volume(np.zeros(shape, dtype=np.int16))
    metadata = VolumeMetadata(series_id="1.2.3", subject_id=subject_id, channel=channel)
    return VolumeAndStructures(scan, structures, metadata)


@pytest.fixture
def synthetic_volume() -> Volume3D:
    """A 20x20x10 int16 volume with a bright sphere in the middle."""
    shape = (10, 20, 20)
    voxels = np.full(shape, -1000, dtype=np.int16)
    zz, yy, xx = np.mgrid[0:shape[0], 0:shape[1], 0:shape[2]]
    dist = np.sqrt((zz - 5) ** 2 + (yy - 10) ** 2 + (xx - 10) ** 2)
    voxels[dist < 4] = 400
    return make_volume(voxels, spacing=(1.0, 1.0, 2.0))


@pytest.fixture
def synthetic_channel() -> VolumeAndStructures:
    """A 4x4x4 channel with overlapping 'x' (bottom half) and 'y' (front half) masks."""
    x = make_mask(box=(0, 2, 0, 4, 0, 4))
    y = make_mask(box=(0, 4, 0, 2, 0, 4))
    return make_channel({"x": x, "y": y})


def _file_meta(sop_class: str) -> pydicom.Dataset:
    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = sop_class
    file_meta.MediaStorageSOPInstanceUID = generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
    return file_meta


def _write_ct_slice(
    path: Path,
    patient_id: str,
    study_uid: str,
    series_uid: str,
    frame_uid: str,
    index: int,
    pixels: np.ndarray,
    description: str = "CT",
) -> None:
    file_meta = _file_meta(CT_IMAGE_STORAGE)
    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\x00" * 128)

    ds.SOPClassUID = CT_IMAGE_STORAGE
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.PatientID = patient_id
    ds.PatientName = patient_id
    ds.StudyInstanceUID = study_uid
    ds.SeriesInstanceUID = series_uid
    ds.FrameOfReferenceUID = frame_uid
    ds.SeriesDescription = description
    ds.Modality = "CT"
    ds.InstanceNumber = index + 1
    ds.ImagePositionPatient = [0.0, 0.0, index * SLICE_GAP]
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.PixelSpacing = [1.0, 1.0]
    ds.SliceThickness = SLICE_GAP
    ds.Rows = ROWS
    ds.Columns = COLUMNS
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.RescaleSlope = 1.0
    ds.RescaleIntercept = -1024.0
    ds.PixelData = pixels.astype(np.uint16).tobytes()
    ds.save_as(str(path))


def _square_contour(slice_index: int, x0: int, x1: int, y0: int, y1: int) -> Dataset:
    """Closed contour around pixels x0..x1, y0..y1 (inclusive) on one slice."""
    z = slice_index * SLICE_GAP
    left, right = x0 - 0.5, x1 + 0.5
    top, bottom = y0 - 0.5, y1 + 0.5
    contour = Dataset()
    contour.ContourGeometricType = "CLOSED_PLANAR"
    contour.NumberOfContourPoints = 4
    contour.ContourData = [
        left, top, z,
        right, top, z,
        right, bottom, z,
        left, bottom, z,
    ]
    return contour


def _write_rtstruct(
    path: Path,
    patient_id: str,
    study_uid: str,
    series_uid: str,
    frame_uid: str,
    rois: dict[str, list[tuple[int, int, int, int, int]]],
) -> None:
    file_meta = _file_meta(RT_STRUCTURE_SET_STORAGE)
    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\x00" * 128)

    ds.SOPClassUID = RT_STRUCTURE_SET_STORAGE
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.PatientID = patient_id
    ds.PatientName = patient_id
    ds.StudyInstanceUID = study_uid
    ds.SeriesInstanceUID = generate_uid()
    ds.Modality = "RTSTRUCT"
    ds.StructureSetLabel = "synthetic"

    referenced_series = Dataset()
    referenced_series.SeriesInstanceUID = series_uid
    referenced_study = Dataset()
    referenced_study.ReferencedSOPInstanceUID = study_uid
    referenced_study.RTReferencedSeriesSequence = Sequence([referenced_series])
    frame = Dataset()
    frame.FrameOfReferenceUID = frame_uid
    frame.RTReferencedStudySequence = Sequence([referenced_study])
    ds.ReferencedFrameOfReferenceSequence = Sequence([frame])

    roi_items = []
    contour_items = []
    for number, (name, boxes) in enumerate(rois.items(), start=1):
        roi = Dataset()
        roi.ROINumber = number
        roi.ROIName = name
        roi.ReferencedFrameOfReferenceUID = frame_uid
        roi_items.append(roi)
        roi_contour = Dataset()
        roi_contour.ReferencedROINumber = number
        roi_contour.ContourSequence = Sequence([_square_contour(*box) for box in boxes])
        contour_items.append(roi_contour)
    ds.StructureSetROISequence = Sequence(roi_items)
    ds.ROIContourSequence = Sequence(contour_items)
    ds.save_as(str(path))


def write_dicom_subject(
    folder: Path,
    patient_id: str,
    rois: dict[str, list[tuple[int, int, int, int, int]]],
    body_value: int = 1024,
    bright_box: tuple[int, int, int, int] | None = None,
) -> str:
    """Write an 8-slice CT series plus an RTSTRUCT into ``folder``; returns the series UID.

    ``rois`` maps ROI names to ``(slice, x0, x1, y0, y1)`` boxes. Stored pixel
    values are HU + 1024: air outside a 12x12 body of ``body_value``, and
    ``bright_box`` (x0, x1, y0, y1) at 1124 (100 HU) on every slice.
    """
    folder.mkdir(parents=True, exist_ok=True)
    study_uid = generate_uid()
    series_uid = generate_uid()
    frame_uid = generate_uid()
    pixels = np.zeros((ROWS, COLUMNS), dtype=np.uint16)
    pixels[2:14, 2:14] = body_value
    if bright_box is not None:
        x0, x1, y0, y1 = bright_box
        pixels[y0:y1 + 1, x0:x1 + 1] = 1124
    for i in range(SLICES):
        _write_ct_slice(
            folder / f"ct_{i:03d}.dcm", patient_id, study_uid, series_uid, frame_uid, i, pixels
        )
    _write_rtstruct(folder / "rtstruct.dcm", patient_id, study_uid, series_uid, frame_uid, rois)
    return series_uid


def heart_and_lung(slices=range(2, 6)) -> dict[str, list[tuple[int, int, int, int, int]]]:
    """'Heart' is a 4x4 square, 'Lung' a 4x6 block that overlaps it by 2x4 pixels."""
    return {
        "Heart": [(s, 4, 7, 4, 7) for s in slices],
        "Lung": [(s, 6, 9, 2, 7) for s in slices],
    }


@pytest.fixture
def dicom_subject(tmp_path) -> Path:
    """A single subject folder with CT + RTSTRUCT."""
    folder = tmp_path / "subject_01"
    write_dicom_subject(folder, "P1", heart_and_lung(), bright_box=(4, 7, 4, 7))
    return folder


@pytest.fixture
def dicom_dataset_root(tmp_path) -> Path:
    """``<root>/dicom/<subject>/`` with three subjects; the third spells its ROIs in upper case."""
    dicom = tmp_path / "dicom"
    write_dicom_subject(dicom / "subject_01", "P1", heart_and_lung(), bright_box=(4, 7, 4, 7))
    write_dicom_subject(dicom / "subject_02", "P2", heart_and_lung(range(1, 5)), bright_box=(4, 7, 4, 7))
    rois = {name.upper(): boxes for name, boxes in heart_and_lung(range(3, 7)).items()}
    write_dicom_subject(dicom / "subject_03", "P3", rois, bright_box=(4, 7, 4, 7))
    return tmp_path
