"""Unit tests for the DICOM CT + RTSTRUCT reader."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from med2nii.core.geometry import Point3D
from med2nii.io.dicom_reader import (
    DEFAULT_CHANNEL,
    load_dataset,
    load_subject_folder,
    read_structure_set,
    subject_folders,
)

from tests.conftest import SLICE_GAP, heart_and_lung, write_dicom_subject


def test_load_subject_volume(dicom_subject):
    channels = load_subject_folder(dicom_subject)
    assert len(channels) == 1
    channel = channels[0]
    volume = channel.volume
    assert channel.metadata.channel == DEFAULT_CHANNEL
    assert channel.metadata.subject_id == 0
    assert volume.dims == (16, 16, 8)
    assert volume.spacing == (1.0, 1.0, SLICE_GAP)
    assert volume.dtype == np.int16


def test_rescale_is_applied(dicom_subject):
    volume = load_subject_folder(dicom_subject)[0].volume
    assert volume[0, 0, 0] == -1024
    assert volume[3, 3, 0] == 0
    assert volume[5, 5, 4] == 100


def test_slices_sorted_along_normal(dicom_subject):
    volume = load_subject_folder(dicom_subject)[0].volume
    assert volume.origin == Point3D(0.0, 0.0, 0.0)
    last = volume.transform.pixel_to_physical(Point3D(0, 0, volume.dim_z - 1))
    assert last.z == pytest.approx((volume.dim_z - 1) * SLICE_GAP)


def test_contours_are_rasterised(dicom_subject):
    channel = load_subject_folder(dicom_subject)[0]
    structures = dict(channel.structures)
    assert set(structures) == {"Heart", "Lung"}
    heart = structures["Heart"]
    assert heart.dtype == np.uint8
    assert int(np.count_nonzero(heart.array)) == 4 * 4 * 4
    assert [int(z) for z in np.flatnonzero(heart.voxels.any(axis=(1, 2)))] == [2, 3, 4, 5]
    assert heart[4, 4, 2] == 1
    assert heart[8, 4, 2] == 0
    lung = structures["Lung"]
    assert int(np.count_nonzero(lung.array)) == 4 * 6 * 4
    assert int(np.count_nonzero(heart.array & lung.array)) == 2 * 4 * 4


def test_nested_contours_cut_holes(dicom_subject):
    import pydicom

    channel = load_subject_folder(dicom_subject)[0]
    rtstruct = pydicom.dcmread(str(dicom_subject / "rtstruct.dcm"))
    # Add an inner contour to the heart on slice 2.
    inner = pydicom.Dataset()
    inner.ContourGeometricType = "CLOSED_PLANAR"
    inner.NumberOfContourPoints = 4
    inner.ContourData = [4.5, 4.5, 4.0, 6.5, 4.5, 4.0, 6.5, 6.5, 4.0, 4.5, 6.5, 4.0]
    rtstruct.ROIContourSequence[0].ContourSequence.append(inner)
    structures = dict(read_structure_set(rtstruct, channel.volume))
    assert int(np.count_nonzero(structures["Heart"].voxels[2])) == 16 - 4


def test_subject_ids_follow_patient_ids(dicom_dataset_root):
    subjects = list(load_dataset(dicom_dataset_root / "dicom"))
    assert [items[0].metadata.subject_id for items in subjects] == [0, 1, 2]
    assert [name for name, _ in subjects[2][0].structures] == ["HEART", "LUNG"]


def test_same_patient_in_two_folders_shares_subject_id(tmp_path):
    write_dicom_subject(tmp_path / "dicom" / "a", "P1", heart_and_lung())
    write_dicom_subject(tmp_path / "dicom" / "b", "P1", heart_and_lung())
    subjects = list(load_dataset(tmp_path / "dicom"))
    assert [items[0].metadata.subject_id for items in subjects] == [0, 0]


def test_subject_folders_missing_root():
    with pytest.raises(FileNotFoundError):
        subject_folders(Path("/nonexistent/path"))


def test_load_empty_folder_raises(tmp_path):
    with pytest.raises(ValueError, match="No valid DICOM"):
        load_subject_folder(tmp_path)


def test_non_dicom_files_are_ignored(dicom_subject):
    (dicom_subject / "notes.txt").write_text("not a DICOM file")
    channels = load_subject_folder(dicom_subject)
    assert channels[0].volume.dim_z == 8
