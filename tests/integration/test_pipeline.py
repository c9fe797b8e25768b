"""Integration test: DICOM dataset -> NIfTI dataset -> statistics."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from med2nii._pipeline_analysis import (
    CONDITION_OUTLIERS_FILE,
    DETAILED_OUTLIERS_FILE,
    PATIENT_OUTLIERS_FILE,
    STATISTICS_FILE,
    analyze_dataset,
)
from med2nii._pipeline_dataset import (
    create_dataset,
    register_subject_volumes,
    validate_subject_items,
)
from med2nii.config import parse_derived_structure, parse_name_mappings
from med2nii.core.errors import StructureError
from med2nii.core.types import DatasetConfig, LoadedChannel, VolumeMetadata
from med2nii.io.dataset_writer import read_dataset_csv
from med2nii.io.nifti import load_volume

from tests.conftest import heart_and_lung, make_channel, make_mask, make_volume, write_dicom_subject


def _config(root, **kwargs) -> DatasetConfig:
    return DatasetConfig(dataset_root=root, dicom_folder="dicom", nifti_folder="nifti", **kwargs)


def _count(path) -> int:
    return int(np.count_nonzero(load_volume(path).array))


def test_create_dataset(dicom_dataset_root):
    config = _config(dicom_dataset_root, ground_truth_priority=["heart", "lung"], command_line="med2nii dataset")
    summary = create_dataset(config)
    nifti = dicom_dataset_root / "nifti"

    assert summary.converted == [0, 1, 2]
    assert summary.discarded == []
    assert summary.files_written == 9
    assert summary.structure_counts == {"heart": 3, "lung": 3}

    rows = read_dataset_csv(nifti)
    assert [(r.subject_id, r.channel) for r in rows if r.channel == "ct"] == [(0, "ct"), (1, "ct"), (2, "ct")]
    assert {r.file_path for r in rows if r.subject_id == 0} == {"0/ct.nii.gz", "0/heart.nii.gz", "0/lung.nii.gz"}
    for row in rows:
        assert (nifti / row.file_path).exists()

    # Heart outranks lung, so lung loses the 2x4 overlap on each of 4 slices.
    assert _count(nifti / "0" / "heart.nii.gz") == 64
    assert _count(nifti / "0" / "lung.nii.gz") == 96 - 32
    assert _count(nifti / "2" / "lung.nii.gz") == 64

    scan = load_volume(nifti / "0" / "ct.nii.gz")
    assert scan.dims == (16, 16, 8)
    assert scan[5, 5, 4] == 100

    info = (nifti / "info.txt").read_text(encoding="utf-8")
    assert info.startswith("Commandline arguments: med2nii dataset\n")
    assert "Per-subject status information:" in info
    assert "Structure 'heart' was present in 3 out of 3 (subject, channel) pairs." in info
    assert "Subject 2: converted with 2 structures" in info


def test_create_dataset_refuses_existing_output(dicom_dataset_root):
    (dicom_dataset_root / "nifti").mkdir()
    with pytest.raises(FileExistsError):
        create_dataset(_config(dicom_dataset_root))


def test_create_dataset_missing_dicom_root(tmp_path):
    with pytest.raises(FileNotFoundError):
        create_dataset(_config(tmp_path))
    assert not (tmp_path / "nifti").exists()


def test_require_all_ground_truth_aborts(dicom_dataset_root):
    config = _config(
        dicom_dataset_root, ground_truth_priority=["heart", "spleen"], require_all_ground_truth=True
    )
    with pytest.raises(RuntimeError, match="no structure\\(s\\) named spleen"):
        create_dataset(config)


def test_require_all_ground_truth_discards(dicom_dataset_root):
    config = _config(
        dicom_dataset_root,
        ground_truth_priority=["heart", "+lung", "spleen"],
        require_all_ground_truth=True,
        discard_invalid_subjects=True,
    )
    summary = create_dataset(config)
    assert summary.converted == []
    assert summary.discarded == [0, 1, 2]
    assert read_dataset_csv(dicom_dataset_root / "nifti") == []
    info = (dicom_dataset_root / "nifti" / "info.txt").read_text(encoding="utf-8")
    assert "Subject 0: discarded" in info


def test_unlisted_structures_are_removed(dicom_dataset_root):
    summary = create_dataset(_config(dicom_dataset_root, ground_truth_priority=["heart"]))
    assert summary.structure_counts == {"heart": 3}
    assert not (dicom_dataset_root / "nifti" / "0" / "lung.nii.gz").exists()


def test_rename_and_derived_structures(dicom_dataset_root):
    config = _config(
        dicom_dataset_root,
        ground_truth_priority=["cardiac", "lung", "spleen"],
        name_mappings=parse_name_mappings(["heart:cardiac"]),
        derived_structures=[parse_derived_structure("both=cardiac+lung")],
        create_if_missing=["spleen"],
        compress=False,
    )
    summary = create_dataset(config)
    nifti = dicom_dataset_root / "nifti"
    assert summary.structure_counts == {"cardiac": 3, "lung": 3, "spleen": 3, "both": 3}
    assert _count(nifti / "1" / "both.nii") == 64 + 64
    assert _count(nifti / "1" / "spleen.nii") == 0
    assert not (nifti / "1" / "heart.nii").exists()


def _subject_without_lung(tmp_path):
    dicom = tmp_path / "dicom"
    write_dicom_subject(dicom / "s1", "P1", heart_and_lung())
    write_dicom_subject(dicom / "s2", "P2", {"Heart": heart_and_lung()["Heart"]})
    return tmp_path


def test_missing_derived_operand_discards_subject(tmp_path):
    root = _subject_without_lung(tmp_path)
    config = _config(
        root,
        derived_structures=[parse_derived_structure("both=heart+lung")],
        discard_invalid_subjects=True,
    )
    summary = create_dataset(config)
    assert summary.converted == [0]
    assert summary.discarded == [1]
    assert {r.subject_id for r in read_dataset_csv(root / "nifti")} == {0}
    assert (root / "nifti" / "0" / "both.nii.gz").exists()
    info = (root / "nifti" / "info.txt").read_text(encoding="utf-8")
    assert "Subject 1: discarded (There is no structure with name 'lung'" in info


def test_missing_derived_operand_aborts(tmp_path):
    root = _subject_without_lung(tmp_path)
    config = _config(root, derived_structures=[parse_derived_structure("both=heart+lung")])
    with pytest.raises(RuntimeError, match="There is no structure with name 'lung'"):
        create_dataset(config)


def test_structure_names_with_commas(tmp_path):
    rois = {"Lung, left": heart_and_lung()["Lung"], "Heart": heart_and_lung()["Heart"]}
    write_dicom_subject(tmp_path / "dicom" / "s1", "P1", rois)
    create_dataset(_config(tmp_path))
    nifti = tmp_path / "nifti"

    rows = [r for r in read_dataset_csv(nifti) if r.channel != "ct"]
    assert sorted((r.channel, r.file_path) for r in rows) == [
        ("heart", "0/heart.nii.gz"),
        ("lung, left", "0/lung, left.nii.gz"),
    ]
    for row in rows:
        assert row.subject_id == 0
        assert (nifti / row.file_path).exists()

    analyze_dataset(nifti)
    frame = pd.read_csv(nifti / "statistics" / STATISTICS_FILE)
    assert "lung, left" in set(frame["structure1"])
    assert ((frame["statistic"] == "Vol") & (frame["structure1"] == "lung, left")).any()



def test_geometric_normalization(dicom_dataset_root):
    config = _config(
        dicom_dataset_root,
        ground_truth_priority=["heart", "lung"],
        geometric_normalization_spacing=(1.0, 1.0, 1.0),
    )
    create_dataset(config)
    scan = load_volume(dicom_dataset_root / "nifti" / "0" / "ct.nii.gz")
    heart = load_volume(dicom_dataset_root / "nifti" / "0" / "heart.nii.gz")
    assert scan.dims == (16, 16, 15)
    assert heart.dims == scan.dims
    assert heart.spacing == pytest.approx((1.0, 1.0, 1.0))


def _loaded(channel: str, names: list[str], series_id: str = "1.2") -> LoadedChannel:
    metadata = VolumeMetadata(series_id=series_id, subject_id=0, channel=channel)
    scan = make_volume(np.zeros((4, 4, 4), dtype=np.int16))
    return LoadedChannel(metadata, scan, [(name, make_mask()) for name in names])


def test_validate_subject_items():
    assert validate_subject_items([_loaded("ct", ["heart", "HEART"])], False)
    assert validate_subject_items([_loaded("ct", ["heart"]), _loaded("mr", [])], False)
    items = [_loaded("ct", ["heart"]), _loaded("mr", ["lung"], "1.3")]
    with pytest.raises(StructureError, match="multiple channels"):
        validate_subject_items(items, False)
    assert not validate_subject_items(items, True)


def test_register_subject_volumes():
    ct = make_channel({"heart": make_mask(box=(0, 2, 0, 2, 0, 2))}, channel="ct")
    mr = make_channel({"lung": make_mask(box=(1, 3, 1, 3, 1, 3))}, channel="mr")
    registered = register_subject_volumes([mr, ct], "ct", workers=1)
    assert registered[0] is ct
    moved = registered[1]
    assert moved.metadata.channel == "mr_onto_ct"
    assert moved.metadata.series_id.startswith("Resampling on 'ct'")
    assert moved.metadata.series_id.endswith("1.2.3")
    assert int(np.count_nonzero(moved.structures["lung"].array)) == 8
    assert moved.volume.dims == ct.volume.dims


def test_register_subject_volumes_errors():
    ct = make_channel({"heart": make_mask()}, channel="ct")
    with pytest.raises(ValueError, match="non-empty"):
        register_subject_volumes([], "ct")
    with pytest.raises(ValueError, match="reference channel 'mr'"):
        register_subject_volumes([ct], "mr")
    with pytest.raises(ValueError, match="multiple volumes"):
        register_subject_volumes([ct, make_channel({}, channel="ct")], "ct")
    clash = make_channel({"ct": make_mask()}, channel="mr")
    with pytest.raises(ValueError, match="present multiple times"):
        register_subject_volumes([ct, clash], "ct")
    assert register_subject_volumes([ct], "") == [ct]


def test_analyze_created_dataset(dicom_dataset_root):
    create_dataset(_config(dicom_dataset_root, ground_truth_priority=["heart", "lung"]))
    nifti = dicom_dataset_root / "nifti"
    summary = analyze_dataset(nifti)

    assert summary.subjects == [0, 1, 2]
    assert summary.output_folder == nifti / "statistics"
    names = [path.name for path in summary.files]
    assert names == [STATISTICS_FILE, DETAILED_OUTLIERS_FILE, CONDITION_OUTLIERS_FILE, PATIENT_OUTLIERS_FILE]
    for path in summary.files:
        assert path.exists()

    frame = pd.read_csv(nifti / "statistics" / STATISTICS_FILE)
    assert list(frame.columns) == ["subject", "statistic", "structure1", "structure2", "value"]
    assert len(frame) == summary.statistics_count
    keys = set(zip(frame["subject"], frame["statistic"], frame["structure1"], frame["structure2"]))
    assert (0, "Vol", "heart", "heart") in keys
    assert (2, "Vol", "lung", "lung") in keys
    assert set(frame["subject"]) == {0, 1, 2}


def test_analyze_selected_subjects(dicom_dataset_root):
    create_dataset(_config(dicom_dataset_root, ground_truth_priority=["heart", "lung"]))
    nifti = dicom_dataset_root / "nifti"
    summary = analyze_dataset(nifti, "stats", "1-2")
    assert summary.subjects == [1, 2]
    assert (nifti / "stats" / STATISTICS_FILE).exists()
    with pytest.raises(ValueError, match="No subjects"):
        analyze_dataset(nifti, "stats", "7")
