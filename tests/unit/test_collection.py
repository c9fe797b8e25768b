"""Unit tests for VolumeAndStructures: renaming, augmentation, add/remove."""

from __future__ import annotations

import numpy as np
import pytest

from med2nii.core.errors import (
    DuplicateStructureError,
    StructureError,
    StructureNameClashError,
    VolumeSizeMismatchError,
)
from med2nii.core.types import LoadedChannel, NameMapping, VolumeMetadata
from med2nii.structures.collection import VolumeAndStructures

from tests.conftest import make_channel, make_mask, make_volume


def _count(channel: VolumeAndStructures, name: str) -> int:
    return int(np.count_nonzero(channel.structures[name].array))


def test_rename_clash_raises_without_permission():
    channel = make_channel({"a": make_mask(box=(0, 1, 0, 4, 0, 4)), "b": make_mask()})
    with pytest.raises(StructureNameClashError):
        channel.rename_or_augment("a", "b", allow_name_clashes=False, is_augmentation=False)
    assert set(channel.structures) == {"a", "b"}


def test_rename_clash_replaces_with_permission():
    a = make_mask(box=(0, 1, 0, 4, 0, 4))
    channel = make_channel({"a": a, "b": make_mask()})
    assert channel.rename_or_augment("a", "b", allow_name_clashes=True, is_augmentation=False)
    assert set(channel.structures) == {"b"}
    assert channel.structures["b"] is a


def test_rename_missing_old_name_returns_false():
    channel = make_channel({"a": make_mask()})
    assert not channel.rename_or_augment("nothing", "b", False, False)
    assert set(channel.structures) == {"a"}


def test_rename_first_successful_old_name_wins():
    channel = make_channel({"heart_a": make_mask(), "heart_b": make_mask()})
    mapping = NameMapping(new_name="heart", old_names=["missing", "heart_a", "heart_b"])
    assert channel.rename([mapping], allow_name_clashes=True)
    assert set(channel.structures) == {"heart", "heart_b"}


def test_rename_rule_with_several_present_names_raises():
    channel = make_channel({"heart_a": make_mask(), "heart_b": make_mask()})
    mapping = NameMapping(new_name="heart", old_names=["heart_a", "heart_b"])
    with pytest.raises(StructureNameClashError, match="already exist"):
        channel.rename([mapping], allow_name_clashes=False)


def test_rename_rule_with_several_present_names_soft_failure():
    channel = make_channel({"heart_a": make_mask(), "heart_b": make_mask(), "lung_l": make_mask()})
    mappings = [
        NameMapping(new_name="heart", old_names=["heart_a", "heart_b"]),
        NameMapping(new_name="lung", old_names=["lung_l"]),
    ]
    assert not channel.rename(mappings, allow_name_clashes=False, throw_if_invalid=False)
    # The failing rule is skipped, later rules still apply.
    assert set(channel.structures) == {"heart_a", "heart_b", "lung"}
    assert any("unable to perform the renaming" in event for event in channel.events)


def test_rename_records_events():
    channel = make_channel({"lungs": make_mask()}, subject_id=4)
    channel.rename([NameMapping(new_name="lung", old_names=["lungs"])], allow_name_clashes=False)
    assert channel.events == ["Subject 4: renamed lungs to lung"]


def test_rename_from_operation(synthetic_channel):
    mapping = NameMapping(new_name="overlap", old_names=["x.intersection.y"])
    assert synthetic_channel.rename([mapping], allow_name_clashes=False)
    assert set(synthetic_channel.structures) == {"x", "y", "overlap"}
    assert _count(synthetic_channel, "overlap") == 16


def test_augment_from_literal_name(synthetic_channel):
    # Literal augmentation merges without touching the source.
    assert not synthetic_channel.rename_or_augment("x", "y", False, is_augmentation=True)
    assert _count(synthetic_channel, "y") == 48
    assert _count(synthetic_channel, "x") == 32


def test_augment_from_operation_moves_voxels(synthetic_channel):
    mapping = NameMapping(new_name="z", old_names=["x.intersection.y"], is_augmentation=True)
    assert synthetic_channel.rename([mapping], allow_name_clashes=False)
    assert _count(synthetic_channel, "z") == 16
    assert _count(synthetic_channel, "x") == 16
    assert _count(synthetic_channel, "y") == 32


def test_augment_never_overwrites_target_foreground():
    target = make_mask(box=(0, 1, 0, 4, 0, 4))
    target.voxels[0, 0, 0] = 2
    channel = make_channel({"src": make_mask(box=(0, 2, 0, 4, 0, 4)), "dst": target})
    channel.rename_or_augment("src", "dst", False, is_augmentation=True)
    assert channel.structures["dst"].voxels[0, 0, 0] == 2
    assert _count(channel, "dst") == 32


def test_augment_and_diminish_rolls_back(synthetic_channel, monkeypatch):
    before = {name: m.array.copy() for name, m in synthetic_channel.structures.items()}

    def fail(name, computed):
        raise RuntimeError("disk full")

    monkeypatch.setattr(synthetic_channel, "_diminish", fail)
    mapping = NameMapping(new_name="z", old_names=["x.intersection.y"], is_augmentation=True)
    with pytest.raises(RuntimeError):
        synthetic_channel.rename([mapping], allow_name_clashes=False)
    assert set(synthetic_channel.structures) == {"x", "y"}
    for name, array in before.items():
        np.testing.assert_array_equal(synthetic_channel.structures[name].array, array)
    assert synthetic_channel.events == []


def test_from_loaded_duplicate_names():
    scan = make_volume(np.zeros((4, 4, 4), dtype=np.int16))
    metadata = VolumeMetadata(series_id="1.2", subject_id=0, channel="ct")
    loaded = LoadedChannel(metadata, scan, [("Heart", make_mask()), ("HEART", make_mask(box=(0, 1, 0, 1, 0, 1)))])
    with pytest.raises(DuplicateStructureError, match="heart"):
        VolumeAndStructures.from_loaded(loaded)
    channel = VolumeAndStructures.from_loaded(loaded, drop_repeats=True)
    assert list(channel.structures) == ["heart"]
    assert _count(channel, "heart") == 0


def test_from_loaded_keeps_case_when_asked():
    scan = make_volume(np.zeros((4, 4, 4), dtype=np.int16))
    metadata = VolumeMetadata(series_id="1.2", subject_id=0, channel="ct")
    loaded = LoadedChannel(metadata, scan, [("Heart", make_mask())])
    assert list(VolumeAndStructures.from_loaded(loaded, lower_case=False).structures) == ["Heart"]


def test_constructor_checks_mask_size():
    with pytest.raises(VolumeSizeMismatchError):
        make_channel({"a": make_mask(shape=(3, 4, 4))})


def test_add_empty_structures():
    channel = make_channel({"a": make_mask(box=(0, 1, 0, 1, 0, 1))})
    channel.add_empty_structures(["a", "b"])
    assert set(channel.structures) == {"a", "b"}
    assert _count(channel, "a") == 1
    assert _count(channel, "b") == 0
    assert channel.structures["b"].dtype == np.uint8


def test_add_and_remove():
    channel = make_channel({"a": make_mask()})
    channel.add("b", make_mask())
    with pytest.raises(StructureError):
        channel.add("b", make_mask())
    with pytest.raises(VolumeSizeMismatchError):
        channel.add("c", make_mask(shape=(2, 2, 2)))
    channel.remove("a")
    with pytest.raises(StructureError):
        channel.remove("a")
    assert set(channel.structures) == {"b"}


def test_geometric_normalization_returns_new_record():
    scan = make_volume(np.arange(27, dtype=np.int16).reshape(3, 3, 3), spacing=(2.0, 2.0, 2.0))
    mask = make_volume(np.ones((3, 3, 3), dtype=np.uint8), spacing=(2.0, 2.0, 2.0))
    metadata = VolumeMetadata(series_id="1.2", subject_id=0, channel="ct")
    channel = VolumeAndStructures(scan, {"a": mask}, metadata)
    channel.events.append("Subject 0: created")
    result = channel.geometric_normalization((1.0, 1.0, 1.0))
    assert result is not channel
    assert result.volume.dims == (5, 5, 5)
    assert result.structures["a"].dims == (5, 5, 5)
    assert result.structures["a"].array.all()
    assert result.events == channel.events
    assert channel.geometric_normalization(None) is channel
    with pytest.raises(ValueError):
        channel.geometric_normalization((1.0, 1.0))


def test_with_metadata():
    channel = make_channel({"a": make_mask()})
    renamed = channel.with_metadata(channel.metadata.update_channel("mr"))
    assert renamed.metadata.channel == "mr"
    assert channel.metadata.channel == "ct"
    assert set(renamed.structures) == {"a"}
