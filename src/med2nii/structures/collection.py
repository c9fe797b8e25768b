"""A scan volume together with its named structure masks."""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np

from med2nii.core.errors import (
    DuplicateStructureError,
    StructureError,
    StructureNameClashError,
    VolumeSizeMismatchError,
)
from med2nii.core.types import LoadedChannel, NameMapping, VolumeMetadata
from med2nii.core.volume import MASK_BACKGROUND, Volume3D
from med2nii.ops.resampling import standardise_linear, standardise_nearest
from med2nii.structures.operations import parse_structure_operation

logger = logging.getLogger("med2nii")


class VolumeAndStructures:
    """Owns one channel of a subject: scan, masks and metadata.

    The mask dictionary is private to this record and is mutated in place by
    the rename/add/remove operations. Each record keeps a list of readable
    ``events`` describing what was changed, for the pipeline to report.
    """

    def __init__(
        self,
        volume: Volume3D,
        structures: dict[str, Volume3D],
        metadata: VolumeMetadata,
    ):
        if volume is None:
            raise ValueError("A scan volume is required")
        if metadata is None:
            raise ValueError("Volume metadata is required")
        for name, mask in structures.items():
            if mask.dims != volume.dims:
                raise VolumeSizeMismatchError(
                    f"Structure '{name}' has size {mask.dims}, but the scan has size {volume.dims}"
                )
        self.volume = volume
        self._structures = dict(structures)
        self.metadata = metadata
        self.events: list[str] = []

    @classmethod
    def from_loaded(
        cls, channel: LoadedChannel, lower_case: bool = True, drop_repeats: bool = False
    ) -> VolumeAndStructures:
        """Build from reader output; with ``drop_repeats`` the first of duplicate names wins."""
        structures: dict[str, Volume3D] = {}
        for name, mask in channel.structures:
            if lower_case:
                name = name.lower()
            if name in structures:
                if not drop_repeats:
                    raise DuplicateStructureError(
                        f"The volume contains multiple contours with the name '{name}'. "
                        f"The culprit is series {channel.metadata.series_id}"
                    )
                continue
            structures[name] = mask
        return cls(channel.volume, structures, channel.metadata)

    @property
    def structures(self) -> dict[str, Volume3D]:
        """Read-only view by convention; use add/remove/rename to change."""
        return self._structures

    @property
    def subject_id(self) -> int:
        return self.metadata.subject_id

    def _event(self, message: str) -> None:
        self.events.append(f"Subject {self.subject_id}: {message}")

    # Renaming -------------------------------------------------------------

    def rename_or_augment(
        self, old_name: str, new_name: str, allow_name_clashes: bool, is_augmentation: bool
    ) -> bool:
        """Apply one old-name -> new-name step.

        ``old_name`` may be an operation expression such as ``"a.minus.b"``;
        when both operands exist its result is used. Otherwise ``old_name`` is
        taken literally. Returns True when the caller should stop trying further
        old names for this rule. Augmentations always return False.
        """
        op = parse_structure_operation(old_name)
        if op is not None and op.left in self._structures and op.right in self._structures:
            computed = op.apply(self._structures)
            if is_augmentation:
                n_computed = int(np.count_nonzero(computed.array))
                self._event(f"computed structure from {old_name} has {n_computed} voxels")
                self._augment_and_diminish(new_name, computed, op.left)
                return False
            self._may_remove_or_raise(old_name, new_name, allow_name_clashes)
            self._structures[new_name] = computed
            self._event(
                f"created {new_name} by applying {op.kind.name.lower()} to {op.left} and {op.right}"
            )
            return True

        volume = self._structures.get(old_name)
        if volume is None:
            return False
        if new_name != old_name:
            if is_augmentation:
                self._augment(new_name, volume)
                return False
            self._may_remove_or_raise(old_name, new_name, allow_name_clashes)
            del self._structures[old_name]
            self._structures[new_name] = volume
            self._event(f"renamed {old_name} to {new_name}")
        return True

    def _augment(self, target_name: str, computed: Volume3D) -> None:
        """Write ``computed`` into the background voxels of ``target_name`` (created if absent)."""
        target = self._structures.get(target_name)
        if target is None:
            self._structures[target_name] = computed.copy()
            self._event(f"created {target_name} as an augmentation")
            return
        free = target.array == MASK_BACKGROUND
        n_already = int(target.length - np.count_nonzero(free))
        n_added = int(computed.array[free].sum(dtype=np.int64))
        target.array[free] = computed.array[free]
        self._event(f"added {n_added} voxels to {target_name} (on top of original {n_already})")

    def _diminish(self, name: str, computed: Volume3D) -> None:
        target = self._structures[name]
        consumed = computed.array > 0
        n_subtracted = int(target.array[consumed].sum(dtype=np.int64))
        n_left = int(target.array[~consumed].sum(dtype=np.int64))
        target.array[consumed] = MASK_BACKGROUND
        self._event(f"subtracted {n_subtracted} voxels from {name}, leaving {n_left}")

    def _augment_and_diminish(self, target_name: str, computed: Volume3D, source_name: str) -> None:
        """Merge ``computed`` into the target and remove it from the source as one step.

        Both masks are updated on copies that replace the originals only once
        both updates have succeeded.
        """
        snapshot = {
            name: self._structures[name].copy()
            for name in (target_name, source_name)
            if name in self._structures
        }
        events_before = len(self.events)
        try:
            self._augment(target_name, computed)
            self._diminish(source_name, computed)
        except Exception:
            for name in (target_name, source_name):
                self._structures.pop(name, None)
            self._structures.update(snapshot)
            del self.events[events_before:]
            raise

    def _may_remove_or_raise(self, old_name: str, new_name: str, allow_name_clashes: bool) -> None:
        if new_name not in self._structures:
            return
        if not allow_name_clashes:
            raise StructureNameClashError(
                f"Unable to perform the renaming from '{old_name}' to '{new_name}': "
                "A structure with this name already exists."
            )
        del self._structures[new_name]
        self._event(f"replaced existing structure {new_name}")

    def rename(
        self,
        mappings: Iterable[NameMapping] | None,
        allow_name_clashes: bool,
        throw_if_invalid: bool = True,
    ) -> bool:
        """Apply every renaming rule in order; False if any rule had to be skipped.

        Within a rule the old names are tried in order and the first one that
        succeeds ends the rule.
        """
        all_successful = True
        for mapping in mappings or []:
            valid = allow_name_clashes or self._mapping_can_be_applied(mapping, throw_if_invalid)
            if not valid:
                all_successful = False
                continue
            for old_name in mapping.old_names:
                if self.rename_or_augment(
                    old_name, mapping.new_name, allow_name_clashes, mapping.is_augmentation
                ):
                    break
        return all_successful

    def _mapping_can_be_applied(self, mapping: NameMapping, throw_if_invalid: bool) -> bool:
        if mapping.is_augmentation:
            return True
        names = [*mapping.old_names, mapping.new_name]
        found = [name for name in names if name in self._structures]
        if len(found) <= 1:
            return True
        message = (
            f"Subject {self.subject_id}: unable to perform the renaming from "
            f"'{','.join(mapping.old_names)}' to '{mapping.new_name}': "
            f"structures with names {','.join(found)} already exist."
        )
        if throw_if_invalid:
            raise StructureNameClashError(message)
        logger.error(message)
        self.events.append(message)
        return False

    # Add / remove ---------------------------------------------------------

    def add_empty_structures(self, names: Iterable[str] | None) -> None:
        for name in names or []:
            if name not in self._structures:
                self._structures[name] = self.volume.create_same_size(dtype=np.uint8)
                self._event(f"created empty structure {name}")

    def add(self, name: str, mask: Volume3D) -> None:
        if name in self._structures:
            raise StructureError(f"There is already a structure with name '{name}'")
        if mask.dims != self.volume.dims:
            raise VolumeSizeMismatchError(
                f"Structure '{name}' has size {mask.dims}, but the scan has size {self.volume.dims}"
            )
        self._structures[name] = mask

    def remove(self, name: str) -> None:
        if name not in self._structures:
            raise StructureError(f"There is no structure with name '{name}'")
        del self._structures[name]

    # Geometry -------------------------------------------------------------

    def geometric_normalization(
        self, spacing: tuple[float, float, float] | list[float] | None, workers: int | None = None
    ) -> VolumeAndStructures:
        """Resample scan (linear) and masks (nearest) to ``spacing``; no-op when unset."""
        if not spacing:
            return self
        if len(spacing) != 3:
            raise ValueError("Spacing must be given with exactly 3 values.")
        volume = standardise_linear(self.volume, spacing, workers)
        structures = {
            name: standardise_nearest(mask, spacing, workers)
            for name, mask in self._structures.items()
        }
        result = VolumeAndStructures(volume, structures, self.metadata)
        result.events = list(self.events)
        return result

    def with_metadata(self, metadata: VolumeMetadata) -> VolumeAndStructures:
        result = VolumeAndStructures(self.volume, self._structures, metadata)
        result.events = list(self.events)
        return result

    def __repr__(self) -> str:
        names = ", ".join(self._structures) or "none"
        return (
            f"VolumeAndStructures(subject={self.subject_id}, channel='{self.metadata.channel}', "
            f"structures: {names})"
        )
