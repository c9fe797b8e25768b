"""Core data types for the med2nii pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from med2nii.core.volume import Volume3D


@dataclass(frozen=True)
class VolumeMetadata:
    """Identity of one loaded channel. Updates return new records."""

    series_id: str
    subject_id: int
    channel: str

    def update_channel(self, channel: str) -> VolumeMetadata:
        return replace(self, channel=channel)

    def update_series_id(self, prefix: str) -> VolumeMetadata:
        """Prefix the series id, keeping the old id visible for reports."""
        return replace(self, series_id=f"{prefix}{self.series_id}")


@dataclass
class NameMapping:
    """One renaming rule: any of ``old_names`` becomes ``new_name``.

    With ``is_augmentation`` the matched structure is merged into ``new_name``
    instead of replacing it.
    """

    new_name: str
    old_names: list[str]
    is_augmentation: bool = False

    def drop_old_names_containing(self, substring: str) -> bool:
        """Remove old names containing ``substring``; True when any were dropped."""
        substring = substring.lower()
        before = len(self.old_names)
        self.old_names = [n for n in self.old_names if substring not in n.lower()]
        return len(self.old_names) != before


class DerivedStructureOperator(Enum):
    UNION = "+"
    EXCEPT = "-"


@dataclass(frozen=True)
class DerivedStructure:
    """``result = left_side (+|-) right_side``."""

    result: str
    left_side: str
    operator: DerivedStructureOperator
    right_side: str

    def __str__(self) -> str:
        op = "+" if self.operator is DerivedStructureOperator.UNION else "\\"
        return f"{self.result} = {self.left_side} {op} {self.right_side}"


@dataclass
class DatasetConfig:
    """Configuration for converting a DICOM dataset into a NIfTI dataset."""

    dataset_root: Path
    dicom_folder: str
    nifti_folder: str
    ground_truth_priority: list[str] = field(default_factory=list)
    create_if_missing: list[str] = field(default_factory=list)
    name_mappings: list[NameMapping] = field(default_factory=list)
    raw_name_mappings: list[str] = field(default_factory=list)
    allow_name_clashes: bool = False
    drop_names_containing: str | None = None
    reference_channel: str = ""
    geometric_normalization_spacing: tuple[float, float, float] | None = None
    discard_invalid_subjects: bool = False
    require_all_ground_truth: bool = False
    derived_structures: list[DerivedStructure] = field(default_factory=list)
    compress: bool = True
    workers: int | None = None
    command_line: str = ""

    @property
    def dicom_path(self) -> Path:
        return Path(self.dataset_root) / self.dicom_folder

    @property
    def nifti_path(self) -> Path:
        return Path(self.dataset_root) / self.nifti_folder


@dataclass
class MutualExclusionResult:
    """Outcome of enforcing priority-based mutual exclusion."""

    unrecognized: list[str]
    masking_counts: dict[tuple[str, str], int] = field(default_factory=dict)
    remaining: dict[str, int] = field(default_factory=dict)


class SubjectStatus(Enum):
    CONVERTED = "converted"
    DISCARDED = "discarded"


@dataclass
class SubjectResult:
    """Per-subject conversion outcome handed back to the dataset pipeline."""

    subject_id: int
    status: SubjectStatus
    channels: list = field(default_factory=list)  # list[VolumeAndStructures]
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    events: list[str] = field(default_factory=list)

    @property
    def is_discarded(self) -> bool:
        return self.status is SubjectStatus.DISCARDED


@dataclass
class LoadedChannel:
    """A scan plus its named contour masks, as delivered by the DICOM reader."""

    metadata: VolumeMetadata
    volume: Volume3D
    structures: list[tuple[str, Volume3D]] = field(default_factory=list)


@dataclass
class DatasetSummary:
    """What ``create_dataset`` produced."""

    output_folder: Path
    results: list[SubjectResult] = field(default_factory=list)
    files_written: int = 0
    structure_counts: dict[str, int] = field(default_factory=dict)

    @property
    def converted(self) -> list[int]:
        return [r.subject_id for r in self.results if r.status is SubjectStatus.CONVERTED]

    @property
    def discarded(self) -> list[int]:
        return [r.subject_id for r in self.results if r.is_discarded]
