"""Analysis pipeline: per-subject statistics and outlier reports for a NIfTI dataset."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from med2nii._console import console
from med2nii.analysis.outliers import (
    CONDITION_COLUMNS,
    DETAILED_COLUMNS,
    PATIENT_COLUMNS,
    calculate_outliers,
    parse_subject_set,
)
from med2nii.analysis.statistics import STATISTIC_COLUMNS, StatisticValue, analyze_subject_volumes
from med2nii.core.volume import Volume3D
from med2nii.io.dataset_writer import DatasetFile, read_dataset_csv
from med2nii.io.nifti import load_volume

logger = logging.getLogger("med2nii")

SCAN_CHANNELS = ("ct", "image")
LABELS_CHANNEL = "labels"
MIN_SCAN_VALUE = -1000

STATISTICS_FILE = "statistics.csv"
DETAILED_OUTLIERS_FILE = "detailed_outliers.csv"
CONDITION_OUTLIERS_FILE = "condition_outlier_counts.csv"
PATIENT_OUTLIERS_FILE = "patient_outlier_counts.csv"


@dataclass
class AnalysisSummary:
    """What ``analyze_dataset`` produced."""

    output_folder: Path
    subjects: list[int] = field(default_factory=list)
    statistics_count: int = 0
    outlier_count: int = 0
    files: list[Path] = field(default_factory=list)


def group_by_subject(rows: list[DatasetFile]) -> dict[int, list[DatasetFile]]:
    grouped: dict[int, list[DatasetFile]] = {}
    for row in rows:
        grouped.setdefault(row.subject_id, []).append(row)
    return grouped


def load_subject(dataset_folder: Path, rows: list[DatasetFile]) -> tuple[Volume3D | None, list[str], list[Volume3D]]:
    """Load the scan and the binary structure masks of one subject.

    The scan is clipped from below at -1000 HU so that padding values do not
    dominate the intensity statistics. Channels that are neither the scan nor
    a uint8 mask are skipped.
    """
    image = None
    names: list[str] = []
    masks: list[Volume3D] = []
    for row in rows:
        channel = row.channel.lower()
        if channel == LABELS_CHANNEL:
            continue
        volume = load_volume(dataset_folder / row.file_path)
        if channel in SCAN_CHANNELS:
            image = volume
            if volume.array.size and volume.array.min() < MIN_SCAN_VALUE:
                image = volume.with_array(np.maximum(volume.array, volume.dtype.type(MIN_SCAN_VALUE)))
        elif volume.dtype == np.uint8:
            names.append(channel)
            masks.append(volume)
        else:
            logger.debug(f"Subject {row.subject_id}: skipping non-mask channel '{row.channel}'")
    return image, names, masks


def _write_report(path: Path, rows: list[tuple], columns: list[str]) -> Path:
    pd.DataFrame(rows, columns=columns).to_csv(path, index=False)
    return path


def analyze_dataset(
    dataset_folder: Path, statistics_folder: str = "statistics", subjects: str | None = ""
) -> AnalysisSummary:
    """Compute statistics for every (selected) subject, then report outliers across subjects."""
    dataset_folder = Path(dataset_folder)
    selected = parse_subject_set(subjects)
    grouped = group_by_subject(read_dataset_csv(dataset_folder))
    subject_ids = sorted(s for s in grouped if selected is None or s in selected)
    if not subject_ids:
        raise ValueError(f"No subjects to analyze in {dataset_folder}")

    output = dataset_folder / statistics_folder
    output.mkdir(parents=True, exist_ok=True)
    summary = AnalysisSummary(output_folder=output, subjects=subject_ids)
    statistics: dict[int, list[StatisticValue]] = {}

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Analyzing subjects...", total=len(subject_ids))
        for subject in subject_ids:
            progress.update(task, description=f"Subject {subject}")
            image, names, masks = load_subject(dataset_folder, grouped[subject])
            statistics[subject] = analyze_subject_volumes(image, names, masks)
            logger.info(f"Subject {subject}: {len(statistics[subject])} statistics over {len(names)} structures")
            progress.advance(task)

    rows = [stat.to_record(subject) for subject in subject_ids for stat in statistics[subject]]
    outliers = calculate_outliers(statistics)
    summary.statistics_count = len(rows)
    summary.outlier_count = len(outliers.detailed)
    summary.files = [
        _write_report(output / STATISTICS_FILE, rows, STATISTIC_COLUMNS),
        _write_report(output / DETAILED_OUTLIERS_FILE, outliers.detailed, DETAILED_COLUMNS),
        _write_report(output / CONDITION_OUTLIERS_FILE, outliers.condition_counts, CONDITION_COLUMNS),
        _write_report(output / PATIENT_OUTLIERS_FILE, outliers.patient_counts, PATIENT_COLUMNS),
    ]
    return summary
