"""Writes converted subjects as ``<subject>/<channel>.nii.gz`` plus dataset.csv and info.txt."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

import pandas as pd

from med2nii.core.types import SubjectResult, VolumeMetadata
from med2nii.core.volume import Volume3D
from med2nii.io.nifti import save_volume

logger = logging.getLogger("med2nii")

DATASET_CSV_FILE = "dataset.csv"
DATASET_STATUS_FILE = "info.txt"
DATASET_CSV_COLUMNS = ["subject", "filePath", "channel", "seriesId"]

# Path separators and characters Windows refuses in file names.
_UNSAFE_FILE_CHARS = re.compile(r'[\\/:*?"<>|]')


def safe_file_stem(name: str) -> str:
    """Channel or structure name usable as a file name; the CSV keeps the real name."""
    stem = _UNSAFE_FILE_CHARS.sub("_", name).strip(" .")
    return stem or "_"


@dataclass(frozen=True)
class VolumeWriteInfo:
    """Where one volume of the dataset was written, relative to the dataset folder."""

    metadata: VolumeMetadata
    path: str

    def __post_init__(self):
        if not self.path or not self.path.strip():
            raise ValueError("The path of a written volume must not be empty")

    @staticmethod
    def create_file_name(metadata: VolumeMetadata, compress: bool = True) -> str:
        extension = ".nii.gz" if compress else ".nii"
        return f"{metadata.subject_id}/{safe_file_stem(metadata.channel)}{extension}"

    def to_record(self) -> dict:
        m = self.metadata
        return {"subject": m.subject_id, "filePath": self.path, "channel": m.channel, "seriesId": m.series_id}


def dataset_frame(files: Iterable[VolumeWriteInfo]) -> pd.DataFrame:
    return pd.DataFrame([info.to_record() for info in files], columns=DATASET_CSV_COLUMNS)


@dataclass(frozen=True)
class DatasetFile:
    """One row of a dataset.csv file."""

    subject_id: int
    file_path: str
    channel: str
    series_id: str | None = None


def read_dataset_csv(path: Path) -> list[DatasetFile]:
    """Parse dataset.csv by column position: subject, path, channel and an optional series id."""
    path = Path(path)
    if path.is_dir():
        path = path / DATASET_CSV_FILE
    if not path.exists():
        raise FileNotFoundError(f"Dataset file not found: {path}")
    frame = pd.read_csv(path, dtype=str, keep_default_na=False, skip_blank_lines=True)
    if frame.shape[1] < 3:
        raise ValueError(
            f"Invalid csv file: found {frame.shape[1]} columns, "
            "expected at least 3 [subject,path,channel,...]"
        )
    logger.info(f"The dataset contains a total of {len(frame)} data lines.")
    files = []
    for row in frame.itertuples(index=False):
        series_id = row[3].strip() if len(row) > 3 else None
        files.append(
            DatasetFile(
                subject_id=int(row[0].strip()),
                file_path=row[1].lstrip("\\/").strip(),
                channel=row[2].strip(),
                series_id=series_id,
            )
        )
    return files


class DatasetWriter:
    """Writes subjects into a dataset folder and remembers every file it wrote."""

    def __init__(self, dataset_root: Path, compress: bool = True):
        self.dataset_root = Path(dataset_root)
        self.compress = compress
        self._written: list[VolumeWriteInfo] = []
        self.structure_counts: Counter[str] = Counter()
        self.subject_count = 0

    @property
    def written_volumes(self) -> list[VolumeWriteInfo]:
        return list(self._written)

    def write_text(self, file_name: str, text: str) -> Path:
        path = self.dataset_root / file_name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def write_volume(self, volume: Volume3D, metadata: VolumeMetadata) -> VolumeWriteInfo:
        file_name = VolumeWriteInfo.create_file_name(metadata, self.compress)
        save_volume(volume, self.dataset_root / file_name)
        info = VolumeWriteInfo(metadata, file_name)
        self._written.append(info)
        return info

    def write_channel(self, channel) -> list[VolumeWriteInfo]:
        """Write the scan of a VolumeAndStructures and each structure as its own channel."""
        infos = [self.write_volume(channel.volume, channel.metadata)]
        for name, mask in channel.structures.items():
            infos.append(self.write_volume(mask, channel.metadata.update_channel(name)))
            self.structure_counts[name] += 1
        return infos

    def write_subject(self, items: list, converter: Callable[[list], SubjectResult]) -> SubjectResult:
        """Convert one subject's channels and write every channel of the result.

        Any failure is re-raised naming the subject and series it came from.
        """
        self.subject_count += 1
        try:
            converted = converter(items)
            for channel in converted.channels:
                self.write_channel(channel)
        except Exception as e:
            first = items[0].metadata
            raise RuntimeError(
                f"Subject {first.subject_id} (series {first.series_id}) failed: {e}"
            ) from e
        return converted

    def structure_report(self) -> str:
        return "".join(
            f"Structure '{name}' was present in {count} out of {self.subject_count} "
            "(subject, channel) pairs.\n"
            for name, count in self.structure_counts.items()
        )

    def write_dataset_csv(self) -> Path:
        path = self.dataset_root / DATASET_CSV_FILE
        dataset_frame(self._written).to_csv(path, index=False)
        return path
