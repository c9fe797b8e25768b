"""Dataset pipeline: DICOM subjects -> registration, renaming, exclusion -> NIfTI dataset."""

from __future__ import annotations

import logging

from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from med2nii._console import console
from med2nii.config import settings_overview
from med2nii.core.errors import MissingStructureError, StructureError, SubjectDiscardedError
from med2nii.core.types import (
    DatasetConfig,
    DatasetSummary,
    LoadedChannel,
    SubjectResult,
    SubjectStatus,
)
from med2nii.ops.intensity import clip_to_range_in_place, get_min_max
from med2nii.ops.resampling import Interpolation, resample_onto
from med2nii.structures.collection import VolumeAndStructures
from med2nii.structures.derived import add_derived_structures
from med2nii.structures.exclusion import (
    EXEMPT_PREFIX,
    WILDCARD,
    make_structures_mutually_exclusive_in_place,
)

logger = logging.getLogger("med2nii")

SCAN_INTERPOLATION = Interpolation.BSPLINE
STRUCTURE_INTERPOLATION = Interpolation.NEAREST


def validate_subject_items(items: list[LoadedChannel], discard_invalid_subjects: bool) -> bool:
    """Check the loaded channels of one subject before conversion.

    Duplicate contour names after lower-casing are only warned about. Contours
    on more than one channel are an error: the subject is discarded, or the
    run is aborted when ``discard_invalid_subjects`` is not set.
    """
    errors: list[str] = []
    seen: dict[str, str] = {}
    channel_with_structures = None
    for item in items:
        meta = item.metadata
        names = ", ".join(name for name, _ in item.structures)
        logger.info(f"Subject {meta.subject_id}: series {meta.series_id}, channel '{meta.channel}': {names}")
        if not item.structures:
            continue
        if channel_with_structures is not None:
            errors.append(
                f"Series {meta.series_id} has structures on multiple channels: "
                f"{channel_with_structures} and {meta.channel}."
            )
        else:
            channel_with_structures = meta.channel
        for name, _ in item.structures:
            lower = name.lower()
            other_series = seen.get(lower)
            if other_series is None:
                seen[lower] = meta.series_id
                continue
            message = (
                f"Subject {meta.subject_id}: after conversion to lower case, there is more than "
                f"one structure with name '{lower}'"
            )
            if other_series == meta.series_id:
                message += f" in series {meta.series_id}"
            else:
                message += f". Affected series are {meta.series_id} and {other_series}"
            logger.warning(message)

    if errors:
        for message in errors:
            logger.error(message)
        if not discard_invalid_subjects:
            raise StructureError(
                "The dataset contains invalid structures. Inspect the console for details. "
                f"First error: {errors[0]}"
            )
        return False
    return True


def register_subject_volumes(
    channels: list[VolumeAndStructures], reference_channel: str | None, workers: int | None = None
) -> list[VolumeAndStructures]:
    """Resample every channel onto the reference channel's grid; reference first."""
    if not channels:
        raise ValueError("The subject data must be non-empty")
    if not reference_channel:
        return list(channels)
    per_channel: dict[str, VolumeAndStructures] = {}
    for item in channels:
        channel = item.metadata.channel
        if channel in per_channel:
            raise ValueError(f"Data contains multiple volumes for channel '{channel}'")
        per_channel[channel] = item
    if reference_channel not in per_channel:
        raise ValueError(f"Data does not contain the reference channel '{reference_channel}'")
    reference = per_channel[reference_channel]
    others = [item for name, item in per_channel.items() if name != reference_channel]
    return [reference, *resample_volumes_to_reference(reference, others, workers)]


def resample_volumes_to_reference(
    reference: VolumeAndStructures, others: list[VolumeAndStructures], workers: int | None = None
) -> list[VolumeAndStructures]:
    """Scans are resampled with a cubic B-spline and clipped to their original
    range, masks with nearest neighbour. Channel and structure names must be
    unique across the subject.
    """
    subject_id = reference.subject_id
    reference_name = reference.metadata.channel
    known = {reference_name}
    result = []
    for item in others:
        channel = item.metadata.channel
        if channel in known:
            raise ValueError(f"Subject {subject_id}: channel '{channel}' is present multiple times.")
        known.add(channel)
        logger.info(f"Subject {subject_id}: registering the scan of channel '{channel}' onto '{reference_name}'")
        value_range = get_min_max(item.volume)
        scan = resample_onto(reference.volume, item.volume, SCAN_INTERPOLATION, workers=workers)
        clip_to_range_in_place(scan, value_range)
        structures = {}
        for name, mask in item.structures.items():
            if name in known:
                raise ValueError(f"Subject {subject_id}: channel '{name}' is present multiple times.")
            known.add(name)
            logger.debug(f"Subject {subject_id}: registering structure '{name}'")
            structures[name] = resample_onto(
                reference.volume, mask, STRUCTURE_INTERPOLATION, workers=workers
            )
        metadata = item.metadata.update_series_id(
            f"Resampling on '{reference_name}' via '{SCAN_INTERPOLATION.name}' and "
            f"'{STRUCTURE_INTERPOLATION.name}' of "
        ).update_channel(f"{channel}_onto_{reference_name}")
        registered = VolumeAndStructures(scan, structures, metadata)
        registered.events = list(item.events)
        result.append(registered)
    return result


def _log_exclusion(subject_id: int, exclusion) -> list[str]:
    messages = [
        f"Subject {subject_id}: {count} voxels of {lower} were masked out by {higher}, "
        f"leaving {exclusion.remaining.get(lower, 0)}"
        for (higher, lower), count in exclusion.masking_counts.items()
    ]
    for message in messages:
        logger.info(message)
    return messages


def convert_single_subject(channels: list[VolumeAndStructures], config: DatasetConfig) -> SubjectResult:
    """Register, rename, exclude, check, normalise and derive for one subject.

    Soft failures (when ``config.discard_invalid_subjects`` is set) give a
    DISCARDED result; hard failures propagate.
    """
    volumes = register_subject_volumes(channels, config.reference_channel, config.workers)
    main = next((v for v in volumes if v.structures), volumes[0])
    subject_id = main.subject_id
    result = SubjectResult(subject_id=subject_id, status=SubjectStatus.CONVERTED)

    try:
        renamed = main.rename(
            config.name_mappings,
            allow_name_clashes=config.allow_name_clashes,
            throw_if_invalid=not config.discard_invalid_subjects,
        )
        if not renamed:
            raise SubjectDiscardedError(subject_id, "structure renaming failed")
        main.add_empty_structures(config.create_if_missing)

        priority = config.ground_truth_priority
        if priority:
            exclusion = make_structures_mutually_exclusive_in_place(main.structures, priority, config.workers)
            result.events.extend(_log_exclusion(subject_id, exclusion))
            for name in exclusion.unrecognized:
                logger.info(f"Subject {subject_id}: removing structure named {name}")
                main.remove(name)
            if config.require_all_ground_truth:
                wanted = dict.fromkeys(
                    name.lstrip(EXEMPT_PREFIX) for name in priority if name != WILDCARD
                )
                missing = [name for name in wanted if name not in main.structures]
                if missing:
                    message = f"Subject {subject_id}: Error: no structure(s) named {', '.join(missing)}"
                    if not config.discard_invalid_subjects:
                        raise MissingStructureError(message)
                    logger.info(message)
                    raise SubjectDiscardedError(subject_id, message)

        spacing = config.geometric_normalization_spacing
        volumes = [v.geometric_normalization(spacing, config.workers) for v in volumes]
        for derived in config.derived_structures:
            try:
                add_derived_structures(volumes, derived)
            except StructureError as e:
                if not config.discard_invalid_subjects:
                    raise
                logger.info(f"Subject {subject_id}: {e}")
                raise SubjectDiscardedError(subject_id, str(e)) from e
    except SubjectDiscardedError as e:
        result.status = SubjectStatus.DISCARDED
        result.errors.append(e.reason)
        result.events.extend(main.events)
        return result

    for volume in volumes:
        for event in volume.events:
            logger.info(event)
        result.events.extend(volume.events)
    logger.info(f"Subject {subject_id}: has all required structures")
    result.channels = volumes
    return result


def _subject_status(result: SubjectResult) -> str:
    if result.status is SubjectStatus.CONVERTED:
        return f"Subject {result.subject_id}: converted with {sum(len(c.structures) for c in result.channels)} structures"
    reason = "; ".join(result.errors) or result.status.value
    return f"Subject {result.subject_id}: {result.status.value} ({reason})"


def create_dataset(config: DatasetConfig) -> DatasetSummary:
    """Convert the DICOM dataset named in ``config`` into a new NIfTI dataset folder."""
    from med2nii.io.dataset_writer import DATASET_STATUS_FILE, DatasetWriter
    from med2nii.io.dicom_reader import load_subject_folder, subject_folders

    output = config.nifti_path
    folders = subject_folders(config.dicom_path)
    if output.exists():
        raise FileExistsError(f"The output dataset folder already exists: {output}")
    output.mkdir(parents=True)

    writer = DatasetWriter(output, compress=config.compress)
    summary = DatasetSummary(output_folder=output)
    patient_ids: list[str] = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Converting subjects...", total=len(folders))
        for folder in folders:
            progress.update(task, description=f"Subject folder {folder.name}")
            try:
                items = load_subject_folder(folder, patient_ids)
            except ValueError as e:
                if not config.discard_invalid_subjects:
                    raise
                logger.warning(f"Skipping subject folder {folder.name}: {e}")
                progress.advance(task)
                continue
            if validate_subject_items(items, config.discard_invalid_subjects):
                channels = [
                    VolumeAndStructures.from_loaded(item, lower_case=True, drop_repeats=True)
                    for item in items
                ]
                result = writer.write_subject(
                    channels, lambda c: convert_single_subject(c, config)
                )
            else:
                result = SubjectResult(
                    subject_id=items[0].metadata.subject_id,
                    status=SubjectStatus.DISCARDED,
                    errors=["structures on multiple channels"],
                )
            summary.results.append(result)
            progress.advance(task)

    writer.write_dataset_csv()
    status = [settings_overview(config), "Per-subject status information:\n", writer.structure_report()]
    status.extend(f"{_subject_status(r)}\n" for r in summary.results)
    writer.write_text(DATASET_STATUS_FILE, "".join(status))

    summary.files_written = len(writer.written_volumes)
    summary.structure_counts = dict(writer.structure_counts)
    return summary


def print_dataset_summary(summary: DatasetSummary) -> None:
    """Display a Rich table of per-structure counts and the subject outcome."""
    table = Table(title=f"NIfTI dataset in {summary.output_folder}")
    table.add_column("Structure", style="cyan")
    table.add_column("Subjects", justify="right")
    for name, count in sorted(summary.structure_counts.items()):
        table.add_row(name, str(count))
    console.print(table)
    console.print(
        f"Converted {len(summary.converted)} subject(s), "
        f"discarded {len(summary.discarded)}, wrote {summary.files_written} files."
    )
