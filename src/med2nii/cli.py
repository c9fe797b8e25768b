"""CLI entry point for med2nii."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer

from med2nii import __version__
from med2nii._console import console, err_console, print_error, setup_logging

app = typer.Typer(
    name="med2nii",
    help="Convert DICOM CT + RT structure datasets to NIfTI datasets and analyze them.",
    add_completion=False,
)

logger = logging.getLogger("med2nii")


def version_callback(value: bool):
    if value:
        console.print(f"med2nii {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
):
    """Convert DICOM CT + RT structure datasets to NIfTI datasets and analyze them."""


def _run_guarded(action, verbose: bool):
    """Run ``action`` and map failures onto exit codes."""
    try:
        return action()
    except FileExistsError as e:
        print_error(str(e))
        raise typer.Exit(code=2)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(code=1)
    except FileNotFoundError as e:
        print_error(str(e))
        raise typer.Exit(code=4)
    except Exception as e:
        print_error(str(e))
        if verbose:
            import traceback
            err_console.print(traceback.format_exc())
        raise typer.Exit(code=1)


@app.command()
def dataset(
    root: Path = typer.Option(
        ...,
        "--root",
        help="Folder that holds the DICOM dataset and receives the NIfTI dataset.",
    ),
    dicom: str = typer.Option(
        ...,
        "--dicom",
        help="Name of the DICOM dataset folder under --root, one subfolder per subject.",
    ),
    nifti: str = typer.Option(
        ...,
        "--nifti",
        help="Name of the NIfTI dataset folder to create under --root. Must not exist.",
    ),
    priority: str = typer.Option(
        None,
        "--priority",
        help='Structures in descending priority, e.g. "heart;lung;*". Prefix "+" exempts a '
        'structure from exclusion, "*" keeps all unlisted structures.',
    ),
    rename: str = typer.Option(
        None,
        "--rename",
        help='Name mappings "old1,old2:new" or "old:+new" (merge), separated by ";".',
    ),
    create_if_missing: str = typer.Option(
        None,
        "--create-if-missing",
        help="Structures that are added as empty masks when absent, separated by \";\".",
    ),
    derived: str = typer.Option(
        None,
        "--derived",
        help='Derived structures "result=left+right" or "result=left-right", separated by ";".',
    ),
    register_on: str = typer.Option(
        None,
        "--register-on",
        help="Channel that all other channels of a subject are resampled onto.",
    ),
    geo_norm: str = typer.Option(
        None,
        "--geo-norm",
        help='Resample every subject to this spacing in mm, e.g. "1;1;3".',
    ),
    allow_name_clashes: bool = typer.Option(
        False,
        "--allow-name-clashes",
        help="Let renaming overwrite an existing structure of the target name.",
    ),
    drop_names_containing: str = typer.Option(
        None,
        "--drop-names-containing",
        help="Ignore old names in --rename that contain this text.",
    ),
    discard_invalid_subjects: bool = typer.Option(
        False,
        "--discard-invalid-subjects",
        help="Skip subjects with invalid structures instead of stopping.",
    ),
    require_all_ground_truth: bool = typer.Option(
        False,
        "--require-all-ground-truth",
        help="Every structure in --priority must be present in each subject.",
    ),
    no_compress: bool = typer.Option(
        False,
        "--no-compress",
        help="Write .nii files instead of .nii.gz.",
    ),
    workers: int = typer.Option(
        None,
        "--workers",
        help="Threads for slab-parallel resampling and exclusion (default: CPU count).",
        min=1,
    ),
    verbose: bool = typer.Option(
        False,
        "-v",
        "--verbose",
        help="Show detailed processing information.",
    ),
):
    """Convert a DICOM dataset (CT + RTSTRUCT per subject) into a NIfTI dataset."""
    setup_logging(verbose)

    def run():
        from med2nii._pipeline_dataset import create_dataset, print_dataset_summary
        from med2nii.config import (
            command_line_for_report,
            parse_derived_structure,
            parse_geometric_normalization,
            parse_name_mappings,
            parse_priority_option,
            split_list,
        )
        from med2nii.core.types import DatasetConfig

        raw_mappings = split_list(rename)
        config = DatasetConfig(
            dataset_root=root,
            dicom_folder=dicom,
            nifti_folder=nifti,
            ground_truth_priority=parse_priority_option(priority),
            create_if_missing=[name.lower() for name in split_list(create_if_missing)],
            name_mappings=parse_name_mappings(raw_mappings, drop_names_containing),
            raw_name_mappings=raw_mappings,
            allow_name_clashes=allow_name_clashes,
            drop_names_containing=drop_names_containing,
            reference_channel=register_on or "",
            geometric_normalization_spacing=parse_geometric_normalization(geo_norm),
            discard_invalid_subjects=discard_invalid_subjects,
            require_all_ground_truth=require_all_ground_truth,
            derived_structures=[parse_derived_structure(text) for text in split_list(derived)],
            compress=not no_compress,
            workers=workers,
            command_line=command_line_for_report(sys.argv),
        )
        summary = create_dataset(config)
        print_dataset_summary(summary)

    _run_guarded(run, verbose)


@app.command()
def analyze(
    dataset_folder: Path = typer.Argument(
        ...,
        help="NIfTI dataset folder containing dataset.csv.",
    ),
    statistics_folder: str = typer.Option(
        "statistics",
        "--statistics-folder",
        help="Subfolder of the dataset that receives the CSV reports.",
    ),
    subjects: str = typer.Option(
        "",
        "--subjects",
        help='Subjects to analyze, e.g. "1,3-5" (default: all).',
    ),
    verbose: bool = typer.Option(
        False,
        "-v",
        "--verbose",
        help="Show detailed processing information.",
    ),
):
    """Compute per-subject statistics and cross-subject outliers of a NIfTI dataset."""
    setup_logging(verbose)

    def run():
        from med2nii._pipeline_analysis import analyze_dataset

        summary = analyze_dataset(dataset_folder, statistics_folder, subjects)
        console.print(
            f"Analyzed {len(summary.subjects)} subject(s): {summary.statistics_count} statistics, "
            f"{summary.outlier_count} outliers. Reports in {summary.output_folder}"
        )

    _run_guarded(run, verbose)
