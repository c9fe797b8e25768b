"""Parsing of the textual dataset options and the settings overview written to info.txt."""

from __future__ import annotations

import logging
import re
import shlex
from typing import Iterable

from med2nii.core.types import (
    DatasetConfig,
    DerivedStructure,
    DerivedStructureOperator,
    NameMapping,
)

logger = logging.getLogger("med2nii")

NAME_PATTERN = r"[a-z0-9_][\.a-z0-9_\s]*"
SEPARATOR = ";"

_NAME = re.compile(NAME_PATTERN)
_NAME_MAPPING = re.compile(rf"({NAME_PATTERN}(\s*,\s*{NAME_PATTERN})*)\s*:(\+)?\s*({NAME_PATTERN})")
_PRIORITY = re.compile(rf"(^{NAME_PATTERN})(\s*:\s*)([-+]?\d+)")
_DERIVED = re.compile(rf"({NAME_PATTERN})=\s*({NAME_PATTERN})([+-])\s*({NAME_PATTERN})")


def split_list(text: str | None) -> list[str]:
    """Split a ``;`` separated option value, dropping blank entries."""
    if not text:
        return []
    return [part.strip() for part in text.split(SEPARATOR) if part.strip()]


def parse_name_mapping(text: str) -> NameMapping:
    """Parse ``"old1,old2:new"`` (rename) or ``"old1,old2:+new"`` (augment).

    Names are lower-cased; duplicate old names are dropped, keeping the first.
    """
    if not text or not text.strip():
        raise ValueError("The mapping must be a non-empty string.")
    text = text.lower()
    match = _NAME_MAPPING.search(text.strip())
    if match is None:
        raise ValueError(f"Provided mapping string '{text}' must be in the form oldName1,oldName2:newName")
    old_names: list[str] = []
    for old in _NAME.finditer(match.group(1).strip()):
        name = old.group(0).strip()
        if name not in old_names:
            old_names.append(name)
    return NameMapping(
        new_name=match.group(4).strip(),
        old_names=old_names,
        is_augmentation=match.group(3) == "+",
    )


def parse_name_mappings(
    mappings: Iterable[str], drop_names_containing: str | None = None
) -> list[NameMapping]:
    try:
        parsed = [parse_name_mapping(text) for text in mappings]
    except ValueError as e:
        raise ValueError(f"Unable to parse name mapping given in the --rename option: {e}") from e
    logger.debug(f"Parsed value of --rename to {len(parsed)} name mappings")
    if drop_names_containing:
        for mapping in parsed:
            mapping.drop_old_names_containing(drop_names_containing)
    return parsed


def parse_structure_priority(text: str) -> tuple[str, int] | None:
    """Parse ``"name:priority"``; blank text gives None."""
    if not text or not text.strip():
        return None
    text = text.lower()
    match = _PRIORITY.search(text.strip())
    if match is None:
        raise ValueError(
            f"Provided priority string '{text}' must be in the form structurename:priority "
            "(eg: a:0,b:1,c_d:2,c_e:2)"
        )
    return match.group(1).strip(), int(match.group(3))


def parse_structure_priorities(mappings: Iterable[str]) -> list[list[str]]:
    """Group ``name:priority`` entries by priority, lowest priority value first."""
    priorities: dict[str, int] = {}
    for text in mappings or []:
        parsed = parse_structure_priority(text)
        if parsed is None:
            continue
        name, priority = parsed
        if name in priorities:
            raise ValueError(f"Structure '{name}' is given a priority more than once")
        priorities[name] = priority
        logger.debug(f"Structure {name} is set to priority {priority}")
    groups: dict[int, list[str]] = {}
    for name, priority in priorities.items():
        groups.setdefault(priority, []).append(name)
    return [groups[key] for key in sorted(groups)]


def parse_priority_option(text: str | None) -> list[str]:
    """The --priority value as a list of names in descending priority.

    Either plain names (``"heart;lung;*"``) or ``name:priority`` entries, where
    a lower priority value comes first.
    """
    entries = [entry.lower() for entry in split_list(text)]
    if any(":" in entry for entry in entries):
        return [name for group in parse_structure_priorities(entries) for name in group]
    if len(set(entries)) != len(entries):
        raise ValueError(f"The priority list contains repeated names: {text}")
    return entries


def parse_derived_structure(text: str) -> DerivedStructure:
    """Parse ``"result=left+right"`` (union) or ``"result=left-right"`` (except)."""
    text = text.lower()
    match = _DERIVED.search(text.strip())
    if match is None:
        raise ValueError(
            f"Provided derived structure string '{text}' must be in the form 'result=leftSide-rightSide'"
        )
    operator = DerivedStructureOperator.UNION if match.group(3) == "+" else DerivedStructureOperator.EXCEPT
    return DerivedStructure(
        result=match.group(1).strip(),
        left_side=match.group(2).strip(),
        operator=operator,
        right_side=match.group(4).strip(),
    )


def parse_geometric_normalization(values: Iterable[float] | str | None) -> tuple[float, float, float] | None:
    """Spacing in mm for geometric normalisation: exactly 0 or 3 values."""
    if values is None:
        return None
    if isinstance(values, str):
        try:
            values = [float(v) for v in split_list(values)]
        except ValueError as e:
            raise ValueError(f"Geometric normalization spacing must be numeric: {e}") from e
    values = list(values)
    if not values:
        return None
    if len(values) != 3:
        raise ValueError("When using geometric normalization, exactly 3 values must be provided.")
    if any(v <= 0 for v in values):
        raise ValueError(f"Geometric normalization spacing must be positive, got {values}")
    return values[0], values[1], values[2]


def _join(parts) -> str:
    return SEPARATOR.join(str(p) for p in parts) if parts else ""


def settings_overview(config: DatasetConfig) -> str:
    """Human readable summary of every setting that influences dataset creation."""
    lines = [
        f"Commandline arguments: {config.command_line}",
        f"DICOM dataset name: {config.dicom_folder}",
        f"NIFTI dataset name: {config.nifti_folder}",
        f"Reference channel for registration: {config.reference_channel}",
        f"Structure priorities: {_join(config.ground_truth_priority)}",
        f"Structure renaming: {_join(config.raw_name_mappings)}",
        f"Structures that are created if missing in the Dicom dataset: {_join(config.create_if_missing)}",
        f"Geometric normalization: {_join(config.geometric_normalization_spacing)}",
        "Structure priorities unrolled:",
    ]
    if config.ground_truth_priority:
        lines.extend(f"Priority {i}: {name}" for i, name in enumerate(config.ground_truth_priority))
    else:
        lines.append("None given.")
    lines.append("Structure renaming unrolled:")
    if config.name_mappings:
        lines.extend(
            f"'{old}' -> '{mapping.new_name}'"
            for mapping in config.name_mappings
            for old in mapping.old_names
        )
    else:
        lines.append("None given.")
    if config.derived_structures:
        lines.append("Derived structures:")
        lines.extend(str(derived) for derived in config.derived_structures)
    return "\n".join(lines) + "\n"


def command_line_for_report(args: Iterable[str]) -> str:
    return " ".join(shlex.quote(arg) for arg in args)
