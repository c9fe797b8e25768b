"""Quartile-based outlier detection over per-subject statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from med2nii.analysis.statistics import StatisticValue

DEFAULT_MULTIPLIER = 4.0

DETAILED_COLUMNS = ["subject", "statistic", "structure1", "structure2", "value", "side", "quartiles"]
CONDITION_COLUMNS = ["statistic", "structure1", "structure2", "low", "high", "total"]
PATIENT_COLUMNS = ["subject", "outliers"]

StatisticKey = tuple[str, str, str]


@dataclass(frozen=True)
class Outlier:
    value: float
    subject: int
    # Distance from the median in units of (median - Q1) or (Q3 - median).
    quartiles: float
    is_high: bool


@dataclass
class OutlierResults:
    """Rows of the three outlier reports, in report order."""

    detailed: list[tuple] = field(default_factory=list)
    condition_counts: list[tuple] = field(default_factory=list)
    patient_counts: list[tuple[int, int]] = field(default_factory=list)


def statistic_key(stat: StatisticValue) -> StatisticKey:
    return stat.statistic, stat.structure1, stat.structure2


def interpolated_value(values: list[float], index: float) -> float:
    """Linear interpolation between the two sorted values around a fractional index."""
    low = int(index)
    remainder = index - low
    if remainder == 0.0:
        return values[low]
    return values[low] * (1 - remainder) + values[low + 1] * remainder


def get_outliers(pairs: list[tuple[float, int]], multiplier: float = DEFAULT_MULTIPLIER) -> list[Outlier]:
    """Find outliers among ``(value, subject)`` pairs.

    A value is a low outlier below ``median - multiplier * (median - Q1)`` and a
    high outlier above ``median + multiplier * (Q3 - median)``. A zero step on
    either side disables that side.
    """
    if not pairs:
        return []
    pairs = sorted(pairs, key=lambda pair: pair[0])
    values = [value for value, _ in pairs]
    last = len(values) - 1
    median = interpolated_value(values, last * 0.5)
    quartile1 = interpolated_value(values, last * 0.25)
    quartile3 = interpolated_value(values, last * 0.75)
    low_step = median - quartile1
    high_step = quartile3 - median
    low_mark = median - multiplier * low_step
    high_mark = median + multiplier * high_step
    outliers = []
    for value, subject in pairs:
        if value < low_mark and low_step > 0:
            outliers.append(Outlier(value, subject, (median - value) / low_step, is_high=False))
        elif value > high_mark and high_step > 0:
            outliers.append(Outlier(value, subject, (value - median) / high_step, is_high=True))
    return outliers


def calculate_outliers(statistics: Mapping[int, list[StatisticValue]]) -> OutlierResults:
    """Group statistics by (statistic, structure1, structure2) across subjects and report outliers.

    Detailed rows are sorted by outlier strength, condition rows by outlier
    count and patient rows by count, then subject id.
    """
    data: dict[StatisticKey, list[tuple[float, int]]] = {}
    for subject in sorted(statistics):
        for stat in statistics[subject] or []:
            data.setdefault(statistic_key(stat), []).append((float(stat.value), subject))

    patient_counts: dict[int, int] = {}
    condition_counts: list[tuple] = []
    detailed: list[tuple] = []
    for key, pairs in data.items():
        outliers = get_outliers(pairs)
        n_low = sum(1 for o in outliers if not o.is_high)
        condition_counts.append((-len(outliers), key, (*key, n_low, len(outliers) - n_low, len(outliers))))
        for o in outliers:
            patient_counts[o.subject] = patient_counts.get(o.subject, 0) + 1
            side = "HI" if o.is_high else "LO"
            detailed.append((-abs(o.quartiles), o.subject, key, (o.subject, *key, o.value, side, o.quartiles)))
    detailed.sort(key=lambda item: item[:3])
    condition_counts.sort(key=lambda item: item[:2])
    patients = sorted((-count, subject) for subject, count in patient_counts.items())
    return OutlierResults(
        detailed=[row for *_, row in detailed],
        condition_counts=[row for *_, row in condition_counts],
        patient_counts=[(subject, -count) for count, subject in patients],
    )


def parse_subject_set(text: str | None) -> set[int] | None:
    """Parse ``"1,3-5"`` into ``{1, 3, 4, 5}``; empty text means all subjects (None)."""
    if text is None or not text.strip():
        return None
    result: set[int] = set()
    for term in text.split(","):
        term = term.strip()
        try:
            if "-" in term:
                low, high = term.split("-", 1)
                result.update(range(int(low), int(high) + 1))
            else:
                result.add(int(term))
        except ValueError as e:
            raise ValueError(f"Invalid subject selection '{term}', use numbers like '1,3-5'") from e
    return result
