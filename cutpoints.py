"""
Data-driven cutpoint search on a continuous predictor.

Candidate thresholds are taken from a trimmed quantile grid of the predictor.
Every candidate partition of the cohort is scored with a log-rank chi-square,
and the best partition with adequately sized groups is selected afterwards.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

import numpy as np
import pandas as pd
import pandera.pandas as pa
from lifelines.statistics import multivariate_logrank_test

from schemas import DoubleCutpointTableSchema, SingleCutpointTableSchema

logger = logging.getLogger(__name__)

DEFAULT_QUANTILE_STEP = 0.01
DEFAULT_TRIM_POINTS = 5
DEFAULT_MIN_GROUP_SIZE = 5

SINGLE_COLUMNS = ["threshold", "low_n", "high_n", "chisq", "min_n"]
DOUBLE_COLUMNS = ["cut1", "cut2", "low_n", "mid_n", "high_n", "chisq", "min_n"]
COUNT_COLUMNS = ("low_n", "mid_n", "high_n", "min_n")

DEFAULT_GROUP_LABELS = {
    1: ("Small", "Large"),
    2: ("Small", "Medium", "Large"),
}

RESULT_SCHEMAS = {
    "single": SingleCutpointTableSchema,
    "double": DoubleCutpointTableSchema,
}


def candidate_thresholds(
    values: Sequence[float] | np.ndarray,
    step: float = DEFAULT_QUANTILE_STEP,
    trim: int = DEFAULT_TRIM_POINTS,
) -> np.ndarray:
    """
    Empirical quantiles of ``values`` on a ``step`` probability grid with the
    lowest and highest ``trim`` grid points removed.

    With the defaults this is the 5th..95th percentile, 91 values. Tied
    quantiles are kept so the grid length depends only on ``step`` and
    ``trim``. An empty input has no candidates.
    """
    if not 0 < step <= 1:
        raise ValueError(f"quantile step must be in (0, 1], got {step}.")
    if trim < 0:
        raise ValueError(f"trim must be non-negative, got {trim}.")
    n_points = int(round(1 / step)) + 1
    if 2 * trim >= n_points:
        raise ValueError(
            f"Trimming {trim} points from each tail leaves no candidates "
            f"on a {n_points}-point quantile grid."
        )

    array = np.asarray(values, dtype=float)
    if array.size == 0:
        return np.empty(0, dtype=float)
    probabilities = np.linspace(0.0, 1.0, n_points)
    return np.quantile(array, probabilities)[trim : n_points - trim]


def conditional_thresholds(
    predictor: np.ndarray,
    lower: float,
    step: float = DEFAULT_QUANTILE_STEP,
    trim: int = DEFAULT_TRIM_POINTS,
) -> np.ndarray:
    """Second-cutpoint grid built only from predictor values above ``lower``."""
    return candidate_thresholds(predictor[predictor > lower], step=step, trim=trim)


def assign_groups(values: np.ndarray, cutpoints: Sequence[float]) -> np.ndarray:
    """
    Integer group index per value: 0 for ``value <= cutpoints[0]``, ``i`` for
    ``cutpoints[i-1] < value <= cutpoints[i]`` and ``len(cutpoints)`` above
    the last cutpoint.
    """
    return np.searchsorted(np.asarray(cutpoints, dtype=float), values, side="left")


def logrank_chisq(
    times: np.ndarray,
    events: np.ndarray,
    groups: np.ndarray,
    n_groups: int,
) -> float:
    """
    Log-rank chi-square across ``n_groups`` labelled groups.

    A partition with an empty group has no defined statistic and scores 0.0,
    as does a cohort without any observed events.
    """
    counts = np.bincount(groups, minlength=n_groups)
    if len(counts) != n_groups or (counts == 0).any():
        return 0.0
    result = multivariate_logrank_test(times, groups, events)
    statistic = float(result.test_statistic)
    if not np.isfinite(statistic):
        return 0.0
    return max(statistic, 0.0)


def _cohort_arrays(
    predictor: Iterable[float],
    times: Iterable[float],
    events: Iterable[bool],
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    predictor_array = np.asarray(predictor, dtype=float)
    times_array = np.asarray(times, dtype=float)
    events_array = np.asarray(events, dtype=bool)

    lengths = {len(predictor_array), len(times_array), len(events_array)}
    if len(lengths) != 1:
        raise ValueError(
            "Predictor, time and event sequences must have equal lengths "
            f"(got {len(predictor_array)}, {len(times_array)}, {len(events_array)})."
        )
    if np.isnan(predictor_array).any():
        raise ValueError("Predictor values must not contain missing entries.")
    if np.isnan(times_array).any() or (times_array < 0).any():
        raise ValueError("Event times must be non-negative and non-missing.")
    return predictor_array, times_array, events_array


def _score_partition(
    predictor: np.ndarray,
    times: np.ndarray,
    events: np.ndarray,
    cutpoints: Sequence[float],
) -> dict[str, Any]:
    n_groups = len(cutpoints) + 1
    groups = assign_groups(predictor, cutpoints)
    counts = np.bincount(groups, minlength=n_groups)
    return {
        "counts": [int(count) for count in counts],
        "chisq": logrank_chisq(times, events, groups, n_groups),
        "min_n": int(counts.min()),
    }


def as_result_table(records: list[dict[str, Any]], columns: list[str]) -> pd.DataFrame:
    table = pd.DataFrame.from_records(records, columns=columns)
    dtypes = {
        column: ("int64" if column in COUNT_COLUMNS else "float64")
        for column in columns
    }
    return table.astype(dtypes)


def single_cutpoint_search(
    predictor: Iterable[float],
    times: Iterable[float],
    events: Iterable[bool],
    step: float = DEFAULT_QUANTILE_STEP,
    trim: int = DEFAULT_TRIM_POINTS,
) -> pd.DataFrame:
    """
    Score every candidate single threshold.

    Returns one row per candidate in grid order with columns
    ``threshold, low_n, high_n, chisq, min_n``. Subjects at or below the
    threshold form the low group.
    """
    predictor, times, events = _cohort_arrays(predictor, times, events)
    records: list[dict[str, Any]] = []
    for threshold in candidate_thresholds(predictor, step=step, trim=trim):
        score = _score_partition(predictor, times, events, [threshold])
        low_n, high_n = score["counts"]
        records.append(
            {
                "threshold": float(threshold),
                "low_n": low_n,
                "high_n": high_n,
                "chisq": score["chisq"],
                "min_n": score["min_n"],
            }
        )
    logger.debug("Scored %d single cutpoint candidates", len(records))
    return as_result_table(records, SINGLE_COLUMNS)


def threshold_pairs(
    predictor: np.ndarray,
    step: float = DEFAULT_QUANTILE_STEP,
    trim: int = DEFAULT_TRIM_POINTS,
) -> Iterator[tuple[float, float]]:
    """
    Enumerate ``(cut1, cut2)`` pairs. The second grid is recomputed for every
    ``cut1`` from the subjects strictly above it.
    """
    for cut1 in candidate_thresholds(predictor, step=step, trim=trim):
        second_grid = conditional_thresholds(predictor, cut1, step=step, trim=trim)
        logger.debug(
            "cut1=%.4g: %d subjects above, %d second cutpoints",
            cut1,
            int((predictor > cut1).sum()),
            len(second_grid),
        )
        for cut2 in second_grid:
            yield float(cut1), float(cut2)


def double_cutpoint_search(
    predictor: Iterable[float],
    times: Iterable[float],
    events: Iterable[bool],
    step: float = DEFAULT_QUANTILE_STEP,
    trim: int = DEFAULT_TRIM_POINTS,
) -> pd.DataFrame:
    """
    Score every ordered threshold pair as a three-group split: ``<= cut1``,
    ``(cut1, cut2]`` and ``> cut2``.

    Rows appear in enumeration order with columns
    ``cut1, cut2, low_n, mid_n, high_n, chisq, min_n``.
    """
    predictor, times, events = _cohort_arrays(predictor, times, events)
    pairs = list(threshold_pairs(predictor, step=step, trim=trim))
    logger.info(
        "Double cutpoint search: scoring %d threshold pairs (one log-rank test each)",
        len(pairs),
    )
    records: list[dict[str, Any]] = []
    for cut1, cut2 in pairs:
        score = _score_partition(predictor, times, events, [cut1, cut2])
        low_n, mid_n, high_n = score["counts"]
        records.append(
            {
                "cut1": cut1,
                "cut2": cut2,
                "low_n": low_n,
                "mid_n": mid_n,
                "high_n": high_n,
                "chisq": score["chisq"],
                "min_n": score["min_n"],
            }
        )
    logger.debug("Scored %d double cutpoint candidates", len(records))
    return as_result_table(records, DOUBLE_COLUMNS)


def select_best_single(
    table: pd.DataFrame, min_group_size: int = DEFAULT_MIN_GROUP_SIZE
) -> Optional[float]:
    """
    Threshold with the largest chi-square among rows whose smaller group has
    at least ``min_group_size`` subjects. Ties resolve to the median of the
    tied thresholds.
    """
    eligible = table[table["min_n"] >= min_group_size]
    if eligible.empty:
        return None
    best = eligible["chisq"].max()
    tied = eligible.loc[eligible["chisq"] == best, "threshold"]
    return float(np.median(tied.to_numpy()))


def select_best_double(
    table: pd.DataFrame, min_group_size: int = DEFAULT_MIN_GROUP_SIZE
) -> Optional[tuple[float, float]]:
    """First-enumerated pair with the largest chi-square among eligible rows."""
    eligible = table[table["min_n"] >= min_group_size]
    if eligible.empty:
        return None
    position = int(np.argmax(eligible["chisq"].to_numpy()))
    row = eligible.iloc[position]
    return float(row["cut1"]), float(row["cut2"])


def classify_by_cutpoints(
    values: Iterable[float],
    cutpoints: Sequence[float],
    labels: Optional[Sequence[str]] = None,
) -> pd.Categorical:
    """
    Label each value with an ordered size group.

    Boundaries are closed on the lower side: a value equal to a cutpoint
    belongs to the group below it. Missing values stay missing.
    """
    cuts = [float(cut) for cut in cutpoints]
    if any(later <= earlier for earlier, later in zip(cuts, cuts[1:])):
        raise ValueError(f"Cutpoints must be strictly increasing, got {cuts}.")
    if labels is None:
        if len(cuts) not in DEFAULT_GROUP_LABELS:
            raise ValueError(f"No default labels for {len(cuts)} cutpoints.")
        labels = DEFAULT_GROUP_LABELS[len(cuts)]
    if len(labels) != len(cuts) + 1:
        raise ValueError(
            f"{len(cuts)} cutpoints need {len(cuts) + 1} labels, got {len(labels)}."
        )

    array = np.asarray(values, dtype=float)
    codes = np.where(np.isnan(array), -1, assign_groups(array, cuts))
    return pd.Categorical.from_codes(codes, categories=list(labels), ordered=True)


def validate_result_table(table: pd.DataFrame, kind: str) -> pd.DataFrame:
    schema = RESULT_SCHEMAS.get(kind)
    if schema is None:
        raise ValueError(
            f"Unknown result table kind {kind!r}; expected one of {sorted(RESULT_SCHEMAS)}."
        )
    try:
        return schema.validate(table)
    except pa.errors.SchemaError as exc:
        raise ValueError(f"Cutpoint result table failed schema validation: {exc}") from exc


def save_result_table(table: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, index=False)
    return path


def load_result_table(path: Path, kind: str) -> pd.DataFrame:
    table = pd.read_csv(path, float_precision="round_trip")
    return validate_result_table(table, kind)
