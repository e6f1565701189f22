"""
Tumor size survival analysis for a retrospective clinical cohort.

The script ingests a de-identified patient table with tumor size and three
time-to-event outcomes (overall survival, local control, chemotherapy
initiation), fits Cox proportional-hazards models for tumor size, searches for
data-driven tumor size cutpoints and plots survival stratified by them.
"""

from __future__ import annotations

import argparse
import copy
import logging
import os
import sys
import tempfile

# Configure matplotlib cache directory to suppress warnings
os.environ['MPLCONFIGDIR'] = os.path.join(tempfile.gettempdir(), '.matplotlib_cache')
from pathlib import Path
from typing import Any, Iterable, NoReturn, Optional, TypedDict, cast

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
import pandera.pandas as pa
from lifelines import CoxPHFitter, KaplanMeierFitter
from lifelines.exceptions import ConvergenceError
from lifelines.statistics import multivariate_logrank_test, pairwise_logrank_test
from lifelines.utils import median_survival_times
from statsmodels.stats.multitest import multipletests
import yaml

import cutpoints
from schemas import PreprocessedCohortSchema

sns.set_style("whitegrid")

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
CONFIG_PATH_DEFAULT = BASE_DIR / "config.yaml"
PREDICTOR_COLUMN = "tumor_size_cm"

DEFAULT_CONFIG = {
    "file_settings": {
        "default_data_path": "data/tumor_cohort.csv",
        "default_output_dir": "outputs",
        "figure_dpi": 300,
    },
    "column_mapping": {
        "Patient ID": "patient_id",
        "Tumor Size (cm)": "tumor_size_cm",
        "Age at Diagnosis": "age",
        "Sex": "sex",
        "Overall Survival (Months)": "os_months",
        "Vital Status": "os_status",
        "Local Control (Months)": "lc_months",
        "Local Failure": "lc_status",
        "Time to Chemotherapy (Months)": "chemo_months",
        "Chemotherapy Started": "chemo_status",
    },
    "required_columns": (
        "patient_id",
        "tumor_size_cm",
        "os_months",
        "os_status",
    ),
    "outcomes": {
        "os": {
            "label": "Overall survival",
            "time_column": "os_months",
            "status_column": "os_status",
            "event_column": "os_event",
            "search_cutpoints": True,
        },
        "local_control": {
            "label": "Local control",
            "time_column": "lc_months",
            "status_column": "lc_status",
            "event_column": "lc_event",
            "search_cutpoints": True,
        },
        "chemo": {
            "label": "Chemotherapy-free survival",
            "time_column": "chemo_months",
            "status_column": "chemo_status",
            "event_column": "chemo_event",
            "search_cutpoints": False,
        },
    },
    "cutpoint_search": {
        "quantile_step": cutpoints.DEFAULT_QUANTILE_STEP,
        "trim_points": cutpoints.DEFAULT_TRIM_POINTS,
        "min_group_size": cutpoints.DEFAULT_MIN_GROUP_SIZE,
        "single_labels": ["Small", "Large"],
        "double_labels": ["Small", "Medium", "Large"],
    },
    "cox": {
        "covariates": ["age"],
        "min_subjects": 10,
    },
    "visualization": {
        "km_min_group_size": 5,
        "filenames": {
            "single_table": "{outcome}_single_cutpoints.csv",
            "double_table": "{outcome}_double_cutpoints.csv",
            "cutpoint_profile": "{outcome}_cutpoint_profile.png",
            "cutpoint_surface": "{outcome}_double_cutpoint_surface.png",
            "km_single": "{outcome}_km_single_cutpoint.png",
            "km_double": "{outcome}_km_double_cutpoint.png",
            "cox_results": "cox_results.csv",
            "statistical_summary": "statistical_summary.txt",
        },
    },
}

EVENT_TOKENS = {"1", "1.0", "TRUE", "T", "YES", "Y", "DEAD", "DECEASED", "EVENT",
                "FAILURE", "FAILED", "RECURRENCE", "PROGRESSION", "STARTED"}


class FileSettings(TypedDict):
    default_data_path: Path
    default_output_dir: Path
    figure_dpi: int


class OutcomeSettings(TypedDict):
    label: str
    time_column: str
    status_column: str
    event_column: str
    search_cutpoints: bool


class CutpointSearchSettings(TypedDict):
    quantile_step: float
    trim_points: int
    min_group_size: int
    single_labels: list[str]
    double_labels: list[str]


class CoxSettings(TypedDict):
    covariates: list[str]
    min_subjects: int


class VisualizationFilenames(TypedDict):
    single_table: str
    double_table: str
    cutpoint_profile: str
    cutpoint_surface: str
    km_single: str
    km_double: str
    cox_results: str
    statistical_summary: str


class Visualization(TypedDict):
    km_min_group_size: int
    filenames: VisualizationFilenames


class Config(TypedDict):
    file_settings: FileSettings
    column_mapping: dict[str, str]
    reverse_column_mapping: dict[str, str]
    required_columns: tuple[str, ...]
    outcomes: dict[str, OutcomeSettings]
    cutpoint_search: CutpointSearchSettings
    cox: CoxSettings
    visualization: Visualization


class CutpointRun(TypedDict):
    outcome: str
    n_subjects: int
    n_events: int
    single_table: pd.DataFrame
    double_table: pd.DataFrame
    best_single: Optional[float]
    best_double: Optional[tuple[float, float]]


def deep_merge_dict(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge_dict(merged[key], value)
        else:
            merged[key] = value
    return merged


def resolve_path(path_value: str | Path, relative_to_base: bool = True) -> Path:
    path = Path(path_value)
    if path.is_absolute():
        return path
    return (BASE_DIR / path) if relative_to_base else path.resolve()


def _config_error(message: str) -> NoReturn:
    print(f"Configuration error: {message}", file=sys.stderr)
    raise SystemExit(1)


def _load_outcomes(outcomes: Any) -> dict[str, OutcomeSettings]:
    if not isinstance(outcomes, dict) or not outcomes:
        _config_error("outcomes must be a non-empty mapping of outcome definitions.")
    parsed: dict[str, OutcomeSettings] = {}
    for key, settings in outcomes.items():
        if not isinstance(settings, dict):
            _config_error(f"outcome {key!r} must be a mapping of column settings.")
        missing = [
            field
            for field in ("time_column", "status_column", "event_column")
            if not settings.get(field)
        ]
        if missing:
            _config_error(f"outcome {key!r} is missing {', '.join(missing)}.")
        parsed[str(key)] = {
            "label": str(settings.get("label") or key),
            "time_column": str(settings["time_column"]),
            "status_column": str(settings["status_column"]),
            "event_column": str(settings["event_column"]),
            "search_cutpoints": bool(settings.get("search_cutpoints", False)),
        }
    return parsed


def _load_cutpoint_search(search: Any, base: dict[str, Any]) -> CutpointSearchSettings:
    if not isinstance(search, dict):
        _config_error("cutpoint_search must be a mapping of search options.")
    try:
        step = float(search.get("quantile_step", base["quantile_step"]))
        trim = int(search.get("trim_points", base["trim_points"]))
        min_group_size = int(search.get("min_group_size", base["min_group_size"]))
    except (TypeError, ValueError) as exc:
        _config_error(f"cutpoint_search values must be numeric ({exc}).")
    if not 0 < step <= 1:
        _config_error("cutpoint_search.quantile_step must be in (0, 1].")
    if trim < 0 or min_group_size < 1:
        _config_error(
            "cutpoint_search.trim_points must be >= 0 and min_group_size must be >= 1."
        )
    single_labels = list(search.get("single_labels") or base["single_labels"])
    double_labels = list(search.get("double_labels") or base["double_labels"])
    if len(single_labels) != 2 or len(double_labels) != 3:
        _config_error(
            "cutpoint_search.single_labels needs 2 entries and double_labels needs 3."
        )
    return {
        "quantile_step": step,
        "trim_points": trim,
        "min_group_size": min_group_size,
        "single_labels": [str(label) for label in single_labels],
        "double_labels": [str(label) for label in double_labels],
    }


def load_config(config_path: Path) -> Config:
    config_path = resolve_path(config_path, relative_to_base=False)
    base_config = copy.deepcopy(DEFAULT_CONFIG)
    if not config_path.exists():
        print(
            f"Could not locate configuration file at {config_path}. Please supply --config.",
            file=sys.stderr,
        )
        raise SystemExit(1)

    try:
        with config_path.open("r", encoding="utf-8") as file:
            try:
                user_config = yaml.safe_load(file) or {}
            except yaml.YAMLError as exc:
                print(
                    f"Failed to parse configuration file at {config_path}: {exc}",
                    file=sys.stderr,
                )
                raise SystemExit(1)
    except OSError as exc:
        print(
            f"Could not read configuration file at {config_path}: {exc}",
            file=sys.stderr,
        )
        raise SystemExit(1)

    if not isinstance(user_config, dict):
        print(
            f"Configuration file at {config_path} must contain a mapping of settings.",
            file=sys.stderr,
        )
        raise SystemExit(1)

    # Outcome definitions replace the defaults wholesale so a config can drop one.
    user_outcomes = user_config.pop("outcomes", None)
    merged = deep_merge_dict(base_config, user_config)
    if user_outcomes is not None:
        merged["outcomes"] = user_outcomes

    file_settings = merged.get("file_settings") or {}
    if not isinstance(file_settings, dict):
        _config_error("file_settings must be a mapping of options.")
    base_file_settings = cast(dict[str, Any], base_config["file_settings"])
    default_data_path = file_settings.get(
        "default_data_path", base_file_settings["default_data_path"]
    )
    default_output_dir = file_settings.get(
        "default_output_dir", base_file_settings["default_output_dir"]
    )
    figure_dpi = file_settings.get("figure_dpi", base_file_settings["figure_dpi"])
    merged["file_settings"] = {
        "default_data_path": resolve_path(str(default_data_path)),
        "default_output_dir": resolve_path(str(default_output_dir)),
        "figure_dpi": int(figure_dpi) if figure_dpi is not None else 300,
    }

    column_mapping = merged.get("column_mapping") or {}
    if not isinstance(column_mapping, dict):
        _config_error("column_mapping must be a mapping of source to target columns.")
    merged["column_mapping"] = dict(column_mapping)
    merged["reverse_column_mapping"] = {
        value: key for key, value in merged["column_mapping"].items()
    }

    required_columns = merged.get("required_columns") or base_config["required_columns"]
    if not isinstance(required_columns, (list, tuple)):
        _config_error("required_columns must be a list of normalized field names.")
    merged["required_columns"] = tuple(required_columns)

    merged["outcomes"] = _load_outcomes(merged.get("outcomes"))
    merged["cutpoint_search"] = _load_cutpoint_search(
        merged.get("cutpoint_search"),
        cast(dict[str, Any], base_config["cutpoint_search"]),
    )

    cox = merged.get("cox") or {}
    if not isinstance(cox, dict):
        _config_error("cox must be a mapping with covariates and min_subjects.")
    covariates = cox.get("covariates") or []
    if not isinstance(covariates, (list, tuple)):
        _config_error("cox.covariates must be a list of column names.")
    merged["cox"] = {
        "covariates": [str(covariate) for covariate in covariates],
        "min_subjects": int(cox.get("min_subjects", 10)),
    }

    visualization = merged.get("visualization") or {}
    if not isinstance(visualization, dict):
        _config_error("visualization must be a mapping of plotting options.")
    base_visualization = cast(dict[str, Any], base_config["visualization"])
    km_min_group_size_value = visualization.get(
        "km_min_group_size", base_visualization["km_min_group_size"]
    )
    filenames_value = visualization.get("filenames", base_visualization["filenames"])
    merged["visualization"] = {
        "km_min_group_size": int(km_min_group_size_value) if km_min_group_size_value is not None else 0,
        "filenames": dict(filenames_value) if isinstance(filenames_value, dict) else {},
    }
    return cast(Config, merged)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Cox models and tumor size cutpoint search for a retrospective cohort."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH_DEFAULT,
        help="Path to configuration YAML (default: %(default)s).",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=None,
        help="Path to the cohort CSV/TSV (default: configured in config.yaml).",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory to store result tables and figures (default: configured in config.yaml).",
    )
    parser.add_argument(
        "--min-group-size",
        type=int,
        default=None,
        help="Minimum patients per group for a cutpoint to be selectable (default: configured in config.yaml).",
    )
    parser.add_argument(
        "--skip-double",
        action="store_true",
        help="Skip the double cutpoint search, which is the slowest step.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging output.",
    )
    return parser.parse_args(argv)


def load_cohort(data_path: Path) -> pd.DataFrame:
    data_path = resolve_path(data_path, relative_to_base=False)
    if not data_path.exists():
        print(
            f"Could not locate cohort file at {data_path}. Please supply --data.",
            file=sys.stderr,
        )
        raise SystemExit(1)
    separator = "\t" if data_path.suffix.lower() in {".tsv", ".txt"} else ","
    try:
        return pd.read_csv(
            data_path,
            sep=separator,
            na_values=["NA", "N/A", "Not Available", ""],
            dtype=str,
        )
    except pd.errors.ParserError as exc:
        print(
            f"Could not parse cohort file at {data_path}: {exc}",
            file=sys.stderr,
        )
        raise SystemExit(1)
    except OSError as exc:
        print(
            f"Could not read cohort file at {data_path}: {exc}",
            file=sys.stderr,
        )
        raise SystemExit(1)


def is_event(value: str | float | bool | None) -> bool:
    """Interpret a status cell such as ``1``, ``yes`` or ``1:DECEASED``."""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return False
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    text = str(value).strip().upper()
    if ":" in text:
        code, _, description = text.partition(":")
        return code.strip() == "1" or description.strip() in EVENT_TOKENS
    return text in EVENT_TOKENS


def validate_required_columns(
    df: pd.DataFrame,
    required: Iterable[str],
    reverse_column_map: dict[str, str],
) -> None:
    missing = [column for column in required if column not in df.columns]
    if not missing:
        return
    source_labels = ", ".join(
        reverse_column_map.get(column, column) for column in missing
    )
    normalized = ", ".join(missing)
    raise KeyError(
        "Cohort file is missing required fields after harmonisation. "
        f"Normalized columns not found: {normalized}. "
        f"Expected source headers: {source_labels}. "
        "Please verify the file matches the column_mapping in config.yaml."
    )


def coerce_numeric_covariates(df: pd.DataFrame, covariates: Iterable[str]) -> pd.DataFrame:
    """Convert covariates to numbers when every non-missing value parses."""
    for covariate in covariates:
        if covariate not in df.columns:
            continue
        converted = pd.to_numeric(df[covariate], errors="coerce")
        if converted.notna().sum() == df[covariate].notna().sum():
            df[covariate] = converted
    return df


def preprocess(df: pd.DataFrame, config: Config) -> pd.DataFrame:
    column_map = config["column_mapping"]
    reverse_column_map = config["reverse_column_mapping"]
    required_columns = config["required_columns"]

    df = df.rename(columns=column_map)
    validate_required_columns(df, required_columns, reverse_column_map)

    df[PREDICTOR_COLUMN] = pd.to_numeric(df[PREDICTOR_COLUMN], errors="coerce")
    for outcome in config["outcomes"].values():
        time_column = outcome["time_column"]
        if time_column in df.columns:
            df[time_column] = pd.to_numeric(df[time_column], errors="coerce")
        else:
            df[time_column] = pd.Series(np.nan, index=df.index, dtype="float64")
        # Unknown status stays NA instead of counting as censored
        raw_status = df.get(outcome["status_column"])
        if raw_status is not None:
            events = raw_status.apply(is_event).astype("boolean")
            df[outcome["event_column"]] = events.mask(raw_status.isna())
        else:
            df[outcome["event_column"]] = pd.Series(pd.NA, index=df.index, dtype="boolean")

    df = coerce_numeric_covariates(df, config["cox"]["covariates"])

    try:
        df = PreprocessedCohortSchema.validate(df)
    except pa.errors.SchemaError as exc:
        print(f"Data validation failed: {exc}", file=sys.stderr)
        raise ValueError(f"Cohort data failed schema validation: {exc}") from exc

    return df


def extract_outcome_cohort(df: pd.DataFrame, outcome: OutcomeSettings) -> pd.DataFrame:
    """Rows usable for one endpoint: tumor size, follow-up time and status present."""
    event_column = outcome["event_column"]
    cohort = df.dropna(
        subset=[PREDICTOR_COLUMN, outcome["time_column"], event_column]
    ).copy()
    cohort[event_column] = cohort[event_column].astype(bool)
    return cohort


def fit_cox_model(
    df: pd.DataFrame,
    outcome: OutcomeSettings,
    covariates: Iterable[str] = (),
    min_subjects: int = 10,
) -> pd.DataFrame:
    """
    Fit a Cox proportional-hazards model of tumor size (plus covariates) on
    one outcome and return hazard ratios with 95% CIs and p-values.
    """
    time_column = outcome["time_column"]
    event_column = outcome["event_column"]
    terms = [PREDICTOR_COLUMN, *covariates]
    missing = [term for term in terms if term not in df.columns]
    if missing:
        raise KeyError(f"Cox model terms not found in cohort: {', '.join(missing)}")

    model_df = df.dropna(subset=[time_column, event_column, *terms])[
        [time_column, event_column, *terms]
    ].copy()
    model_df[event_column] = model_df[event_column].astype(int)
    n_events = int(model_df[event_column].sum())
    if len(model_df) < min_subjects or n_events == 0:
        logger.info(
            "Skipping Cox model for %s: %d subjects, %d events",
            outcome["label"],
            len(model_df),
            n_events,
        )
        return pd.DataFrame()

    cph = CoxPHFitter()
    try:
        cph.fit(
            model_df,
            duration_col=time_column,
            event_col=event_column,
            formula=" + ".join(terms),
        )
    except ConvergenceError as exc:
        print(
            f"Cox model for {outcome['label']} ({' + '.join(terms)}) failed to converge: {exc}",
            file=sys.stderr,
        )
        return pd.DataFrame()

    results: list[dict[str, float | int | str]] = []
    for covariate, row in cph.summary.iterrows():
        results.append(
            {
                "covariate": str(covariate),
                "hazard_ratio": float(row["exp(coef)"]),
                "hr_ci_lower": float(row["exp(coef) lower 95%"]),
                "hr_ci_upper": float(row["exp(coef) upper 95%"]),
                "p_value": float(row["p"]),
                "n": len(model_df),
                "events": n_events,
            }
        )
    return pd.DataFrame(results)


def run_cox_models(df: pd.DataFrame, config: Config) -> pd.DataFrame:
    """Univariable and (when covariates are configured) multivariable models per outcome."""
    missing = [c for c in config["cox"]["covariates"] if c not in df.columns]
    if missing:
        logger.warning(
            "Cox covariates not found in cohort, fitting without them: %s",
            ", ".join(missing),
        )
    covariates = [c for c in config["cox"]["covariates"] if c not in missing]
    min_subjects = config["cox"]["min_subjects"]
    models: list[tuple[str, list[str]]] = [("univariable", [])]
    if covariates:
        models.append(("multivariable", covariates))

    frames: list[pd.DataFrame] = []
    for outcome_key, outcome in config["outcomes"].items():
        for model_name, model_covariates in models:
            result = fit_cox_model(df, outcome, model_covariates, min_subjects)
            if result.empty:
                continue
            result.insert(0, "model", model_name)
            result.insert(0, "outcome", outcome_key)
            frames.append(result)
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True)


def run_cutpoint_analysis(
    df: pd.DataFrame,
    outcome_key: str,
    outcome: OutcomeSettings,
    search: CutpointSearchSettings,
    include_double: bool = True,
) -> CutpointRun:
    """Single and double cutpoint searches plus best-cutpoint selection for one outcome."""
    cohort = extract_outcome_cohort(df, outcome)
    predictor = cohort[PREDICTOR_COLUMN].to_numpy(dtype=float)
    times = cohort[outcome["time_column"]].to_numpy(dtype=float)
    events = cohort[outcome["event_column"]].to_numpy(dtype=bool)
    step = search["quantile_step"]
    trim = search["trim_points"]
    min_group_size = search["min_group_size"]

    logger.info(
        "Cutpoint search for %s: %d subjects, %d events",
        outcome["label"],
        len(cohort),
        int(events.sum()),
    )
    single_table = cutpoints.single_cutpoint_search(
        predictor, times, events, step=step, trim=trim
    )
    best_single = cutpoints.select_best_single(single_table, min_group_size)

    if include_double:
        double_table = cutpoints.double_cutpoint_search(
            predictor, times, events, step=step, trim=trim
        )
    else:
        double_table = cutpoints.as_result_table([], cutpoints.DOUBLE_COLUMNS)
    best_double = cutpoints.select_best_double(double_table, min_group_size)
    logger.info(
        "%s: best single cutpoint %s, best double cutpoints %s",
        outcome["label"],
        best_single,
        best_double,
    )

    return {
        "outcome": outcome_key,
        "n_subjects": int(len(cohort)),
        "n_events": int(events.sum()),
        "single_table": single_table,
        "double_table": double_table,
        "best_single": best_single,
        "best_double": best_double,
    }


def build_group_summary(
    df: pd.DataFrame,
    time_column: str,
    event_column: str,
    group_column: str,
    group_order: Iterable[str],
) -> pd.DataFrame:
    survival = df.dropna(subset=[time_column, group_column]).copy()
    if survival.empty:
        return pd.DataFrame()

    kmf = KaplanMeierFitter()
    results: list[dict[str, float | int | str]] = []

    for group in group_order:
        group_df = survival[survival[group_column] == group]
        if group_df.empty:
            continue
        kmf.fit(
            durations=group_df[time_column],
            event_observed=group_df[event_column],
        )

        median = kmf.median_survival_time_
        ci = median_survival_times(kmf.confidence_interval_)
        median_value = (
            float(median) if median is not None and np.isfinite(median) else np.nan
        )
        ci_lower = ci.iloc[0, 0] if not ci.empty else np.nan
        ci_upper = ci.iloc[0, 1] if not ci.empty else np.nan

        results.append(
            {
                "group": str(group),
                "median_months": median_value,
                "median_ci_lower": float(ci_lower) if np.isfinite(ci_lower) else np.nan,
                "median_ci_upper": float(ci_upper) if np.isfinite(ci_upper) else np.nan,
                "patient_count": len(group_df),
                "event_rate": float(group_df[event_column].mean()),
            }
        )

    if not results:
        return pd.DataFrame()
    summary = pd.DataFrame(results).set_index("group")
    summary["event_rate_pct"] = summary["event_rate"] * 100
    return summary


def compute_group_logrank(
    df: pd.DataFrame,
    time_column: str,
    event_column: str,
    group_column: str,
    min_group_size: int,
) -> Optional[dict]:
    """
    Omnibus and pairwise log-rank statistics across size groups. Groups below
    min_group_size are dropped; pairwise p-values are adjusted with
    Benjamini-Hochberg FDR correction.
    """
    km_df = df.dropna(subset=[time_column, group_column]).copy()
    if km_df.empty:
        return None
    km_df[group_column] = km_df[group_column].astype(str)

    group_counts = km_df[group_column].value_counts()
    valid_groups = group_counts[group_counts >= min_group_size].index
    km_df = km_df[km_df[group_column].isin(valid_groups)]

    if len(valid_groups) < 2:
        return None

    omnibus = multivariate_logrank_test(
        km_df[time_column],
        km_df[group_column],
        km_df[event_column],
    )

    pairwise_summary = pairwise_logrank_test(
        km_df[time_column],
        km_df[group_column],
        event_observed=km_df[event_column],
    ).summary

    pairwise_results: list[dict[str, Any]] = []
    for (group_a, group_b), row in pairwise_summary.iterrows():
        pairwise_results.append(
            {
                "groups": (group_a, group_b),
                "test_statistic": float(row["test_statistic"]),
                "p_value": float(row["p"]),
            }
        )
    raw_pvalues = [result["p_value"] for result in pairwise_results]

    if raw_pvalues:
        _, adjusted_pvalues, _, _ = multipletests(
            raw_pvalues, alpha=0.05, method="fdr_bh"
        )
        for result, adjusted_p in zip(pairwise_results, adjusted_pvalues):
            result["p_value_adjusted"] = float(adjusted_p)

    pairwise_results.sort(
        key=lambda item: cast(float, item.get("p_value_adjusted", item["p_value"]))
    )

    return {
        "test_statistic": float(omnibus.test_statistic),
        "p_value": float(omnibus.p_value),
        "degrees_freedom": len(valid_groups) - 1,
        "groups_compared": list(valid_groups),
        "pairwise_results": pairwise_results,
        "correction_method": "Benjamini-Hochberg FDR",
    }


def plot_cutpoint_profile(
    single_table: pd.DataFrame,
    best_cutpoint: Optional[float],
    min_group_size: int,
    output_path: Path,
    title: str,
    figure_dpi: int,
) -> bool:
    if single_table.empty:
        return False

    fig, ax = plt.subplots(figsize=(10, 6))
    eligible = single_table["min_n"] >= min_group_size
    ax.plot(
        single_table["threshold"],
        single_table["chisq"],
        color="slateblue",
        alpha=0.5,
        linewidth=1,
    )
    ax.scatter(
        single_table.loc[eligible, "threshold"],
        single_table.loc[eligible, "chisq"],
        color="slateblue",
        s=18,
        label=f"Groups of at least {min_group_size}",
    )
    ax.scatter(
        single_table.loc[~eligible, "threshold"],
        single_table.loc[~eligible, "chisq"],
        color="lightgray",
        s=18,
        label="Undersized group",
    )
    if best_cutpoint is not None:
        ax.axvline(
            best_cutpoint,
            color="crimson",
            linestyle="--",
            label=f"Best cutpoint {best_cutpoint:.2f} cm",
        )

    ax.set_xlabel("Tumor size threshold (cm)", fontsize=11)
    ax.set_ylabel("Log-rank chi-square", fontsize=11)
    ax.set_title(title, fontsize=13, fontweight="bold")
    ax.grid(alpha=0.3)
    ax.legend(fontsize=9)
    plt.tight_layout()
    fig.savefig(output_path, dpi=figure_dpi, bbox_inches="tight")
    plt.close(fig)
    return True


def plot_double_cutpoint_surface(
    double_table: pd.DataFrame,
    best_pair: Optional[tuple[float, float]],
    min_group_size: int,
    output_path: Path,
    title: str,
    figure_dpi: int,
) -> bool:
    eligible = double_table[double_table["min_n"] >= min_group_size]
    if eligible.empty:
        return False

    fig, ax = plt.subplots(figsize=(10, 8))
    norm = plt.Normalize(eligible["chisq"].min(), eligible["chisq"].max())
    sns.scatterplot(
        data=eligible,
        x="cut1",
        y="cut2",
        hue="chisq",
        hue_norm=norm,
        palette="magma",
        s=25,
        linewidth=0,
        legend=False,
        ax=ax,
    )
    fig.colorbar(
        plt.cm.ScalarMappable(norm=norm, cmap="magma"),
        ax=ax,
        label="Log-rank chi-square",
    )
    if best_pair is not None:
        ax.scatter(
            [best_pair[0]],
            [best_pair[1]],
            marker="*",
            s=250,
            color="crimson",
            label=f"Best pair {best_pair[0]:.2f} / {best_pair[1]:.2f} cm",
        )
        ax.legend(fontsize=9)
    ax.set_xlabel("First cutpoint (cm)", fontsize=11)
    ax.set_ylabel("Second cutpoint (cm)", fontsize=11)
    ax.set_title(title, fontsize=13, fontweight="bold")
    plt.tight_layout()
    fig.savefig(output_path, dpi=figure_dpi, bbox_inches="tight")
    plt.close(fig)
    return True


def plot_stratified_km(
    df: pd.DataFrame,
    time_column: str,
    event_column: str,
    group_column: str,
    group_order: Iterable[str],
    output_path: Path,
    title: str,
    min_group_size: int,
    figure_dpi: int,
) -> bool:
    km_df = df.dropna(subset=[time_column, group_column]).copy()
    if km_df.empty:
        return False

    kmf = KaplanMeierFitter()
    plotted = False

    fig, ax = plt.subplots(figsize=(12, 8))
    for group in group_order:
        group_df = km_df[km_df[group_column] == group]
        if len(group_df) < min_group_size:
            continue
        kmf.fit(
            durations=group_df[time_column],
            event_observed=group_df[event_column],
            label=f"{group} (n={len(group_df)})",
        )
        kmf.plot_survival_function(ax=ax, ci_show=True)
        plotted = True

    if not plotted:
        plt.close(fig)
        return False

    ax.set_ylim(0, 1.05)
    ax.set_ylabel("Event-free probability", fontsize=11)
    ax.set_xlabel("Months", fontsize=11)
    ax.set_title(title, fontsize=13, fontweight="bold")
    ax.grid(alpha=0.3)
    ax.legend(title="Tumor size", fontsize=9)
    plt.tight_layout()
    fig.savefig(output_path, dpi=figure_dpi, bbox_inches="tight")
    plt.close(fig)
    return True


def format_cutpoints(cutpoint_values: Optional[Iterable[float]]) -> str:
    if cutpoint_values is None:
        return "none (no candidate met the group size minimum)"
    return " / ".join(f"{value:.2f} cm" for value in cutpoint_values)


def print_summary(
    cox_results: pd.DataFrame,
    runs: dict[str, CutpointRun],
    group_stats: Optional[dict[str, dict[str, dict[str, Any]]]] = None,
    outcome_labels: Optional[dict[str, str]] = None,
) -> str:
    outcome_labels = outcome_labels or {}
    lines: list[str] = [
        "Tumor Size Survival Analysis",
        "=" * 60,
    ]

    lines.append("Cox Proportional Hazards Models:")
    lines.append("-" * 60)
    if cox_results.empty:
        lines.append("No Cox models could be fitted for the supplied cohort.")
    else:
        for (outcome_key, model), rows in cox_results.groupby(
            ["outcome", "model"], sort=False
        ):
            first = rows.iloc[0]
            lines.append(
                f"{outcome_labels.get(outcome_key, outcome_key)} [{model}] "
                f"n={int(first['n'])}, events={int(first['events'])}"
            )
            for _, row in rows.iterrows():
                lines.append(
                    f"  {row['covariate']:>16} | HR {row['hazard_ratio']:.3f} "
                    f"(95% CI: {row['hr_ci_lower']:.3f}–{row['hr_ci_upper']:.3f}) "
                    f"| p={row['p_value']:.4f}"
                )

    for outcome_key, run in runs.items():
        label = outcome_labels.get(outcome_key, outcome_key)
        lines.append("")
        lines.append(f"Cutpoint Search: {label}")
        lines.append("-" * 60)
        lines.append(f"  Subjects: {run['n_subjects']} | Events: {run['n_events']}")
        lines.append(
            f"  Single candidates: {len(run['single_table'])} | "
            f"Double candidates: {len(run['double_table'])}"
        )
        best_single = run["best_single"]
        lines.append(
            "  Best single cutpoint: "
            + format_cutpoints(None if best_single is None else [best_single])
        )
        lines.append("  Best double cutpoints: " + format_cutpoints(run["best_double"]))

        for scheme, stats in ((group_stats or {}).get(outcome_key) or {}).items():
            summary = stats.get("summary")
            if summary is not None and not summary.empty:
                lines.append(f"  {scheme.title()} cutpoint groups:")
                for group, row in summary.iterrows():
                    median = row.get("median_months", np.nan)
                    median_str = f"{median:.1f}" if pd.notna(median) else "NR"
                    lines.append(
                        f"    {group:>8} | Median: {median_str} mo | "
                        f"Events: {row['event_rate_pct']:.0f}% | n={int(row['patient_count'])}"
                    )
            logrank_results = stats.get("logrank")
            if logrank_results:
                lines.append(
                    f"    Log-rank chi-square: {logrank_results['test_statistic']:.2f} "
                    f"(df={logrank_results['degrees_freedom']}, "
                    f"p={logrank_results['p_value']:.4f})"
                )
                for pair_result in logrank_results.get("pairwise_results") or []:
                    group_a, group_b = pair_result["groups"]
                    raw_p = pair_result["p_value"]
                    adj_p = pair_result.get("p_value_adjusted", raw_p)
                    lines.append(
                        f"      {group_a} vs {group_b}: p={raw_p:.4f} (adj. p={adj_p:.4f})"
                    )

    text = "\n".join(lines)
    print(text)
    return text


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose)
    config: Config = load_config(args.config)
    file_settings = config["file_settings"]
    search = config["cutpoint_search"]
    visualization = config["visualization"]

    data_path = (
        resolve_path(args.data, relative_to_base=False)
        if args.data
        else file_settings["default_data_path"]
    )
    output_dir = (
        resolve_path(args.output_dir, relative_to_base=False)
        if args.output_dir
        else file_settings["default_output_dir"]
    )
    if args.min_group_size is not None:
        if args.min_group_size < 1:
            print("min-group-size must be a positive integer.", file=sys.stderr)
            raise SystemExit(1)
        search["min_group_size"] = args.min_group_size
    min_group_size = search["min_group_size"]
    km_min_group = visualization["km_min_group_size"]
    figure_dpi = file_settings["figure_dpi"]
    filenames = visualization["filenames"]

    df_raw = load_cohort(data_path)
    try:
        df = preprocess(df_raw, config)
    except (ValueError, KeyError) as exc:
        print(f"Data validation failed: {exc}", file=sys.stderr)
        raise SystemExit(1)

    output_dir.mkdir(parents=True, exist_ok=True)
    generated_files: list[Path] = []
    skipped_outputs: list[str] = []

    cox_results = run_cox_models(df, config)
    if not cox_results.empty:
        cox_path = output_dir / filenames["cox_results"]
        cox_results.to_csv(cox_path, index=False)
        generated_files.append(cox_path)
    else:
        skipped_outputs.append(
            f"{output_dir / filenames['cox_results']} (no outcome had enough events)"
        )

    runs: dict[str, CutpointRun] = {}
    group_stats: dict[str, dict[str, dict[str, Any]]] = {}
    for outcome_key, outcome in config["outcomes"].items():
        if not outcome["search_cutpoints"]:
            continue

        def output_file(name: str) -> Path:
            return output_dir / filenames[name].format(outcome=outcome_key)

        run = run_cutpoint_analysis(
            df, outcome_key, outcome, search, include_double=not args.skip_double
        )
        runs[outcome_key] = run

        generated_files.append(
            cutpoints.save_result_table(run["single_table"], output_file("single_table"))
        )
        if not args.skip_double:
            generated_files.append(
                cutpoints.save_result_table(run["double_table"], output_file("double_table"))
            )

        profile_path = output_file("cutpoint_profile")
        if plot_cutpoint_profile(
            run["single_table"],
            run["best_single"],
            min_group_size,
            profile_path,
            f"Single Cutpoint Search: {outcome['label']}",
            figure_dpi,
        ):
            generated_files.append(profile_path)
        else:
            skipped_outputs.append(f"{profile_path} (no single cutpoint candidates)")

        surface_path = output_file("cutpoint_surface")
        if plot_double_cutpoint_surface(
            run["double_table"],
            run["best_double"],
            min_group_size,
            surface_path,
            f"Double Cutpoint Search: {outcome['label']}",
            figure_dpi,
        ):
            generated_files.append(surface_path)
        else:
            skipped_outputs.append(
                f"{surface_path} (no double cutpoint met min_group_size={min_group_size})"
            )

        cohort = extract_outcome_cohort(df, outcome)
        schemes: list[tuple[str, Optional[list[float]], list[str]]] = [
            (
                "single",
                None if run["best_single"] is None else [run["best_single"]],
                search["single_labels"],
            ),
            (
                "double",
                None if run["best_double"] is None else list(run["best_double"]),
                search["double_labels"],
            ),
        ]
        group_stats[outcome_key] = {}
        for scheme, chosen, labels in schemes:
            km_path = output_file(f"km_{scheme}")
            if chosen is None:
                skipped_outputs.append(f"{km_path} (no {scheme} cutpoint selected)")
                continue
            group_column = f"size_group_{scheme}"
            cohort[group_column] = cutpoints.classify_by_cutpoints(
                cohort[PREDICTOR_COLUMN], chosen, labels
            )
            group_stats[outcome_key][scheme] = {
                "summary": build_group_summary(
                    cohort,
                    outcome["time_column"],
                    outcome["event_column"],
                    group_column,
                    labels,
                ),
                "logrank": compute_group_logrank(
                    cohort,
                    outcome["time_column"],
                    outcome["event_column"],
                    group_column,
                    min_group_size=min_group_size,
                ),
            }
            if plot_stratified_km(
                cohort,
                outcome["time_column"],
                outcome["event_column"],
                group_column,
                labels,
                km_path,
                f"{outcome['label']} by Tumor Size ({format_cutpoints(chosen)})",
                min_group_size=km_min_group,
                figure_dpi=figure_dpi,
            ):
                generated_files.append(km_path)
            else:
                skipped_outputs.append(
                    f"{km_path} (no group met km_min_group_size={km_min_group})"
                )

    summary_text = print_summary(
        cox_results,
        runs,
        group_stats,
        outcome_labels={key: outcome["label"] for key, outcome in config["outcomes"].items()},
    )
    stats_output_path = output_dir / filenames["statistical_summary"]
    stats_output_path.write_text(summary_text + "\n", encoding="utf-8")
    generated_files.append(stats_output_path)
    print("\nGenerated files:")
    for path in generated_files:
        print(f"  - {path}")
    if skipped_outputs:
        print("\nSkipped outputs:")
        for message in skipped_outputs:
            print(f"  - {message}")


if __name__ == "__main__":
    main()
