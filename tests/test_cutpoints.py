import logging

import numpy as np
import pandas as pd
import pytest
from lifelines.statistics import logrank_test

import cutpoints as cp


@pytest.fixture
def synthetic_cohort():
    rng = np.random.default_rng(42)
    n = 60
    sizes = np.round(rng.lognormal(mean=1.0, sigma=0.5, size=n), 1)
    hazard = 0.02 * np.exp(0.35 * sizes)
    times = np.round(rng.exponential(1 / hazard), 2)
    events = rng.random(n) < 0.7
    return sizes, times, events


def global_minimum_threshold_pairs(predictor, step, trim):
    """Earlier double sweep that built the second grid above the global minimum."""
    predictor = np.asarray(predictor, dtype=float)
    pairs = []
    for cut1 in cp.candidate_thresholds(predictor, step=step, trim=trim):
        subpopulation = predictor[predictor > predictor.min()]
        for cut2 in cp.candidate_thresholds(subpopulation, step=step, trim=trim):
            pairs.append((float(cut1), float(cut2)))
    return pairs


class TestLogrankChisq:
    def test_matches_two_group_logrank(self, synthetic_cohort):
        sizes, times, events = synthetic_cohort
        groups = (sizes > np.median(sizes)).astype(int)

        chisq = cp.logrank_chisq(times, events, groups, n_groups=2)

        expected = logrank_test(
            times[groups == 0],
            times[groups == 1],
            event_observed_A=events[groups == 0],
            event_observed_B=events[groups == 1],
        ).test_statistic
        assert chisq == pytest.approx(expected)

    def test_empty_group_scores_zero(self):
        times = np.array([1.0, 2.0, 3.0])
        events = np.array([True, True, False])
        groups = np.array([0, 0, 2])

        assert cp.logrank_chisq(times, events, groups, n_groups=3) == 0.0

    def test_single_group_scores_zero(self):
        times = np.array([1.0, 2.0, 3.0])
        events = np.array([True, True, True])

        assert cp.logrank_chisq(times, events, np.zeros(3, dtype=int), n_groups=2) == 0.0


class TestSingleCutpointSearch:
    def test_uniform_cohort_of_twenty(self):
        predictor = np.arange(1.0, 21.0)
        times = np.arange(1.0, 21.0)
        events = np.ones(20, dtype=bool)

        table = cp.single_cutpoint_search(predictor, times, events)

        assert len(table) == 91
        assert list(table.columns) == cp.SINGLE_COLUMNS
        assert (table["low_n"] + table["high_n"] == 20).all()
        assert (table["chisq"] >= 0).all()
        assert (table["min_n"] == table[["low_n", "high_n"]].min(axis=1)).all()

    def test_row_count_matches_grid(self, synthetic_cohort):
        table = cp.single_cutpoint_search(*synthetic_cohort)

        assert len(table) == 91
        assert (table["low_n"] + table["high_n"] == len(synthetic_cohort[0])).all()

    def test_subject_at_threshold_counts_as_low(self):
        predictor = np.repeat([1.0, 2.0, 3.0], 10)
        times = np.linspace(1.0, 50.0, 30)
        events = np.ones(30, dtype=bool)

        table = cp.single_cutpoint_search(predictor, times, events)

        at_one = table[table["threshold"] == 1.0]
        at_two = table[table["threshold"] == 2.0]
        assert not at_one.empty
        assert not at_two.empty
        assert (at_one["low_n"] == 10).all()
        assert (at_two["low_n"] == 20).all()
        assert (table["low_n"] + table["high_n"] == 30).all()

    def test_constant_predictor_is_degenerate_not_an_error(self):
        predictor = np.full(15, 2.0)
        times = np.arange(1.0, 16.0)
        events = np.ones(15, dtype=bool)

        table = cp.single_cutpoint_search(predictor, times, events)

        assert len(table) == 91
        assert (table["threshold"] == 2.0).all()
        assert (table["low_n"] == 15).all()
        assert (table["high_n"] == 0).all()
        assert (table["chisq"] == 0.0).all()
        assert (table["min_n"] == 0).all()
        assert cp.select_best_single(table) is None

    def test_empty_cohort_returns_empty_table(self):
        table = cp.single_cutpoint_search([], [], [])

        assert table.empty
        assert list(table.columns) == cp.SINGLE_COLUMNS

    def test_mismatched_lengths_raise(self):
        with pytest.raises(ValueError, match="equal lengths"):
            cp.single_cutpoint_search([1.0, 2.0], [1.0], [True, False])

    def test_missing_predictor_raises(self):
        with pytest.raises(ValueError, match="missing"):
            cp.single_cutpoint_search([1.0, np.nan], [1.0, 2.0], [True, False])

    def test_negative_time_raises(self):
        with pytest.raises(ValueError, match="non-negative"):
            cp.single_cutpoint_search([1.0, 2.0], [1.0, -2.0], [True, False])

    def test_recovers_separating_cutpoint(self):
        predictor = np.arange(1.0, 41.0)
        times = np.where(predictor <= 20, 100.0, 10.0)
        events = np.ones(40, dtype=bool)

        table = cp.single_cutpoint_search(predictor, times, events)
        best = cp.select_best_single(table)

        # Three grid points (20.11, 20.5, 20.89) give the same perfect split.
        assert best == pytest.approx(20.5)


class TestDoubleCutpointSearch:
    def test_partitions_are_exhaustive(self, synthetic_cohort):
        table = cp.double_cutpoint_search(*synthetic_cohort, step=0.1, trim=1)

        assert not table.empty
        assert list(table.columns) == cp.DOUBLE_COLUMNS
        total = table["low_n"] + table["mid_n"] + table["high_n"]
        assert (total == len(synthetic_cohort[0])).all()
        assert (table["cut2"] > table["cut1"]).all()
        assert (table["chisq"] >= 0).all()

    def test_second_grid_is_conditional_on_first_cutpoint(self):
        predictor = np.arange(1.0, 31.0)

        pairs = list(cp.threshold_pairs(predictor, step=0.1, trim=1))

        by_cut1: dict[float, list[float]] = {}
        for cut1, cut2 in pairs:
            by_cut1.setdefault(cut1, []).append(cut2)
        for cut1, second in by_cut1.items():
            expected = cp.candidate_thresholds(predictor[predictor > cut1], step=0.1, trim=1)
            np.testing.assert_allclose(second, expected)
        assert len({tuple(second) for second in by_cut1.values()}) == len(by_cut1)

    def test_subpopulation_shrinks_as_first_cutpoint_grows(self):
        predictor = np.arange(1.0, 101.0)

        first_grid = cp.candidate_thresholds(predictor)
        above = np.array([(predictor > cut1).sum() for cut1 in first_grid])

        assert np.all(np.diff(above) < 0)

    def test_subpopulation_never_grows_with_ties(self, synthetic_cohort):
        sizes = synthetic_cohort[0]

        first_grid = cp.candidate_thresholds(sizes)
        above = np.array([(sizes > cut1).sum() for cut1 in first_grid])

        assert np.all(np.diff(above) <= 0)

    def test_differs_from_global_minimum_sweep(self, synthetic_cohort):
        sizes = synthetic_cohort[0]

        conditional = list(cp.threshold_pairs(sizes, step=0.1, trim=1))
        global_minimum = global_minimum_threshold_pairs(sizes, step=0.1, trim=1)

        assert conditional != global_minimum
        # The old sweep ignores cut1 and can produce cut2 <= cut1.
        assert any(cut2 <= cut1 for cut1, cut2 in global_minimum)
        assert all(cut2 > cut1 for cut1, cut2 in conditional)

    def test_logs_pair_count_before_scoring(self, synthetic_cohort, caplog):
        with caplog.at_level(logging.INFO, logger="cutpoints"):
            table = cp.double_cutpoint_search(*synthetic_cohort, step=0.1, trim=1)

        assert f"scoring {len(table)} threshold pairs" in caplog.text

    def test_constant_predictor_has_no_pairs(self):
        table = cp.double_cutpoint_search(np.full(10, 3.0), np.arange(1.0, 11.0), np.ones(10))

        assert table.empty
        assert cp.select_best_double(table) is None


class TestSelection:
    def test_single_filter_beats_higher_chisq(self):
        table = pd.DataFrame(
            {
                "threshold": [1.0, 2.0, 3.0],
                "low_n": [2, 6, 9],
                "high_n": [18, 14, 11],
                "chisq": [25.0, 4.0, 3.0],
                "min_n": [2, 6, 9],
            }
        )

        assert cp.select_best_single(table, min_group_size=5) == 2.0

    def test_single_ties_resolve_to_median(self):
        table = pd.DataFrame(
            {
                "threshold": [1.0, 2.0, 3.0, 4.0, 5.0],
                "low_n": [5, 6, 7, 8, 9],
                "high_n": [15, 14, 13, 12, 11],
                "chisq": [4.0, 4.0, 1.0, 4.0, 2.0],
                "min_n": [5, 6, 7, 8, 9],
            }
        )

        assert cp.select_best_single(table) == 2.0

    def test_single_even_ties_average_middle_pair(self):
        table = pd.DataFrame(
            {
                "threshold": [1.0, 2.0],
                "low_n": [5, 6],
                "high_n": [15, 14],
                "chisq": [7.0, 7.0],
                "min_n": [5, 6],
            }
        )

        assert cp.select_best_single(table) == 1.5

    def test_double_filter_and_first_tie(self):
        table = pd.DataFrame(
            {
                "cut1": [1.0, 1.0, 2.0, 3.0],
                "cut2": [2.0, 4.0, 5.0, 6.0],
                "low_n": [4, 6, 7, 8],
                "mid_n": [8, 8, 8, 8],
                "high_n": [8, 6, 5, 4],
                "chisq": [30.0, 12.0, 12.0, 40.0],
                "min_n": [4, 6, 5, 4],
            }
        )

        assert cp.select_best_double(table, min_group_size=5) == (1.0, 4.0)

    def test_no_eligible_rows(self):
        table = pd.DataFrame(
            {
                "threshold": [1.0],
                "low_n": [1],
                "high_n": [19],
                "chisq": [9.0],
                "min_n": [1],
            }
        )

        assert cp.select_best_single(table) is None

    def test_selected_groups_meet_minimum(self, synthetic_cohort):
        sizes = synthetic_cohort[0]
        table = cp.single_cutpoint_search(*synthetic_cohort)

        best = cp.select_best_single(table, min_group_size=10)

        assert best is not None
        assert (sizes <= best).sum() >= 10
        assert (sizes > best).sum() >= 10


class TestResultPersistence:
    def test_single_round_trip_preserves_selection(self, synthetic_cohort, tmp_path):
        table = cp.single_cutpoint_search(*synthetic_cohort)
        path = cp.save_result_table(table, tmp_path / "tables" / "os_single.csv")

        reloaded = cp.load_result_table(path, "single")

        pd.testing.assert_frame_equal(reloaded, table)
        assert cp.select_best_single(reloaded) == cp.select_best_single(table)

    def test_double_round_trip_preserves_selection(self, synthetic_cohort, tmp_path):
        table = cp.double_cutpoint_search(*synthetic_cohort, step=0.1, trim=1)
        path = cp.save_result_table(table, tmp_path / "os_double.csv")

        reloaded = cp.load_result_table(path, "double")

        assert cp.select_best_double(reloaded) == cp.select_best_double(table)

    def test_empty_table_round_trip(self, tmp_path):
        table = cp.as_result_table([], cp.DOUBLE_COLUMNS)
        path = cp.save_result_table(table, tmp_path / "empty.csv")

        reloaded = cp.load_result_table(path, "double")

        assert reloaded.empty
        assert list(reloaded.columns) == cp.DOUBLE_COLUMNS

    def test_invalid_table_raises_valueerror(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text(
            "threshold,low_n,high_n,chisq,min_n\n2.0,5,5,-1.0,5\n", encoding="utf-8"
        )

        with pytest.raises(ValueError, match="schema validation"):
            cp.load_result_table(path, "single")

    def test_unordered_pair_fails_validation(self):
        table = cp.as_result_table(
            [
                {
                    "cut1": 3.0,
                    "cut2": 2.0,
                    "low_n": 5,
                    "mid_n": 5,
                    "high_n": 5,
                    "chisq": 1.0,
                    "min_n": 5,
                }
            ],
            cp.DOUBLE_COLUMNS,
        )

        with pytest.raises(ValueError, match="schema validation"):
            cp.validate_result_table(table, "double")

    def test_unknown_kind_raises(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown result table kind"):
            cp.validate_result_table(pd.DataFrame(), "triple")
