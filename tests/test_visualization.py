import matplotlib
import numpy as np
import pandas as pd
import pytest

import cutpoints as cp
import tumor_size_survival as tss

# Ensure plotting uses a non-interactive backend in test environments.
matplotlib.use("Agg")


@pytest.fixture
def synthetic_cohort():
    np.random.seed(42)
    n = 60
    sizes = np.round(np.random.lognormal(mean=1.0, sigma=0.5, size=n), 1)
    return pd.DataFrame(
        {
            "tumor_size_cm": sizes,
            "os_months": np.random.exponential(1 / (0.02 * np.exp(0.35 * sizes))),
            "os_event": np.random.random(n) < 0.7,
        }
    )


@pytest.fixture
def single_table(synthetic_cohort):
    return cp.single_cutpoint_search(
        synthetic_cohort["tumor_size_cm"],
        synthetic_cohort["os_months"],
        synthetic_cohort["os_event"],
    )


class TestPlotCutpointProfile:
    def test_creates_file(self, single_table, tmp_path):
        output_path = tmp_path / "profile.png"

        result = tss.plot_cutpoint_profile(
            single_table,
            cp.select_best_single(single_table),
            min_group_size=5,
            output_path=output_path,
            title="Single Cutpoint Search: Overall survival",
            figure_dpi=100,
        )

        assert result is True
        assert output_path.exists()
        assert output_path.stat().st_size > 0

    def test_returns_false_for_empty_table(self, tmp_path):
        output_path = tmp_path / "profile.png"

        result = tss.plot_cutpoint_profile(
            cp.as_result_table([], cp.SINGLE_COLUMNS),
            None,
            min_group_size=5,
            output_path=output_path,
            title="Empty",
            figure_dpi=100,
        )

        assert result is False
        assert not output_path.exists()


class TestPlotDoubleCutpointSurface:
    def test_creates_file(self, synthetic_cohort, tmp_path):
        table = cp.double_cutpoint_search(
            synthetic_cohort["tumor_size_cm"],
            synthetic_cohort["os_months"],
            synthetic_cohort["os_event"],
            step=0.1,
            trim=1,
        )
        output_path = tmp_path / "surface.png"

        result = tss.plot_double_cutpoint_surface(
            table,
            cp.select_best_double(table),
            min_group_size=5,
            output_path=output_path,
            title="Double Cutpoint Search",
            figure_dpi=100,
        )

        assert result is True
        assert output_path.exists()

    def test_returns_false_without_eligible_pairs(self, tmp_path):
        table = cp.as_result_table(
            [
                {
                    "cut1": 1.0,
                    "cut2": 2.0,
                    "low_n": 2,
                    "mid_n": 10,
                    "high_n": 10,
                    "chisq": 3.0,
                    "min_n": 2,
                }
            ],
            cp.DOUBLE_COLUMNS,
        )
        output_path = tmp_path / "surface.png"

        result = tss.plot_double_cutpoint_surface(
            table, None, min_group_size=5, output_path=output_path, title="x", figure_dpi=100
        )

        assert result is False
        assert not output_path.exists()


class TestPlotStratifiedKm:
    def test_creates_file_for_classified_cohort(self, synthetic_cohort, tmp_path):
        cohort = synthetic_cohort.copy()
        cohort["size_group"] = cp.classify_by_cutpoints(cohort["tumor_size_cm"], [2.0, 4.0])
        output_path = tmp_path / "km.png"

        result = tss.plot_stratified_km(
            cohort,
            "os_months",
            "os_event",
            "size_group",
            ["Small", "Medium", "Large"],
            output_path,
            title="Overall survival by Tumor Size",
            min_group_size=1,
            figure_dpi=100,
        )

        assert result is True
        assert output_path.exists()

    def test_returns_false_for_empty_dataframe(self, tmp_path):
        empty_df = pd.DataFrame(columns=["os_months", "os_event", "size_group"])
        output_path = tmp_path / "km.png"

        result = tss.plot_stratified_km(
            empty_df,
            "os_months",
            "os_event",
            "size_group",
            ["Small", "Large"],
            output_path,
            title="Empty",
            min_group_size=5,
            figure_dpi=100,
        )

        assert result is False
        assert not output_path.exists()

    def test_returns_false_when_all_groups_too_small(self, tmp_path):
        df = pd.DataFrame(
            {
                "size_group": ["Small"] * 3 + ["Large"] * 3,
                "os_months": [5.0, 6.0, 7.0, 1.0, 2.0, 3.0],
                "os_event": [True] * 6,
            }
        )

        result = tss.plot_stratified_km(
            df,
            "os_months",
            "os_event",
            "size_group",
            ["Small", "Large"],
            tmp_path / "km.png",
            title="Small groups",
            min_group_size=5,
            figure_dpi=100,
        )

        assert result is False
