# tests/test_diagnostics.py
"""Tests for model diagnostics."""

import warnings

import numpy as np
import pytest
from statsmodels.stats.outliers_influence import variance_inflation_factor

from cdi_stats import (
    check_collinearity,
    check_overdispersion,
    check_random_effects_normality,
    check_stability,
    compute_r2,
    compute_rmse,
    create_glmm_result,
    create_model_spec,
    get_model_spec,
    likelihood_ratio_test,
    rescale_by_dispersion,
    run_diagnostics,
    summarize_diagnostics,
)
from cdi_stats.report import coefficient_table, coefficient_table_multiple, print_comparisons


class TestOverdispersion:
    """Tests for check_overdispersion()."""

    def test_statistics(self, small_fits):
        r = small_fits["small_full"]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            od = check_overdispersion(r)
        assert od["rdf"] == r["n_obs"] - 6
        assert od["ratio"] == pytest.approx(od["chisq"] / od["rdf"])
        assert od["is_overdispersed"] == (od["ratio"] > 1)

    def test_rescale_inflates_errors(self, small_fits):
        r = small_fits["small_full"]
        rescaled = rescale_by_dispersion(r, ratio=4.0)
        assert np.allclose(rescaled["std_error"], 2 * r["coefficients"]["std_error"])
        assert np.allclose(rescaled["estimate"], r["coefficients"]["estimate"])


class TestCollinearity:
    """Tests for check_collinearity()."""

    def test_duplicate_column_flagged(self, prepared_ds):
        data = prepared_ds["data"].copy()
        data["ids_copy"] = data["z_IDS_pref"]
        ds = dict(prepared_ds, data=data)
        spec = create_model_spec("dup", main_effects=["z_IDS_pref", "ids_copy", "z_age_mo"])
        with pytest.warns(UserWarning, match="VIF above"):
            table = check_collinearity(ds, spec, threshold=2.0)
        rows = table.set_index("term")
        assert rows.loc["z_IDS_pref", "flagged"]
        assert rows.loc["ids_copy", "flagged"]
        assert rows.loc["z_IDS_pref", "vif"] > 1e3

    def test_independent_predictors_not_flagged(self, prepared_ds, small_specs):
        table = check_collinearity(prepared_ds, small_specs["small_full"])
        assert not table["flagged"].any()
        assert (table["vif"] >= 1 - 1e-8).all()
        assert list(table.columns) == ["term", "df", "gvif", "gvif_adj", "vif", "flagged"]

    def test_multi_level_factor_df(self, prepared_ds):
        spec = create_model_spec("m", main_effects=["z_IDS_pref", "method"])
        table = check_collinearity(prepared_ds, spec).set_index("term")
        assert table.loc["method", "df"] == 2
        assert table.loc["z_IDS_pref", "df"] == 1

    def test_default_full_model(self, prepared_ds):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            table = check_collinearity(prepared_ds, get_model_spec("full"))
        rows = table.set_index("term")
        assert set(rows.index) == {
            "z_IDS_pref", "z_age_mo", "CDI.agerange", "method", "nae", "gender",
        }
        assert rows.loc["method", "df"] == 2
        assert (rows.drop(index="method")["df"] == 1).all()
        assert np.isfinite(rows["vif"]).all()
        assert (rows["vif"] >= 1 - 1e-8).all()

    def test_one_column_terms_match_statsmodels(self, prepared_ds, small_specs):
        table = check_collinearity(prepared_ds, small_specs["small_full"]).set_index("term")
        data = prepared_ds["data"]
        exog = np.column_stack([
            np.ones(len(data)), data["z_IDS_pref"], data["z_age_mo"],
        ])
        assert table.loc["z_IDS_pref", "vif"] == pytest.approx(variance_inflation_factor(exog, 1))
        assert table.loc["z_age_mo", "vif"] == pytest.approx(variance_inflation_factor(exog, 2))

    def test_single_term_empty(self, prepared_ds, small_specs):
        table = check_collinearity(prepared_ds, small_specs["small_null"])
        assert table.empty


class TestRandomEffectsAndFit:
    """Tests for BLUP normality, R² and RMSE."""

    def test_normality_per_factor(self, small_fits):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            checks = check_random_effects_normality(small_fits["small_full"])
        assert set(checks) <= {"labid", "subid_unique"}
        subj = checks["subid_unique"]
        if subj["is_normal"] is not None:
            assert 0 <= subj["shapiro_p"] <= 1
            assert len(subj["qq"]) == subj["n"]

    def test_r2_bounds(self, small_fits):
        r2 = compute_r2(small_fits["small_full"])
        assert 0 <= r2["r2_marginal"] <= r2["r2_conditional"] <= 1
        assert r2["var_residual"] > 0

    def test_rmse(self, small_fits):
        rmse = compute_rmse(small_fits["small_full"])
        assert 0 < rmse < 0.5

    def test_unfitted_model(self, small_specs):
        failed = create_glmm_result(name="x", spec=small_specs["small_null"])
        assert compute_r2(failed) == {}
        assert np.isnan(compute_rmse(failed))


class TestRunDiagnostics:
    """Tests for run_diagnostics()."""

    def test_bundle(self, small_fits, prepared_ds):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            diag = run_diagnostics(small_fits["small_full"], prepared_ds)
        assert diag["name"] == "small_full"
        assert diag["collinearity"] is not None
        assert diag["overall_assessment"]
        assert "Diagnostics: small_full" in summarize_diagnostics(diag)

    def test_unfitted(self, small_specs):
        diag = run_diagnostics(create_glmm_result(name="x", spec=small_specs["small_null"]))
        assert diag["overall_assessment"].startswith("Cannot assess")


class TestStability:
    """Tests for the leave-one-lab-out check."""

    def test_leave_one_lab_out(self, small_fits, prepared_ds):
        stability = check_stability(
            prepared_ds, small_fits["small_null"], factors=["labid"], refine=False,
        )
        assert set(stability["estimates"]["level"]) == set(prepared_ds["data"]["labid"]) - {
            f["level"] for f in stability["failed"]
        }
        summary = stability["summary"].set_index("term")
        assert set(summary.index) == {"Intercept", "z_age_mo"}
        assert (summary["min"] <= summary["max"]).all()


class TestReportTables:
    """Tests for coefficient tables."""

    def test_coefficient_table_stars(self, small_fits):
        table = coefficient_table(small_fits["small_full"])
        assert "sig" in table.columns

    def test_multiple(self, small_fits):
        wide = coefficient_table_multiple(small_fits)
        assert set(wide.columns) == {"small_full", "small_null"}
        assert np.isnan(wide.loc["z_IDS_pref", "small_null"])

    def test_print_comparisons_shows_table(self, small_fits, capsys):
        lrt = likelihood_ratio_test(small_fits["small_null"], small_fits["small_full"])
        print_comparisons(small_fits, [lrt])
        out = capsys.readouterr().out
        assert "model_a" in out
        assert "chisq" in out
        assert "small_null vs small_full" in out
