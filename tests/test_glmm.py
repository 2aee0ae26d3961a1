# tests/test_glmm.py
"""Tests for beta GLMM fitting."""

import numpy as np
import pandas as pd
import pytest
from scipy import optimize

import cdi_stats.glmm as glmm
from cdi_stats import (
    ConvergenceError,
    InputError,
    create_model_spec,
    fit_all_models,
    fit_glmm,
    get_fitted_values,
    get_random_effects,
    get_residuals,
    subset_dataset,
)


def _failing_optimize(fun, x0, bounds, maxiter):
    """Stand-in optimizer that never converges."""
    return optimize.OptimizeResult(
        x=np.asarray(x0, dtype=float),
        fun=float(fun(x0)),
        jac=np.full(len(x0), 1e3),
        success=False,
        message="iteration limit",
        nit=maxiter,
    )


class TestFitGlmm:
    """Tests for a converged reduced fit."""

    def test_converged_result(self, small_fits, prepared_ds):
        r = small_fits["small_full"]
        assert r["converged"]
        assert r["n_obs"] == len(prepared_ds["data"])
        assert r["n_groups"] == {"labid": 6, "subid_unique": 60}
        assert list(r["coefficients"]["term"]) == ["Intercept", "z_IDS_pref", "z_age_mo"]

    def test_fit_stats_consistent(self, small_fits):
        stats = small_fits["small_full"]["fit_stats"]
        assert np.isfinite(stats["llf"])
        # 3 fixed effects, 2 random sds, 1 precision
        assert stats["df_model"] == 6
        assert stats["aic"] == pytest.approx(-2 * stats["llf"] + 12)
        assert stats["phi"] > 0

    def test_coefficients_finite(self, small_fits):
        coefs = small_fits["small_full"]["coefficients"]
        assert np.isfinite(coefs[["estimate", "std_error"]].values).all()
        assert (coefs["ci_lower"] < coefs["estimate"]).all()
        assert (coefs["p_value"].between(0, 1)).all()

    def test_random_effects_recorded(self, small_fits):
        r = small_fits["small_full"]
        assert r["random_effects"]["labid_sd"] >= 0
        assert r["random_effects"]["labid_var"] == pytest.approx(r["random_effects"]["labid_sd"] ** 2)
        blups = get_random_effects(r)
        assert set(blups["factor"]) == {"labid", "subid_unique"}
        assert len(blups) == 66

    def test_fitted_values_in_unit_interval(self, small_fits):
        mu = get_fitted_values(small_fits["small_full"])
        assert ((mu > 0) & (mu < 1)).all()

    def test_residual_kinds(self, small_fits):
        r = small_fits["small_full"]
        assert len(get_residuals(r, kind="pearson")) == r["n_obs"]
        with pytest.raises(InputError):
            get_residuals(r, kind="deviance")

    def test_fit_by_registered_name_unknown(self, prepared_ds):
        with pytest.raises(InputError):
            fit_glmm(prepared_ds, "unknown")

    def test_pirls_only_stage(self, prepared_ds, small_specs, small_fits):
        r = fit_glmm(prepared_ds, small_specs["small_null"], refine=False)
        assert r["model"]["optimizer"]["stage"] == "pirls"
        # The Laplace stage can only improve the likelihood
        assert r["fit_stats"]["llf"] <= small_fits["small_null"]["fit_stats"]["llf"] + 1e-2


class TestFitGlmmInputs:
    """Tests for rejected inputs."""

    def test_unsupported_family(self, prepared_ds, small_specs):
        with pytest.raises(InputError):
            fit_glmm(prepared_ds, small_specs["small_null"], family="gaussian")

    def test_no_random_intercepts(self, prepared_ds):
        spec = create_model_spec("fixed_only", main_effects=["z_age_mo"], random_intercepts=[])
        with pytest.raises(InputError):
            fit_glmm(prepared_ds, spec)

    def test_response_of_one_rejected(self, prepared_ds, small_specs):
        data = prepared_ds["data"].copy()
        data.loc[0, "daily_percentile"] = 1.0
        ds = dict(prepared_ds, data=data)
        with pytest.raises(InputError, match="outside"):
            fit_glmm(ds, small_specs["small_null"])

    def test_missing_values_rejected(self, prepared_ds, small_specs):
        data = prepared_ds["data"].copy()
        data.loc[0, "z_age_mo"] = np.nan
        ds = dict(prepared_ds, data=data)
        with pytest.raises(InputError):
            fit_glmm(ds, small_specs["small_null"])

    def test_aliased_column_dropped(self, prepared_ds):
        data = prepared_ds["data"].copy()
        data["age_copy"] = data["z_age_mo"]
        ds = dict(prepared_ds, data=data)
        spec = create_model_spec("aliased", main_effects=["z_age_mo", "age_copy"])
        with pytest.warns(UserWarning, match="rank deficient"):
            r = fit_glmm(ds, spec)
        assert len(r["coefficients"]) == 2


class TestConvergence:
    """Tests for non-convergence handling."""

    def test_convergence_error(self, prepared_ds, small_specs, monkeypatch):
        monkeypatch.setattr(glmm, "_optimize", _failing_optimize)
        with pytest.raises(ConvergenceError) as excinfo:
            fit_glmm(prepared_ds, small_specs["small_null"])
        assert excinfo.value.model_name == "small_null"

    def test_batch_records_failure(self, prepared_ds, small_specs, monkeypatch):
        monkeypatch.setattr(glmm, "_optimize", _failing_optimize)
        with pytest.warns(UserWarning, match="Failed to fit"):
            results = fit_all_models(prepared_ds, [small_specs["small_null"]])
        r = results["small_null"]
        assert not r["converged"]
        assert r["model"] is None
        assert r["warnings"][0].startswith("ConvergenceError")

    def test_batch_continues_after_failure(self, prepared_ds, small_specs):
        bad = create_model_spec("bad", main_effects=["z_age_mo"], random_intercepts=[])
        with pytest.warns(UserWarning):
            results = fit_all_models(prepared_ds, [bad, small_specs["small_null"]])
        assert not results["bad"]["converged"]
        assert results["small_null"]["converged"]


class TestBoundaryEscape:
    """Standard deviations are not left at zero when a positive value fits better."""

    def test_leaves_zero_for_interior_minimum(self):
        def fun(x):
            return float((x[0] ** 2 - 1.0) ** 2)

        bounds = [(0.0, None)]
        res = glmm._optimize(fun, np.array([0.0]), bounds, 200)
        assert res.x[0] == pytest.approx(0.0)
        moved = glmm._escape_boundary(fun, res, bounds, [0], 200)
        assert moved.x[0] == pytest.approx(1.0, abs=1e-3)
        assert moved.fun < res.fun

    def test_keeps_zero_when_it_is_the_minimum(self):
        def fun(x):
            return float(x[0] ** 2)

        bounds = [(0.0, None)]
        res = glmm._optimize(fun, np.array([0.0]), bounds, 200)
        kept = glmm._escape_boundary(fun, res, bounds, [0], 200)
        assert kept.x[0] == pytest.approx(0.0)

    def test_subject_variance_recovered(self, default_fits, prepared_ds):
        fit = default_fits["full_no_interaction"]
        assert fit["converged"]
        assert fit["random_effects"]["subid_unique_sd"] > 0.05
        assert not any("subid_unique variance" in w for w in fit["warnings"])

        # Dropping the subject intercept is the same model with its SD fixed at 0
        spec = fit["spec"]
        lab_only = create_model_spec(
            "lab_only",
            main_effects=list(spec["main_effects"]),
            interactions=list(spec["interactions"]),
            random_intercepts=["labid"],
        )
        restricted = fit_glmm(prepared_ds, lab_only)
        assert fit["fit_stats"]["llf"] > restricted["fit_stats"]["llf"] + 1e-3


class TestDefaultModels:
    """The four default configurations fit on the simulated table."""

    def test_all_converged(self, default_fits):
        assert set(default_fits) == {"full", "null", "full_no_interaction", "null_no_interaction"}
        for result in default_fits.values():
            assert result["converged"], result["warnings"]
            assert np.isfinite(result["fit_stats"]["llf"])

    def test_parameter_counts(self, default_fits):
        # Intercept, gender, age, age range, method (2) and nae, plus IDS terms
        assert len(default_fits["null"]["coefficients"]) == 7
        assert len(default_fits["full"]["coefficients"]) == 13
        assert len(default_fits["null_no_interaction"]["coefficients"]) == 7
        assert len(default_fits["full_no_interaction"]["coefficients"]) == 12


class TestSubsetRefit:
    """Refitting on a subset."""

    def test_refit_without_one_lab(self, prepared_ds, small_specs):
        sub = subset_dataset(prepared_ds, exclude={"labid": ["lab01"]})
        r = fit_glmm(sub, small_specs["small_null"])
        assert r["n_groups"]["labid"] == 5
        assert isinstance(r["coefficients"], pd.DataFrame)
