# tests/test_pipeline.py
"""Tests for configuration and the end-to-end run."""

from pathlib import Path

import pytest

from cdi_stats import (
    InputError,
    LoadError,
    create_analysis_config,
    create_model_spec,
    register_model,
    run_analysis,
)


@pytest.fixture
def small_registered(small_specs):
    """Register the reduced pair so the pipeline can fit it by name."""
    for spec in small_specs.values():
        register_model(spec)
    return list(small_specs)


class TestAnalysisConfig:
    """Tests for create_analysis_config()."""

    def test_defaults(self, cdi_csv: Path):
        config = create_analysis_config(cdi_csv)
        assert config["models"] == ["full", "null", "full_no_interaction", "null_no_interaction"]
        assert config["comparisons"] == [
            ("null", "full"),
            ("null_no_interaction", "full_no_interaction"),
        ]
        assert config["vif_threshold"] == 2.0
        assert not config["run_stability"]

    def test_env_path(self, monkeypatch, cdi_csv: Path):
        monkeypatch.setenv("CDI_DATA_PATH", str(cdi_csv))
        assert create_analysis_config()["data_path"] == str(cdi_csv)

    def test_missing_path(self, monkeypatch):
        monkeypatch.delenv("CDI_DATA_PATH", raising=False)
        with pytest.raises(InputError):
            create_analysis_config()

    def test_unknown_model(self, cdi_csv: Path):
        with pytest.raises(InputError):
            create_analysis_config(cdi_csv, models=["full", "bogus"])

    def test_comparisons_follow_models(self, cdi_csv: Path):
        config = create_analysis_config(cdi_csv, models=["full", "null"])
        assert config["comparisons"] == [("null", "full")]

    def test_comparison_outside_models(self, cdi_csv: Path):
        with pytest.raises(InputError):
            create_analysis_config(cdi_csv, models=["full"], comparisons=[("null", "full")])


class TestRunAnalysis:
    """Tests for run_analysis()."""

    def test_small_run(self, cdi_csv: Path, small_registered):
        config = create_analysis_config(
            cdi_csv,
            models=small_registered,
            comparisons=[("small_null", "small_full")],
            verbose=False,
        )
        report = run_analysis(config)

        assert set(report["results"]) == set(small_registered)
        assert all(r["converged"] for r in report["results"].values())
        assert len(report["comparisons"]) == 1
        assert set(report["diagnostics"]) == set(small_registered)
        assert report["collinearity"] is not None
        assert report["stability"] == {}
        assert report["errors"] == []

    def test_failed_comparison_recorded(self, cdi_csv: Path, small_registered):
        register_model(create_model_spec("ids_only", main_effects=["z_IDS_pref"]))
        config = create_analysis_config(
            cdi_csv,
            models=["small_null", "ids_only"],
            comparisons=[("small_null", "ids_only")],
            refine=False,
            verbose=False,
        )
        report = run_analysis(config)
        assert report["comparisons"] == []
        assert any("not strictly nested" in e for e in report["errors"])

    def test_verbose_report(self, cdi_csv: Path, small_registered, capsys):
        config = create_analysis_config(
            cdi_csv,
            models=small_registered,
            comparisons=[("small_null", "small_full")],
            run_stability=True,
            stability_factors=["labid"],
            refine=False,
        )
        report = run_analysis(config)
        out = capsys.readouterr().out
        for section in ("DATA", "MODELS", "MODEL COMPARISON", "COLLINEARITY", "DIAGNOSTICS", "STABILITY"):
            assert section in out
        assert set(report["stability"]) == set(small_registered)

    def test_missing_file(self, tmp_path: Path):
        config = create_analysis_config(tmp_path / "absent.csv", verbose=False)
        with pytest.raises(LoadError):
            run_analysis(config)
