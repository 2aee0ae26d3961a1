"""
Analysis Pipeline
=================

Runs the CDI analysis end to end: load, prepare, fit every configured
model, compare the nested pairs, diagnose each fit and, on request,
check the stability of the estimates.

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to maintain consistency with the rest of the package.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple, TypedDict, Union
import warnings

import pandas as pd

from .compare import ComparisonResult, likelihood_ratio_test
from .descriptive import level_counts, print_missingness_summary, summarize_variables
from .diagnostics import (
    DiagnosticsResult,
    StabilityResult,
    check_collinearity,
    check_stability,
    run_diagnostics,
)
from .exceptions import CDIStatsError, InputError
from .glmm import GLMMResult, fit_all_models
from .loader import load_cdi_data
from .prepare import AnalysisDataset, describe_dataset, prepare_dataset
from .registry import DEFAULT_COMPARISONS, get_model_spec, list_models, model_variables
from .report import (
    print_comparisons,
    print_diagnostics,
    print_model_report,
    print_section,
    print_stability,
    print_vif_table,
)


DATA_PATH_ENV = "CDI_DATA_PATH"


# =============================================================================
# Configuration
# =============================================================================

class AnalysisConfig(TypedDict):
    """
    Settings for one analysis run.

    Keys:
        data_path: Input table
        models: Registered model names to fit
        comparisons: (model_a, model_b) pairs for likelihood-ratio tests
        vif_threshold: VIF flagging threshold
        alpha: Significance level for normality tests
        run_stability: Run the leave-one-group-out refits
        stability_factors: Grouping factors for the stability check (None = all)
        squeeze_boundaries: Apply the Smithson-Verkuilen transform
        refine: Run the full-Laplace stage of each fit
        verbose: Print progress and the report
    """
    data_path: str
    models: List[str]
    comparisons: List[Tuple[str, str]]
    vif_threshold: float
    alpha: float
    run_stability: bool
    stability_factors: Optional[List[str]]
    squeeze_boundaries: bool
    refine: bool
    verbose: bool


def create_analysis_config(
    data_path: Optional[Union[str, Path]] = None,
    models: Optional[List[str]] = None,
    comparisons: Optional[List[Tuple[str, str]]] = None,
    vif_threshold: float = 2.0,
    alpha: float = 0.05,
    run_stability: bool = False,
    stability_factors: Optional[List[str]] = None,
    squeeze_boundaries: bool = False,
    refine: bool = True,
    verbose: bool = True,
) -> AnalysisConfig:
    """
    Create an AnalysisConfig dictionary with validation.

    :param data_path: Input table (None = the CDI_DATA_PATH environment variable)
    :param models: Model names (None = every registered model)
    :param comparisons: LRT pairs (None = the default nested pairs)
    :param vif_threshold: VIF flagging threshold
    :param alpha: Significance level for normality tests
    :param run_stability: Run the stability check
    :param stability_factors: Grouping factors for the stability check
    :param squeeze_boundaries: Apply the Smithson-Verkuilen transform
    :param refine: Run the full-Laplace stage of each fit
    :param verbose: Print progress and the report
    :returns: AnalysisConfig dictionary
    :raises InputError: Empty data path or unknown model name
    """
    if data_path is None:
        data_path = os.environ.get(DATA_PATH_ENV, "")
    data_path = str(data_path)
    if not data_path:
        raise InputError(f"No data path given and {DATA_PATH_ENV} is not set")

    models = list(models) if models is not None else list_models()
    if not models:
        raise InputError("No models selected")
    for name in models:
        get_model_spec(name)

    if comparisons is None:
        comparisons = [pair for pair in DEFAULT_COMPARISONS if set(pair) <= set(models)]
    comparisons = [tuple(pair) for pair in comparisons]
    for a, b in comparisons:
        if a not in models or b not in models:
            raise InputError(f"Comparison ({a}, {b}) refers to a model that is not fitted")

    return {
        "data_path": data_path,
        "models": models,
        "comparisons": comparisons,
        "vif_threshold": vif_threshold,
        "alpha": alpha,
        "run_stability": run_stability,
        "stability_factors": list(stability_factors) if stability_factors is not None else None,
        "squeeze_boundaries": squeeze_boundaries,
        "refine": refine,
        "verbose": verbose,
    }


# =============================================================================
# AnalysisReport TypedDict
# =============================================================================

class AnalysisReport(TypedDict):
    """
    Everything produced by one run.

    Keys:
        dataset: Prepared AnalysisDataset
        results: Map model name -> GLMMResult
        comparisons: Likelihood-ratio tests that could be computed
        diagnostics: Map model name -> DiagnosticsResult
        collinearity: GVIF table for the model that defines complete cases
        stability: Map model name -> StabilityResult (empty unless enabled)
        errors: Messages for steps that failed and were skipped
    """
    dataset: AnalysisDataset
    results: Dict[str, GLMMResult]
    comparisons: List[ComparisonResult]
    diagnostics: Dict[str, DiagnosticsResult]
    collinearity: Optional[pd.DataFrame]
    stability: Dict[str, StabilityResult]
    errors: List[str]


# =============================================================================
# Running
# =============================================================================

def run_analysis(config: AnalysisConfig) -> AnalysisReport:
    """
    Load the configured table and run the full analysis.

    :param config: AnalysisConfig dictionary
    :returns: AnalysisReport dictionary
    :raises LoadError: If the input table cannot be loaded

    Example:
        >>> report = run_analysis(create_analysis_config("data/cdi.csv"))
        >>> report["comparisons"][0]["p_value"]
    """
    df = load_cdi_data(config["data_path"], verbose=config["verbose"])
    return run_analysis_frame(df, config)


def run_analysis_frame(df: pd.DataFrame, config: AnalysisConfig) -> AnalysisReport:
    """
    Run the analysis on a table already loaded with load_cdi_data().

    Failed fits, comparisons and stability checks are recorded under
    "errors"; the remaining steps still run.

    :param df: Loaded CDI table
    :param config: AnalysisConfig dictionary
    :returns: AnalysisReport dictionary
    """
    verbose = config["verbose"]
    specs = [get_model_spec(name) for name in config["models"]]
    errors: List[str] = []

    # The complete-case rule always follows the full model when it is fitted
    reference = get_model_spec("full") if "full" in config["models"] else specs[0]

    if verbose:
        print_section("DATA")
        print_missingness_summary(df, model_variables(reference, raw=True))

    ds = prepare_dataset(
        df, spec=reference, squeeze=config["squeeze_boundaries"], verbose=verbose,
    )
    if verbose:
        print(describe_dataset(ds))

    # Fitting
    if verbose:
        print(f"[cdi_stats] Fitting {len(specs)} models")
    results = fit_all_models(ds, specs, refine=config["refine"], verbose=verbose)
    for name, r in results.items():
        if not r["converged"]:
            errors.extend(f"{name}: {w}" for w in r["warnings"])

    # Comparisons
    comparisons: List[ComparisonResult] = []
    for a, b in config["comparisons"]:
        try:
            comparisons.append(likelihood_ratio_test(results[a], results[b]))
        except InputError as e:
            errors.append(f"LRT {a} vs {b}: {e}")

    # Diagnostics
    diagnostics: Dict[str, DiagnosticsResult] = {}
    for name, r in results.items():
        if r["model"] is None:
            continue
        with warnings.catch_warnings():
            # Already collected on the DiagnosticsResult
            warnings.simplefilter("ignore")
            diagnostics[name] = run_diagnostics(
                r, ds, vif_threshold=config["vif_threshold"], alpha=config["alpha"],
            )

    collinearity = check_collinearity(ds, reference, threshold=config["vif_threshold"])

    # Stability
    stability: Dict[str, StabilityResult] = {}
    if config["run_stability"]:
        for name, r in results.items():
            if r["model"] is None:
                continue
            try:
                stability[name] = check_stability(
                    ds, r, factors=config["stability_factors"],
                    verbose=verbose, refine=config["refine"],
                )
            except CDIStatsError as e:
                errors.append(f"Stability {name}: {e}")

    report: AnalysisReport = {
        "dataset": ds,
        "results": results,
        "comparisons": comparisons,
        "diagnostics": diagnostics,
        "collinearity": collinearity,
        "stability": stability,
        "errors": errors,
    }

    if verbose:
        print_analysis_report(report, vif_threshold=config["vif_threshold"])

    return report


def print_analysis_report(report: AnalysisReport, vif_threshold: float = 2.0) -> None:
    """Print every section of an AnalysisReport."""
    ds = report["dataset"]

    print_section("DESCRIPTIVES")
    print(summarize_variables(ds["data"]).round(3).to_string(index=False))
    for var, counts in level_counts(ds["data"]).items():
        print(f"\n{var}:")
        print(counts.to_string())

    print_section("MODELS")
    for r in report["results"].values():
        print()
        print_model_report(r)

    print_section("MODEL COMPARISON")
    print_comparisons(report["results"], report["comparisons"])

    print_section("COLLINEARITY")
    print_vif_table(report["collinearity"], threshold=vif_threshold)

    print_section("DIAGNOSTICS")
    for d in report["diagnostics"].values():
        print()
        print_diagnostics(d)

    if report["stability"]:
        print_section("STABILITY")
        for s in report["stability"].values():
            print()
            print_stability(s)

    if report["errors"]:
        print_section("ERRORS")
        for e in report["errors"]:
            print(f"  - {e}")

