"""
CDI Stats - Beta GLMM Analysis of the ManyBabies CDI Follow-up
==============================================================

Tests whether infants' preference for infant-directed speech (IDS)
predicts later vocabulary, measured as CDI percentile scores, with beta
generalized linear mixed models (logit link, random intercepts for lab
and subject).

Architecture Note:
    This package uses dictionaries (TypedDicts) instead of classes for data
    structures. All data containers are plain Python dicts with documented
    keys.

Architecture:
- registry: Variable registry and model configurations (ModelSpec)
- loader: Reading the CDI table and enforcing its schema
- prepare: Zero clamp, rescale, complete cases, standardization
- descriptive: Summary statistics and missingness
- glmm: Beta GLMM fitting (Laplace approximation)
- compare: Likelihood-ratio tests and information criteria
- diagnostics: Overdispersion, VIF, random-effects normality, R², stability
- report: Console tables and printouts
- pipeline: Configuration and the end-to-end run

Usage:
    from cdi_stats import load_cdi_data, prepare_dataset, fit_all_models
    from cdi_stats import likelihood_ratio_test, run_diagnostics

    df = load_cdi_data("data/cdi_followup.csv")
    ds = prepare_dataset(df)
    results = fit_all_models(ds)
    lrt = likelihood_ratio_test(results["null"], results["full"])
"""
from __future__ import annotations

__version__ = "0.1.0"

# Errors
from .exceptions import (
    CDIStatsError,
    LoadError,
    InputError,
    ConvergenceError,
)

# Registry - Enums, TypedDicts and model configurations
from .registry import (
    VariableRole,
    VariableKind,
    ModelFamily,
    VariableInfo,
    create_variable_info,
    VARIABLE_REGISTRY,
    REQUIRED_COLUMNS,
    get_variable_info,
    list_variables,
    ModelSpec,
    create_model_spec,
    fixed_terms,
    model_variables,
    build_formula,
    drop_variable,
    drop_interaction,
    summarize_model_spec,
    MODEL_REGISTRY,
    DEFAULT_COMPARISONS,
    get_model_spec,
    register_model,
    list_models,
    reset_model_registry,
)

# Loading
from .loader import (
    load_cdi_data,
    load_cdi_frame,
)

# Data preparation
from .prepare import (
    AnalysisDataset,
    create_analysis_dataset,
    validate_dataset,
    describe_dataset,
    subset_dataset,
    get_n_observations,
    get_n_groups,
    prepare_dataset,
)

# Descriptive statistics
from .descriptive import (
    summarize_variables,
    level_counts,
    missingness_report,
    print_missingness_summary,
)

# Model fitting
from .glmm import (
    GLMMResult,
    create_glmm_result,
    summarize_glmm_result,
    fit_glmm,
    fit_all_models,
    get_linear_predictor,
    get_fitted_values,
    get_residuals,
    get_random_effects,
)

# Model comparison
from .compare import (
    ComparisonResult,
    likelihood_ratio_test,
    check_nested,
    compare_models,
    comparison_table,
    summarize_comparison,
)

# Diagnostics
from .diagnostics import (
    DiagnosticsResult,
    StabilityResult,
    check_overdispersion,
    rescale_by_dispersion,
    check_collinearity,
    check_random_effects_normality,
    compute_r2,
    compute_rmse,
    check_stability,
    run_diagnostics,
    summarize_diagnostics,
)

# Reporting
from .report import (
    coefficient_table,
    coefficient_table_multiple,
    print_model_report,
)

# Pipeline
from .pipeline import (
    AnalysisConfig,
    create_analysis_config,
    AnalysisReport,
    run_analysis,
    run_analysis_frame,
    print_analysis_report,
)


__all__ = [
    # Version
    "__version__",

    # Errors
    "CDIStatsError",
    "LoadError",
    "InputError",
    "ConvergenceError",

    # Registry
    "VariableRole",
    "VariableKind",
    "ModelFamily",
    "VariableInfo",
    "create_variable_info",
    "VARIABLE_REGISTRY",
    "REQUIRED_COLUMNS",
    "get_variable_info",
    "list_variables",
    "ModelSpec",
    "create_model_spec",
    "fixed_terms",
    "model_variables",
    "build_formula",
    "drop_variable",
    "drop_interaction",
    "summarize_model_spec",
    "MODEL_REGISTRY",
    "DEFAULT_COMPARISONS",
    "get_model_spec",
    "register_model",
    "list_models",
    "reset_model_registry",

    # Loading
    "load_cdi_data",
    "load_cdi_frame",

    # Preparation
    "AnalysisDataset",
    "create_analysis_dataset",
    "validate_dataset",
    "describe_dataset",
    "subset_dataset",
    "get_n_observations",
    "get_n_groups",
    "prepare_dataset",

    # Descriptive
    "summarize_variables",
    "level_counts",
    "missingness_report",
    "print_missingness_summary",

    # Models
    "GLMMResult",
    "create_glmm_result",
    "summarize_glmm_result",
    "fit_glmm",
    "fit_all_models",
    "get_linear_predictor",
    "get_fitted_values",
    "get_residuals",
    "get_random_effects",

    # Comparison
    "ComparisonResult",
    "likelihood_ratio_test",
    "check_nested",
    "compare_models",
    "comparison_table",
    "summarize_comparison",

    # Diagnostics
    "DiagnosticsResult",
    "StabilityResult",
    "check_overdispersion",
    "rescale_by_dispersion",
    "check_collinearity",
    "check_random_effects_normality",
    "compute_r2",
    "compute_rmse",
    "check_stability",
    "run_diagnostics",
    "summarize_diagnostics",

    # Reporting
    "coefficient_table",
    "coefficient_table_multiple",
    "print_model_report",

    # Pipeline
    "AnalysisConfig",
    "create_analysis_config",
    "AnalysisReport",
    "run_analysis",
    "run_analysis_frame",
    "print_analysis_report",
]
