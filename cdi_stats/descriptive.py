"""
Descriptive Statistics Module
=============================

Summary statistics, categorical level counts, and missingness reporting
for the loaded CDI table and the prepared AnalysisDataset.

Key functions:
- summarize_variables: Per-column descriptive statistics (numeric columns)
- level_counts: Frequencies of categorical levels
- missingness_report: Missing values per model variable, before filtering
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from .registry import VariableKind, VariableRole, get_variable_info, list_variables


# =============================================================================
# Summary Statistics
# =============================================================================

def summarize_variables(
    df: pd.DataFrame,
    variables: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Compute descriptive statistics for numeric columns.

    :param df: Loaded or prepared DataFrame
    :param variables: Columns to summarize (None = registered numeric columns)
    :returns: DataFrame with one row per variable

    Statistics computed:
    - n, n_missing: Non-missing and missing counts
    - mean, std: Mean and standard deviation
    - min, p25, median, p75, max: Percentiles
    - skewness: Shape statistic
    """
    if variables is None:
        variables = list_variables(kind=VariableKind.NUMERIC)
    variables = [v for v in variables if v in df.columns]

    rows = []
    for var in variables:
        values = pd.to_numeric(df[var], errors="coerce")
        present = values.dropna()
        n = len(present)
        rows.append({
            "variable": var,
            "n": n,
            "n_missing": int(values.isna().sum()),
            "mean": present.mean() if n else np.nan,
            "std": present.std() if n > 1 else np.nan,
            "min": present.min() if n else np.nan,
            "p25": present.quantile(0.25) if n else np.nan,
            "median": present.median() if n else np.nan,
            "p75": present.quantile(0.75) if n else np.nan,
            "max": present.max() if n else np.nan,
            "skewness": stats.skew(present) if n > 2 else np.nan,
        })
    return pd.DataFrame(rows)


def level_counts(
    df: pd.DataFrame,
    variables: Optional[List[str]] = None,
) -> Dict[str, pd.Series]:
    """
    Frequencies of each level of categorical columns.

    Grouping factors are excluded by default.

    :param df: Loaded or prepared DataFrame
    :param variables: Columns to count (None = registered categorical covariates)
    :returns: Map variable -> Series of counts (missing shown as "NA")
    """
    if variables is None:
        variables = [
            v for v in list_variables(kind=VariableKind.CATEGORICAL)
            if get_variable_info(v)["role"] != VariableRole.GROUPING
        ]
    variables = [v for v in variables if v in df.columns]

    return {
        var: df[var].astype(object).fillna("NA").value_counts().sort_index()
        for var in variables
    }


# =============================================================================
# Missingness Reporting
# =============================================================================

def missingness_report(
    df: pd.DataFrame,
    variables: List[str],
) -> Dict[str, Any]:
    """
    Missing values among the variables used by a model.

    :param df: DataFrame before the complete-case filter
    :param variables: Model variables (e.g. model_variables(spec))
    :returns: Dictionary with per-variable counts and a summary
    """
    variables = [v for v in variables if v in df.columns]
    n = len(df)

    by_variable = pd.DataFrame({
        "variable": variables,
        "n_missing": [int(df[v].isna().sum()) for v in variables],
    })
    by_variable["pct_missing"] = 100.0 * by_variable["n_missing"] / n if n else np.nan

    incomplete = df[variables].isna().any(axis=1) if variables else pd.Series(False, index=df.index)

    return {
        "by_variable": by_variable,
        "summary": {
            "n_rows": n,
            "n_incomplete": int(incomplete.sum()),
            "n_complete": int(n - incomplete.sum()),
            "pct_incomplete": 100.0 * incomplete.sum() / n if n else np.nan,
            "variables_with_missing": int((by_variable["n_missing"] > 0).sum()),
        },
    }


def print_missingness_summary(df: pd.DataFrame, variables: List[str]) -> None:
    """Print a human-readable missingness summary."""
    report = missingness_report(df, variables)
    summary = report["summary"]

    print("=" * 50)
    print("MISSINGNESS SUMMARY")
    print("=" * 50)
    print(f"Rows: {summary['n_rows']}")
    print(f"Incomplete rows: {summary['n_incomplete']} ({summary['pct_incomplete']:.1f}%)")
    print(f"Variables with missing: {summary['variables_with_missing']} / {len(variables)}")

    by_variable = report["by_variable"]
    by_variable = by_variable[by_variable["n_missing"] > 0].sort_values("pct_missing", ascending=False)
    if len(by_variable) > 0:
        print("\nMost missing variables:")
        for _, row in by_variable.head(5).iterrows():
            print(f"  {row['variable']}: {row['n_missing']} ({row['pct_missing']:.1f}%)")
